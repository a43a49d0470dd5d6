from __future__ import annotations

DISCORD_MSG_LIMIT = 2000
# How far back from the cut point a newline/space may be to count as a clean break
BOUNDARY_WINDOW = 500


def split_message(text: str, limit: int = DISCORD_MSG_LIMIT, window: int = BOUNDARY_WINDOW) -> list[str]:
    """Split text into chunks of at most `limit` characters.

    Prefers breaking at the last newline or space inside the trailing `window`
    characters of each candidate chunk; the boundary character itself is dropped
    and leading whitespace of the remainder is trimmed. Without such a boundary
    the chunk is hard-cut at `limit`.
    """
    if limit < 1:
        raise ValueError("limit must be positive")
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        chunk = remaining[:limit]
        cut = max(chunk.rfind("\n"), chunk.rfind(" "))
        if cut > 0 and cut > limit - window:
            chunk = chunk[:cut]
        chunks.append(chunk)
        remaining = remaining[len(chunk):].lstrip()
    return chunks
