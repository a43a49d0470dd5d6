from __future__ import annotations

import os
from pathlib import Path
import re
import tempfile
from typing import Awaitable, Callable, Iterable

import httpx

from .errors import AttachmentDownloadError, AttachmentTooLargeError
from .logger_factory import get_logger
from .models import AttachmentRef, DownloadedAttachment, InboundMessage
from .utils.logfmt import fmt

Notify = Callable[[str], Awaitable[None]]

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class AttachmentFetcher:
    """Downloads image attachments into temporary files for one completion call.

    Non-image attachments are skipped silently, oversized ones produce a single
    user-visible notice, failed downloads are logged and dropped.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        max_size_mb: int = 5,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        tmp_dir: str | None = None,
    ):
        self.log = get_logger("AttachmentFetcher")
        self.enabled = enabled
        self.max_size_mb = max_size_mb
        self.max_bytes = max_size_mb * 1024 * 1024
        self.tmp_dir = tmp_dir
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _check_size(self, ref: AttachmentRef) -> None:
        if ref.declared_size_bytes > self.max_bytes:
            raise AttachmentTooLargeError(ref.file_name, self.max_size_mb)

    async def _download(self, ref: AttachmentRef) -> DownloadedAttachment:
        safe_name = _UNSAFE_NAME_RE.sub("_", ref.file_name)[-80:] or "attachment"
        fd, tmp_path = tempfile.mkstemp(prefix="cobot_", suffix=f"_{safe_name}", dir=self.tmp_dir)
        path = Path(tmp_path)
        try:
            written = 0
            with os.fdopen(fd, "wb") as out:
                async with self._client.stream("GET", ref.url) as resp:
                    resp.raise_for_status()
                    async for chunk in resp.aiter_bytes():
                        written += len(chunk)
                        # Declared sizes come from the gateway; the payload may still disagree
                        if written > self.max_bytes:
                            raise AttachmentDownloadError(ref.file_name, "payload exceeds size ceiling")
                        out.write(chunk)
        except AttachmentDownloadError:
            path.unlink(missing_ok=True)
            raise
        except (httpx.HTTPError, OSError) as e:
            path.unlink(missing_ok=True)
            raise AttachmentDownloadError(ref.file_name, str(e)) from e
        content_type = (ref.declared_content_type or "image/png").split(";")[0].strip()
        return DownloadedAttachment(path=path, content_type=content_type, display_name=ref.file_name)

    async def fetch(self, message: InboundMessage, notify: Notify) -> list[DownloadedAttachment]:
        if not self.enabled or not message.attachment_refs:
            return []
        results: list[DownloadedAttachment] = []
        try:
            for ref in message.attachment_refs:
                if not ref.is_image:
                    continue
                try:
                    self._check_size(ref)
                except AttachmentTooLargeError as e:
                    self.log.info(
                        f"[attachment-too-large] {fmt('file', ref.file_name)} "
                        f"{fmt('size', ref.declared_size_bytes)} {fmt('max_mb', self.max_size_mb)}"
                    )
                    try:
                        await notify(str(e))
                    except Exception as ne:
                        self.log.warning(f"[attachment-notice-failed] {fmt('file', ref.file_name)} {fmt('err', ne)}")
                    continue
                try:
                    downloaded = await self._download(ref)
                except AttachmentDownloadError as e:
                    self.log.warning(f"[attachment-download-failed] {fmt('file', e.file_name)} {fmt('err', e.reason)}")
                    continue
                results.append(downloaded)
                self.log.debug(f"[attachment-downloaded] {fmt('file', ref.file_name)} {fmt('path', str(downloaded.path))}")
        except BaseException:
            # Caller never sees the list, so nobody else would release these
            self.release(results)
            raise
        return results

    def release(self, attachments: Iterable[DownloadedAttachment]) -> None:
        for att in attachments:
            try:
                att.path.unlink(missing_ok=True)
            except OSError as e:
                self.log.warning(f"[attachment-cleanup-failed] {fmt('path', str(att.path))} {fmt('err', e)}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
