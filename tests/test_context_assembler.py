import asyncio
from datetime import datetime, timedelta, timezone

from cobot.context_assembler import MAX_HISTORY, PAGE_SIZE, ContextAssembler
from cobot.models import HistoryRecord, InboundMessage

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def rec(i, author='alice', text=None):
    return HistoryRecord(id=str(i), author_display_name=author, text_content=text or f'm{i}',
                         created_at=BASE + timedelta(seconds=i))


class FakeHistory:
    """Serves `total` records newest-first, honoring limit/before_id like the gateway."""
    def __init__(self, total):
        self.records = [rec(i) for i in range(total, 0, -1)]
        self.calls = []
    async def fetch_history(self, channel_id, limit, before_id=None):
        self.calls.append((channel_id, limit, before_id))
        pool = self.records
        if before_id is not None:
            pool = [r for r in pool if int(r.id) < int(before_id)]
        return pool[:limit]


def msg(text='hello', mid='999', author='bob'):
    return InboundMessage(id=mid, channel_id='c1', author_id='u1', author_display_name=author,
                          is_from_bot=False, text_content=text,
                          created_at=BASE + timedelta(days=1))


def test_window_one_never_fetches():
    h = FakeHistory(10)
    out = asyncio.run(ContextAssembler().build_prompt(msg(), h, 1))
    assert out == 'hello'
    assert h.calls == []


def test_window_n_single_fetch_chronological():
    h = FakeHistory(10)
    out = asyncio.run(ContextAssembler().build_prompt(msg(), h, 3))
    assert h.calls == [('c1', 3, None)]
    assert out == 'alice: m8\nalice: m9\nalice: m10\nbob: hello'


def test_current_message_excluded_from_history():
    class WithCurrent(FakeHistory):
        async def fetch_history(self, channel_id, limit, before_id=None):
            page = await super().fetch_history(channel_id, limit, before_id)
            return [rec(999, author='bob', text='hello')] + page
    out = asyncio.run(ContextAssembler().build_prompt(msg(), WithCurrent(2), 5))
    assert out.count('bob: hello') == 1
    assert out.endswith('bob: hello')


def test_empty_history_returns_plain_text():
    out = asyncio.run(ContextAssembler().build_prompt(msg(), FakeHistory(0), 5))
    assert out == 'hello'


def test_window_zero_stops_on_short_page():
    h = FakeHistory(150)
    out = asyncio.run(ContextAssembler().build_prompt(msg(), h, 0))
    assert [c[1] for c in h.calls] == [PAGE_SIZE, PAGE_SIZE]
    assert h.calls[0][2] is None
    assert h.calls[1][2] == '51'
    lines = out.split('\n')
    assert len(lines) == 151
    assert lines[0] == 'alice: m1'


def test_window_zero_caps_at_max_history():
    h = FakeHistory(5000)
    out = asyncio.run(ContextAssembler().build_prompt(msg(), h, 0))
    assert len(h.calls) == MAX_HISTORY // PAGE_SIZE
    assert len(out.split('\n')) == MAX_HISTORY + 1


def test_custom_line_template():
    a = ContextAssembler('[{{ author }}] {{ content }}')
    out = asyncio.run(a.build_prompt(msg(), FakeHistory(1), 5))
    assert out == '[alice] m1\n[bob] hello'
