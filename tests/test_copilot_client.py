import asyncio
import base64
import json
import threading
import time

import httpx
import pytest

from cobot.errors import CompletionServiceError, UnknownModelError
from cobot.llm.copilot_client import CopilotClient, build_user_content
from cobot.models import DownloadedAttachment


class FakeCopilot:
    """Token exchange + chat completions served through httpx.MockTransport."""
    def __init__(self, reply='hello back', chat_status=200, token_status=200, gate=None, body=None):
        self.reply = reply
        self.chat_status = chat_status
        self.token_status = token_status
        self.gate = gate
        self.body = body
        self.chat_requests = []
        self.token_requests = 0

    async def __call__(self, request):
        if request.url.path.endswith('/copilot_internal/v2/token'):
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, text='bad credentials')
            return httpx.Response(200, json={'token': 'api-tok', 'expires_at': time.time() + 3600,
                                             'endpoints': {'api': 'https://api.copilot.test'}})
        assert str(request.url) == 'https://api.copilot.test/chat/completions'
        self.chat_requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.chat_status != 200:
            return httpx.Response(self.chat_status, text='upstream exploded')
        if self.body is not None:
            return httpx.Response(200, json=self.body)
        return httpx.Response(200, json={'choices': [{'message': {'role': 'assistant', 'content': self.reply}}],
                                         'usage': {'prompt_tokens': 3, 'completion_tokens': 2}})


def client_for(fake, **kw):
    return CopilotClient('gh-token', transport=httpx.MockTransport(fake), **kw)


def payload(request):
    return json.loads(request.content)


def test_text_completion_roundtrip():
    fake = FakeCopilot()
    async def _run():
        c = client_for(fake)
        await c.start()
        res = await c.send('hello')
        await c.stop()
        return res
    res = asyncio.run(_run())
    assert res.text == 'hello back' and res.model == 'gpt-4.1'
    req = fake.chat_requests[0]
    body = payload(req)
    assert body['model'] == 'gpt-4.1'
    assert body['messages'] == [{'role': 'user', 'content': 'hello'}]
    assert req.headers['Authorization'] == 'Bearer api-tok'
    assert 'Copilot-Vision-Request' not in req.headers
    # token exchanged once at start, reused for the call
    assert fake.token_requests == 1


def test_image_parts_and_vision_header(tmp_path):
    img = tmp_path / 'cat.png'
    img.write_bytes(b'\x89PNGdata')
    att = DownloadedAttachment(path=img, content_type='image/png', display_name='cat.png')
    fake = FakeCopilot()
    async def _run():
        c = client_for(fake)
        await c.send('what is this?', [att])
        await c.stop()
    asyncio.run(_run())
    req = fake.chat_requests[0]
    content = payload(req)['messages'][0]['content']
    assert content[0] == {'type': 'text', 'text': 'what is this?'}
    expected = 'data:image/png;base64,' + base64.b64encode(b'\x89PNGdata').decode()
    assert content[1] == {'type': 'image_url', 'image_url': {'url': expected}}
    assert req.headers['Copilot-Vision-Request'] == 'true'


def test_build_user_content_plain_without_attachments():
    assert asyncio.run(build_user_content('hi', [])) == 'hi'


def test_image_bytes_read_off_event_loop_thread():
    loop_thread = threading.get_ident()
    readers = []
    class FakePath:
        def __init__(self, data):
            self.data = data
        def read_bytes(self):
            readers.append(threading.get_ident())
            return self.data
    atts = [DownloadedAttachment(path=FakePath(b'one'), content_type='image/png', display_name='a.png'),
            DownloadedAttachment(path=FakePath(b'two'), content_type='image/jpeg', display_name='b.jpg')]
    parts = asyncio.run(build_user_content('look', atts))
    assert len(readers) == 2
    assert loop_thread not in readers
    assert [p['image_url']['url'] for p in parts[1:]] == [
        'data:image/png;base64,' + base64.b64encode(b'one').decode(),
        'data:image/jpeg;base64,' + base64.b64encode(b'two').decode(),
    ]


def test_error_status_raises_with_status():
    fake = FakeCopilot(chat_status=500)
    async def _run():
        c = client_for(fake)
        try:
            await c.send('hi')
        finally:
            await c.stop()
    with pytest.raises(CompletionServiceError) as ei:
        asyncio.run(_run())
    assert ei.value.status == 500


def test_start_fails_on_rejected_token():
    fake = FakeCopilot(token_status=401)
    async def _run():
        c = client_for(fake)
        try:
            await c.start()
        finally:
            await c.stop()
    with pytest.raises(CompletionServiceError) as ei:
        asyncio.run(_run())
    assert ei.value.status == 401


def test_missing_choices_is_empty_result():
    fake = FakeCopilot(body={'choices': []})
    async def _run():
        c = client_for(fake)
        res = await c.send('hi')
        await c.stop()
        return res
    res = asyncio.run(_run())
    assert res.is_empty


def test_unknown_model_leaves_selection_unchanged():
    fake = FakeCopilot()
    async def _run():
        c = client_for(fake)
        await c.start()
        session = c.session
        with pytest.raises(UnknownModelError):
            await c.set_model('gpt-99')
        same = c.session is session
        await c.stop()
        return c.model, same
    model, same = asyncio.run(_run())
    assert model == 'gpt-4.1'
    assert same


def test_unknown_configured_model_rejected():
    with pytest.raises(UnknownModelError):
        CopilotClient('gh-token', model='not-a-model')


def test_switch_applies_to_later_calls():
    fake = FakeCopilot()
    async def _run():
        c = client_for(fake)
        info = await c.set_model('gpt-4o')
        await c.send('hi')
        await c.stop()
        return info
    info = asyncio.run(_run())
    assert info.id == 'gpt-4o'
    assert payload(fake.chat_requests[-1])['model'] == 'gpt-4o'


def test_in_flight_call_finishes_on_retired_session():
    async def _run():
        gate = asyncio.Event()
        fake = FakeCopilot(gate=gate)
        c = client_for(fake)
        await c.start()
        old = c.session
        task = asyncio.create_task(c.send('slow one'))
        for _ in range(200):
            if fake.chat_requests:
                break
            await asyncio.sleep(0.005)
        await c.set_model('gpt-5-mini')
        closed_while_running = old.closed
        gate.set()
        res = await task
        new = c.session
        await c.stop()
        return res, closed_while_running, old.closed, new is not old
    res, closed_while_running, old_closed, swapped = asyncio.run(_run())
    assert res.text == 'hello back'
    assert res.model == 'gpt-4.1'
    assert closed_while_running is False
    assert old_closed is True
    assert swapped
