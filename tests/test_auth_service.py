import asyncio
import json

import httpx
import pytest

from cobot.auth_service import ACCESS_TOKEN_URL, DEVICE_CODE_URL, DeviceFlow, TokenStore, ensure_authenticated
from cobot.errors import AccessDeniedError, AuthenticationError, DeviceCodeExpiredError


class FakeGitHub:
    """Device-code endpoint plus a scripted sequence of poll responses."""
    def __init__(self, polls, expires_in=900, interval=5):
        self.polls = list(polls)
        self.expires_in = expires_in
        self.interval = interval
        self.poll_count = 0
    def __call__(self, request):
        if str(request.url) == DEVICE_CODE_URL:
            return httpx.Response(200, json={'device_code': 'dev123', 'user_code': 'ABCD-1234',
                                             'verification_uri': 'https://github.com/login/device',
                                             'expires_in': self.expires_in, 'interval': self.interval})
        assert str(request.url) == ACCESS_TOKEN_URL
        assert json.loads(request.content)['device_code'] == 'dev123'
        self.poll_count += 1
        return httpx.Response(200, json=self.polls.pop(0))


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []
    def __call__(self):
        return self.now
    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def run_flow(gh, store):
    clock = FakeClock()
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(gh)) as client:
            return await DeviceFlow(client, store, sleep=clock.sleep, clock=clock).login()
    return asyncio.run(_run()), clock


def test_device_flow_pending_then_token(tmp_path):
    store = TokenStore(tmp_path / 'auth.json')
    gh = FakeGitHub([{'error': 'authorization_pending'}, {'error': 'slow_down', 'interval': 10},
                     {'access_token': 'gho_new'}])
    token, clock = run_flow(gh, store)
    assert token == 'gho_new'
    assert store.load() == 'gho_new'
    assert clock.sleeps == [5, 5, 10]


def test_device_flow_denied(tmp_path):
    gh = FakeGitHub([{'error': 'authorization_pending'}, {'error': 'access_denied'}])
    with pytest.raises(AccessDeniedError):
        run_flow(gh, TokenStore(tmp_path / 'auth.json'))


def test_device_flow_expired_by_server(tmp_path):
    gh = FakeGitHub([{'error': 'expired_token'}])
    with pytest.raises(DeviceCodeExpiredError):
        run_flow(gh, TokenStore(tmp_path / 'auth.json'))


def test_device_flow_expires_locally(tmp_path):
    gh = FakeGitHub([{'error': 'authorization_pending'}] * 10, expires_in=12, interval=5)
    with pytest.raises(DeviceCodeExpiredError):
        run_flow(gh, TokenStore(tmp_path / 'auth.json'))
    assert gh.poll_count == 3


def test_device_flow_unexpected_error(tmp_path):
    gh = FakeGitHub([{'error': 'unsupported_grant_type'}])
    with pytest.raises(AuthenticationError):
        run_flow(gh, TokenStore(tmp_path / 'auth.json'))


def test_token_store_roundtrip_and_clear(tmp_path):
    store = TokenStore(tmp_path / 'auth.json')
    assert store.load() is None
    store.save('abc')
    assert store.load() == 'abc'
    store.clear()
    assert store.load() is None
    store.clear()


def test_token_store_ignores_garbage(tmp_path):
    p = tmp_path / 'auth.json'
    p.write_text('{not json', encoding='utf-8')
    assert TokenStore(p).load() is None


class ExplodingFlow:
    async def login(self):
        raise AssertionError('device flow should not run')


def resolve(tmp_path, configured=None, env=None, cached=None, flow=None):
    store = TokenStore(tmp_path / 'auth.json')
    if cached:
        store.save(cached)
    return asyncio.run(ensure_authenticated(configured, store=store, env=env or {}, use_gh_cli=False,
                                            flow=flow or ExplodingFlow()))


def test_configured_token_wins(tmp_path):
    assert resolve(tmp_path, configured='cfg', env={'GH_TOKEN': 'amb'}, cached='cache') == 'cfg'


def test_ambient_before_cache(tmp_path):
    assert resolve(tmp_path, env={'GITHUB_TOKEN': 'amb'}, cached='cache') == 'amb'
    assert resolve(tmp_path, env={'GH_TOKEN': 'gh', 'GITHUB_TOKEN': 'amb'}) == 'gh'


def test_cache_before_device_flow(tmp_path):
    assert resolve(tmp_path, cached='cache') == 'cache'


def test_device_flow_last_resort(tmp_path):
    class OkFlow:
        async def login(self):
            return 'from-flow'
    assert resolve(tmp_path, flow=OkFlow()) == 'from-flow'
