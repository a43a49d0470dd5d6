from fastapi.testclient import TestClient

from cobot.http_app import create_app


class DummyDispatcher:
    def stats(self):
        return {'20': {'pending': 0, 'draining': False}, '10': {'pending': 2, 'draining': True}}


class DummyLLM:
    model = 'gpt-4o'


def test_health_and_status():
    client = TestClient(create_app(DummyDispatcher(), DummyLLM()))
    assert client.get('/health').json() == {'ok': True}
    body = client.get('/status').json()
    assert body['model'] == 'gpt-4o'
    assert [m['id'] for m in body['models'] if m['active']] == ['gpt-4o']
    assert body['channels'] == [
        {'channel_id': '10', 'pending': 2, 'draining': True},
        {'channel_id': '20', 'pending': 0, 'draining': False},
    ]
