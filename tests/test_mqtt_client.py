import pytest

from yearbook_distribution.mqtt_client import MqttClient


@pytest.fixture
def client(monkeypatch):
    c = MqttClient(client_id="t-client", host="127.0.0.1", port=1883)
    c.outbox = []
    monkeypatch.setattr(c, "publish", lambda topic, message: c.outbox.append((topic, message)))
    return c


def test_request_without_reply_times_out(client):
    with pytest.raises(TimeoutError):
        client.request(request_topic="t/req", response_topic="t/resp", message={"type": "ping"}, timeout=0.05)
    assert client.outbox[0][1]["reply_to"] == "t/resp"
    # The waiter does not outlive the request.
    assert client._waiters == {}


def test_request_returns_correlated_reply(client, monkeypatch):
    def answer(topic, message):
        client._waiters[message["corr_id"]].resolve({"type": "ok", "corr_id": message["corr_id"]})

    monkeypatch.setattr(client, "publish", answer)
    reply = client.request(request_topic="t/req", response_topic="t/resp", message={"type": "ping"}, timeout=1.0)
    assert reply["type"] == "ok"
