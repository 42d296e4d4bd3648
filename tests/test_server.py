import asyncio
from types import SimpleNamespace

import anthropic
import httpx
import pytest
from fastapi.testclient import TestClient

import homediag.server as server
from homediag.clients import DiagnoseClient
from homediag.models import DiagnoseRequest, GeocodeResponse, Provider
from homediag.prompts import FEEDBACK_DOWN, FORMAT_REMINDER, NO_PROVIDERS, build_system_prompt
from homediag.turn import StreamTurn, TurnPhase

IMAGE = "data:image/png;base64,iVBORw0KGgo="
ATTACHMENT = "data:image/jpeg;base64,/9j/4AAQ"


class FakeStream:
    def __init__(self, texts, error=None):
        self.events = [SimpleNamespace(type="message_start")]
        self.events += [
            SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=t))
            for t in texts
        ]
        if error is None:
            self.events.append(SimpleNamespace(type="message_stop"))
        self.error = error
        self.closed = False

    async def _iter(self):
        for e in self.events:
            yield e
        if self.error is not None:
            raise self.error

    def __aiter__(self):
        return self._iter()

    async def close(self):
        self.closed = True


class FakeAnthropic:
    def __init__(self, texts=(), reply="", error=None):
        self.calls = []
        self.stream = FakeStream(list(texts), error)
        self.reply = reply
        self.messages = self

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if kwargs.get("stream"):
            return self.stream
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.reply)])


class DroppingASGITransport(httpx.ASGITransport):
    """An app error after the response started reaches the client as a dropped connection."""

    async def handle_async_request(self, request):
        try:
            return await super().handle_async_request(request)
        except Exception as e:
            raise httpx.RemoteProtocolError(
                "peer closed connection without sending complete message body", request=request
            ) from e


@pytest.fixture
def client():
    return TestClient(server.app)


# ---------------- /api/diagnose ----------------
def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_diagnose_requires_image(client):
    resp = client.post("/api/diagnose", json={"history": []})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Image is required"


def test_diagnose_rejects_non_data_url(client):
    resp = client.post("/api/diagnose", json={"image": "https://example.com/sink.jpg"})
    assert resp.status_code == 400


def test_diagnose_without_model_key(client, monkeypatch):
    monkeypatch.setattr(server, "get_anthropic_client", lambda: None)
    resp = client.post("/api/diagnose", json={"image": IMAGE})
    assert resp.status_code == 500


def test_diagnose_streams_model_text(client, monkeypatch):
    fake = FakeAnthropic(texts=["<thought>Rust</thought>", '<json>{"diagnosis": "Corroded Geyser"}</json>'])
    monkeypatch.setattr(server, "get_anthropic_client", lambda: fake)

    resp = client.post("/api/diagnose", json={
        "image": IMAGE,
        "feedback": "down",
        "providers": [{"name": "Hot Water Pros", "rating": 4.6, "rating_count": 40}],
        "history": [
            {"role": "assistant", "content": "DIAGNOSIS: Leak"},
            {"role": "user", "content": "Are you sure?", "attachments": [ATTACHMENT]},
        ],
    })

    assert resp.status_code == 200
    assert resp.text == '<thought>Rust</thought><json>{"diagnosis": "Corroded Geyser"}</json>'
    assert fake.stream.closed is True
    call = fake.calls[0]
    assert call["stream"] is True
    assert FEEDBACK_DOWN in call["system"]
    assert "Hot Water Pros" in call["system"]
    assert [m["role"] for m in call["messages"]] == ["user", "assistant", "user"]


# ---------------- message building ----------------
def test_split_data_url():
    assert server.split_data_url(IMAGE) == ("image/png", "iVBORw0KGgo=")
    assert server.split_data_url("not a data url") is None
    assert server.split_data_url("") is None


def test_first_turn_message_carries_image_and_reminder():
    messages = server.build_messages(DiagnoseRequest(image=IMAGE))
    assert len(messages) == 1
    blocks = messages[0]["content"]
    assert blocks[0]["type"] == "image"
    assert blocks[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "iVBORw0KGgo="}
    assert blocks[1]["text"].endswith(FORMAT_REMINDER)


def test_history_roles_attachments_and_reminder():
    req = DiagnoseRequest(image=IMAGE, history=[
        {"role": "user", "content": "It drips at night"},
        {"role": "assistant", "content": "DIAGNOSIS: Leak"},
        {"role": "user", "content": "Here is another angle", "attachments": [ATTACHMENT, "data:application/pdf;base64,JVBE"]},
    ])
    messages = server.build_messages(req)
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    # the leading user history item merges into the image turn
    assert messages[0]["content"][1]["text"] == "It drips at night"
    last = messages[-1]["content"]
    assert last[0]["text"] == "Here is another angle" + FORMAT_REMINDER
    assert [b["type"] for b in last] == ["text", "image"]


def test_system_prompt_sections():
    plain = build_system_prompt()
    assert NO_PROVIDERS in plain
    assert FEEDBACK_DOWN not in plain
    with_providers = build_system_prompt("down", [Provider(name="Roof Masters", rating=4.9, rating_count=88)])
    assert FEEDBACK_DOWN in with_providers
    assert "Roof Masters (Rating: 4.9, Reviews: 88" in with_providers


# ---------------- /api/geocode ----------------
def test_geocode_requires_input(client):
    assert client.post("/api/geocode", json={}).status_code == 400
    assert client.post("/api/geocode", json={"lat": 1.0}).status_code == 400


def test_geocode_needs_maps_key(client, monkeypatch):
    monkeypatch.setattr(server, "GOOGLE_MAPS_API_KEY", None)
    assert client.post("/api/geocode", json={"address": "Cape Town"}).status_code == 500


def test_geocode_forward_and_reverse(client, monkeypatch):
    async def fake_forward(http, address):
        return GeocodeResponse(lat=-33.92, lng=18.42, address=f"{address}, South Africa")

    async def fake_reverse(http, lat, lng):
        return None

    monkeypatch.setattr(server, "GOOGLE_MAPS_API_KEY", "test-key")
    monkeypatch.setattr(server, "geocode_address", fake_forward)
    monkeypatch.setattr(server, "reverse_geocode", fake_reverse)

    resp = client.post("/api/geocode", json={"address": "Cape Town"})
    assert resp.status_code == 200
    assert resp.json() == {"lat": -33.92, "lng": 18.42, "address": "Cape Town, South Africa"}

    resp = client.post("/api/geocode", json={"lat": 0.0, "lng": 0.0})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Failed to find location"


# ---------------- /api/providers ----------------
def test_providers_requires_parameters(client):
    assert client.post("/api/providers", json={"lat": 1.0, "lng": 2.0}).status_code == 400


def test_providers_search(client, monkeypatch):
    seen = {}

    async def fake_find(http, trade, keyword, lat, lng, radius_m):
        seen.update(trade=trade, keyword=keyword, radius=radius_m)
        return [Provider(name="Drip Fix", rating=4.8, rating_count=120, services=["Plumber"])]

    monkeypatch.setattr(server, "GOOGLE_MAPS_API_KEY", "test-key")
    monkeypatch.setattr(server, "get_anthropic_client", lambda: None)
    monkeypatch.setattr(server, "find_providers", fake_find)

    resp = client.post("/api/providers", json={"lat": -33.9, "lng": 18.4, "trade": "Leaking Pipe/Plumbing"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["providers"][0]["name"] == "Drip Fix"
    assert body["providers"][0]["services"] == [{"short": "Plumber", "full": "Plumber"}]
    assert seen == {"trade": "Leaking Pipe/Plumbing", "keyword": "Plumber", "radius": 25000}


def test_trade_query_uses_model_and_strips_quotes(monkeypatch):
    fake = FakeAnthropic(reply='"Gate Repair Service"\n')
    monkeypatch.setattr(server, "get_anthropic_client", lambda: fake)
    assert asyncio.run(server.normalize_trade_query("Gate Technician/Electrician")) == "Gate Repair Service"
    assert "Gate Technician/Electrician" in fake.calls[0]["messages"][0]["content"]


def test_trade_query_falls_back_on_short_answer(monkeypatch):
    monkeypatch.setattr(server, "get_anthropic_client", lambda: FakeAnthropic(reply="ok"))
    assert asyncio.run(server.normalize_trade_query("Roof leak")) == "Roofing Contractor"


# ---------------- end to end ----------------
def test_model_failure_mid_stream_fails_the_turn(monkeypatch):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    fake = FakeAnthropic(
        texts=["<thought>Water on the floor</thought>", '<json>{"diagnosis":"Leak","trade":"Plumber"}'],
        error=anthropic.APIError("overloaded", request, body=None),
    )
    monkeypatch.setattr(server, "get_anthropic_client", lambda: fake)
    commits = []

    async def commit(result):
        commits.append(result)

    async def main():
        transport = DroppingASGITransport(app=server.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            diagnoser = DiagnoseClient("http://test/api/diagnose", client=http)
            return await StreamTurn(commit).run(diagnoser.stream({"image": IMAGE}))

    result = asyncio.run(main())
    assert result.phase is TurnPhase.FAILED
    assert commits == []
    assert fake.stream.closed is True
