"""
HTTP API tests driven in-process through httpx's ASGI transport.
Each test reopens the shared in-memory database, so state never leaks.
"""
from contextlib import asynccontextmanager

import httpx
import pytest

import chatcore.db.database as dbmod
from chatcore import config
from chatcore.main import app

P1 = '{"op":"add","path":"/root","value":"main"}'
P2 = '{"op":"add","path":"/elements/main","value":{"type":"Card","props":{},"children":[]}}'


@asynccontextmanager
async def api_client():
    await dbmod.close_db()
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        await dbmod.close_db()


async def _new_conversation(client, title="t") -> str:
    resp = await client.post("/api/conversations", json={"title": title})
    assert resp.status_code == 201
    return resp.json()["id"]


@pytest.mark.asyncio
async def test_health():
    async with api_client() as client:
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_full_tool_use_turn():
    async with api_client() as client:
        cid = await _new_conversation(client, "tools")
        resp = await client.post(f"/api/conversations/{cid}/messages", json={"content": "find it"})
        assert resp.status_code == 201

        resp = await client.post(f"/api/conversations/{cid}/stream/start", json={"owner": "w1"})
        assert resp.status_code == 201
        mid = resp.json()["id"]
        base = f"/api/conversations/{cid}/stream/{mid}"

        resp = await client.post(f"{base}/chunk", json={"text": "Searching **now**"})
        assert resp.status_code == 200
        assert "<strong>now</strong>" in resp.json()["html"]

        resp = await client.post(f"{base}/tool-calls",
                                 json={"tool_use_id": "t1", "tool_name": "search", "input": {"q": "x"}})
        assert resp.status_code == 201
        assert resp.json()["status"] == "pending"

        resp = await client.post(f"{base}/tool-calls/t1/complete",
                                 json={"output": {"content": [{"text": "found"}]}})
        assert resp.json()["status"] == "completed"

        resp = await client.post(f"{base}/complete", json={"stop_reason": "tool_use"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "complete"

        conv = (await client.get(f"/api/conversations/{cid}")).json()
        assert conv["status"] == "completed"
        assert conv["stream_owner"] is None

        msgs = (await client.get(f"/api/conversations/{cid}/messages")).json()
        assert [m["role"] for m in msgs] == ["user", "assistant"]
        assert msgs[1]["tool_calls"][0]["output"] == {"content": [{"text": "found"}]}

        payload = (await client.get(f"/api/conversations/{cid}/llm-messages")).json()
        assert payload == [
            {"role": "user", "content": [{"text": "find it"}]},
            {"role": "assistant", "content": [
                {"text": "Searching **now**"},
                {"toolUse": {"toolUseId": "t1", "name": "search", "input": {"q": "x"}}},
            ]},
            {"role": "user", "content": [
                {"toolResult": {"toolUseId": "t1", "content": [{"text": "found"}], "status": "success"}},
            ]},
        ]

        stripped = (await client.get(f"/api/conversations/{cid}/llm-messages",
                                     params={"strip_tools": "true"})).json()
        assert stripped == [
            {"role": "user", "content": [{"text": "find it"}]},
            {"role": "assistant", "content": [{"text": "Searching **now**"}]},
        ]


@pytest.mark.asyncio
async def test_second_stream_conflicts():
    async with api_client() as client:
        cid = await _new_conversation(client)
        assert (await client.post(f"/api/conversations/{cid}/stream/start", json={})).status_code == 201
        resp = await client.post(f"/api/conversations/{cid}/stream/start", json={})
        assert resp.status_code == 409


@pytest.mark.asyncio
async def test_unknown_ids_are_404():
    async with api_client() as client:
        assert (await client.get("/api/conversations/missing")).status_code == 404
        assert (await client.get("/api/conversations/missing/messages")).status_code == 404
        resp = await client.post("/api/conversations/missing/messages", json={"content": "x"})
        assert resp.status_code == 404
        resp = await client.post("/api/conversations/missing/stream/start", json={})
        assert resp.status_code == 404

        cid = await _new_conversation(client)
        resp = await client.post(f"/api/conversations/{cid}/stream/nope/chunk", json={"text": "x"})
        assert resp.status_code == 404


@pytest.mark.asyncio
async def test_finished_message_rejects_chunks():
    async with api_client() as client:
        cid = await _new_conversation(client)
        mid = (await client.post(f"/api/conversations/{cid}/stream/start", json={})).json()["id"]
        resp = await client.post(f"/api/conversations/{cid}/stream/{mid}/fail", json={"cancelled": True})
        assert resp.json()["status"] == "failed"
        assert (await client.get(f"/api/conversations/{cid}")).json()["status"] == "cancelled"

        resp = await client.post(f"/api/conversations/{cid}/stream/{mid}/chunk", json={"text": "late"})
        assert resp.status_code == 400


@pytest.mark.asyncio
async def test_manual_recover():
    async with api_client() as client:
        cid = await _new_conversation(client)
        mid = (await client.post(f"/api/conversations/{cid}/stream/start", json={})).json()["id"]
        await client.post(f"/api/conversations/{cid}/stream/{mid}/chunk", json={"text": "partial"})

        resp = await client.post(f"/api/conversations/{cid}/recover")
        assert resp.json() == {"ok": True, "recovered": True}
        resp = await client.post(f"/api/conversations/{cid}/recover")
        assert resp.json() == {"ok": True, "recovered": False}

        conv = (await client.get(f"/api/conversations/{cid}")).json()
        assert conv["status"] == "pending"
        msgs = (await client.get(f"/api/conversations/{cid}/messages")).json()
        assert msgs[0]["status"] == "failed"
        assert msgs[0]["content"] == "partial"

        assert (await client.post("/api/conversations/missing/recover")).status_code == 404


@pytest.mark.asyncio
async def test_list_conversations_by_status():
    async with api_client() as client:
        a = await _new_conversation(client, "a")
        await _new_conversation(client, "b")
        await client.post(f"/api/conversations/{a}/stream/start", json={})

        all_ids = [c["id"] for c in (await client.get("/api/conversations")).json()]
        assert len(all_ids) == 2
        running = (await client.get("/api/conversations", params={"status": "running"})).json()
        assert [c["id"] for c in running] == [a]


@pytest.mark.asyncio
async def test_render_endpoint():
    async with api_client() as client:
        resp = await client.post("/api/render", json={"markdown": f"Look:\n\n{P1}\n{P2}\n"})
        html = resp.json()["html"]
        assert 'data-hook="JsonRender"' in html
        assert 'data-format="jsonl"' in html

        resp = await client.post("/api/render", json={"markdown": f"```spec\n{P1}\n", "streaming": True})
        html = resp.json()["html"]
        assert "data-hook" not in html
        assert "language-spec" in html

        resp = await client.post("/api/render", json={"markdown": None})
        assert resp.json() == {"html": ""}


@pytest.mark.asyncio
async def test_config_endpoints(monkeypatch):
    saved = []
    monkeypatch.setattr(config, "save_config_dict", saved.append)

    async with api_client() as client:
        cfg = (await client.get("/api/config")).json()
        assert cfg["STREAM_STUCK_THRESHOLD_MINUTES"] == config.STREAM_STUCK_THRESHOLD_MINUTES
        assert cfg["STREAM_RECOVERY_ENABLED"] is False

        resp = await client.put("/api/config", json={"BOGUS": 1})
        assert resp.status_code == 422
        assert saved == []

        resp = await client.put("/api/config", json={"STREAM_STUCK_THRESHOLD_MINUTES": 10})
        assert resp.json() == {"ok": True, "restart_required": True}
        assert saved == [{"STREAM_STUCK_THRESHOLD_MINUTES": 10}]


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"STREAM_STUCK_THRESHOLD_MINUTES": "soon"},
    {"STREAM_SWEEP_INTERVAL": "often"},
    {"PORT": 0},
    {"JSONL_MIN_PATCH_LINES": 0},
    {"JSONL_BUFFER_BLANK_LINES": "sometimes"},
])
async def test_config_rejects_values_that_would_break_startup(monkeypatch, body):
    saved = []
    monkeypatch.setattr(config, "save_config_dict", saved.append)

    async with api_client() as client:
        resp = await client.put("/api/config", json=body)
        assert resp.status_code == 422
        assert saved == []


@pytest.mark.asyncio
async def test_config_saves_only_typed_values_that_were_sent(monkeypatch):
    saved = []
    monkeypatch.setattr(config, "save_config_dict", saved.append)

    async with api_client() as client:
        resp = await client.put("/api/config", json={
            "STREAM_SWEEP_INTERVAL": "30", "JSONL_BUFFER_BLANK_LINES": False, "PORT": None,
        })
        assert resp.status_code == 200
        assert saved == [{"STREAM_SWEEP_INTERVAL": 30.0, "JSONL_BUFFER_BLANK_LINES": False}]
