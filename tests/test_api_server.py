"""
tinychat :: Test API Server

Tests aiohttp endpoints without starting a real server:
  - POST /v1/chat
  - POST /v1/reset
  - POST /v1/tokenize
  - GET /health
  - GET /metrics

Uses aiohttp test_utils for in-process testing.

INL - 2025
"""

import asyncio
import os
import sys

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from aiohttp.test_utils import TestClient, TestServer

from fake_ports import ScriptedPort, BlockingPort, make_tokenizer, BOS, EOS, SEP, HI, THERE, HOW
from tinychat.api.server import ChatServer
from tinychat.core.config import GenerationConfig
from tinychat.core.metrics import ChatMetrics
from tinychat.engine.chat_engine import AsyncChatEngine, ChatEngine


def _server(port, metrics=None):
    engine = ChatEngine(make_tokenizer(), port, GenerationConfig(top_k=0), metrics=metrics)
    return ChatServer(async_engine=AsyncChatEngine(engine), model_name="test-model", port=0)


@pytest.fixture
def port():
    return ScriptedPort([THERE, HOW, EOS])


@pytest_asyncio.fixture
async def client(port):
    app = _server(port).create_app()
    async with TestClient(TestServer(app)) as c:
        yield c


@pytest.mark.asyncio
async def test_chat(client):
    resp = await client.post("/v1/chat", json={"message": "hi"})
    assert resp.status == 200
    data = await resp.json()
    assert data["reply"] == "there how"
    assert data["finish_reason"] == "stop"
    assert data["model"] == "test-model"
    assert data["usage"]["prompt_tokens"] == 2
    assert data["usage"]["completion_tokens"] == 2
    assert data["usage"]["model_calls"] == 3


@pytest.mark.asyncio
async def test_chat_blank_message(client, port):
    resp = await client.post("/v1/chat", json={"message": "   "})
    assert resp.status == 200
    data = await resp.json()
    assert data["reply"] == ""
    assert data["finish_reason"] == "empty"
    assert port.calls == []


@pytest.mark.asyncio
async def test_chat_invalid_json(client):
    resp = await client.post("/v1/chat", data="{nope", headers={"Content-Type": "application/json"})
    assert resp.status == 400
    data = await resp.json()
    assert data["error"]["type"] == "invalid_request_error"


@pytest.mark.asyncio
async def test_chat_missing_message(client):
    resp = await client.post("/v1/chat", json={"text": "hi"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_chat_model_error_is_turn_scoped():
    bad = ScriptedPort([0], vocab_size=3)
    async with TestClient(TestServer(_server(bad).create_app())) as c:
        resp = await c.post("/v1/chat", json={"message": "hi"})
        assert resp.status == 200
        data = await resp.json()
        assert data["finish_reason"] == "error"
        assert "vocabulary size" in data["error"]

        health = await (await c.get("/health")).json()
        assert health["engine"]["context_tokens"] == 0


@pytest.mark.asyncio
async def test_reset(client):
    await client.post("/v1/chat", json={"message": "hi"})
    health = await (await client.get("/health")).json()
    assert health["engine"]["context_tokens"] == 3

    resp = await client.post("/v1/reset")
    assert resp.status == 200
    health = await (await client.get("/health")).json()
    assert health["engine"]["context_tokens"] == 0


@pytest.mark.asyncio
async def test_tokenize(client):
    resp = await client.post("/v1/tokenize", json={"text": "hi there", "add_bos": True})
    assert resp.status == 200
    data = await resp.json()
    assert data["tokens"] == [BOS, HI, THERE]
    assert data["count"] == 3


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status == 200
    data = await resp.json()
    assert data["status"] == "ok"
    assert data["model"] == "test-model"
    assert data["special_tokens"] == {"bos": 1, "eos": 2, "unk": 0, "pad": 3}
    assert data["engine"]["busy"] == 0


@pytest.mark.asyncio
async def test_metrics_disabled(client):
    resp = await client.get("/metrics")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_metrics_enabled():
    server = _server(ScriptedPort([THERE, EOS]), metrics=ChatMetrics(model_name="test-model"))
    async with TestClient(TestServer(server.create_app())) as c:
        await c.post("/v1/chat", json={"message": "hi"})
        resp = await c.get("/metrics")
        assert resp.status == 200
        text = await resp.text()
        assert "tinychat_turns_total" in text


@pytest.mark.asyncio
async def test_concurrent_turn_rejected():
    port = BlockingPort([THERE, EOS])
    server = _server(port)
    async with TestClient(TestServer(server.create_app())) as c:
        first = asyncio.create_task(c.post("/v1/chat", json={"message": "hi"}))
        for _ in range(400):
            if port.entered.is_set():
                break
            await asyncio.sleep(0.005)
        assert server.async_engine.busy

        second = await c.post("/v1/chat", json={"message": "hello"})
        assert second.status == 409

        port.release.set()
        resp = await first
        assert resp.status == 200
        assert (await resp.json())["reply"] == "there"
        assert server.engine.context == [SEP, THERE]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
