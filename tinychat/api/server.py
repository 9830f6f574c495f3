"""
tinychat :: API Server (aiohttp)

HTTP front end for one conversation.
text → AsyncChatEngine.submit_turn → reply text

One turn in flight at a time: a second /v1/chat while a turn runs
is rejected with 409 rather than queued against the same context.

Endpoints:
    POST /v1/chat      → run one turn
    POST /v1/reset     → clear rolling context
    POST /v1/tokenize  → token ids for text
    GET  /health       → health check + engine stats
    GET  /metrics      → Prometheus exposition (when metrics are enabled)

INL - 2025
"""

import json
import time
from typing import Optional

from aiohttp import web

from tinychat.engine.chat_engine import AsyncChatEngine, TurnInFlightError, TurnResult
from tinychat.core.logging import get_logger

logger = get_logger("tinychat.server")


def _error(message: str, status: int, kind: str = "invalid_request_error") -> web.Response:
    return web.json_response({"error": {"message": message, "type": kind}}, status=status)


class ChatServer:
    """aiohttp server around an AsyncChatEngine."""

    def __init__(
        self,
        async_engine: AsyncChatEngine,
        model_name: str = "tinychat",
        host: str = "127.0.0.1",
        port: int = 8000,
    ):
        self.async_engine = async_engine
        self.engine = async_engine.engine
        self.model_name = model_name
        self.host = host
        self.port = port
        self.turns_served: int = 0
        self._start_time = time.monotonic()

    def _turn_response(self, result: TurnResult) -> dict:
        return {
            "id": f"turn-{result.turn_id}",
            "model": self.model_name,
            "reply": result.text,
            "finish_reason": result.finish_reason,
            "error": result.error,
            "usage": {
                "prompt_tokens": len(result.prompt_tokens),
                "completion_tokens": len(result.output_tokens),
                "model_calls": result.num_steps,
                "elapsed_ms": round(result.elapsed_ms, 2),
            },
        }

    async def _read_json(self, request: web.Request) -> Optional[dict]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return body if isinstance(body, dict) else None

    async def handle_chat(self, request: web.Request) -> web.Response:
        """POST /v1/chat {"message": str}"""
        body = await self._read_json(request)
        if body is None:
            return _error("Invalid JSON", 400)
        message = body.get("message")
        if not isinstance(message, str):
            return _error("Missing 'message'", 400)

        try:
            result = await self.async_engine.submit_turn(message)
        except TurnInFlightError as e:
            return _error(str(e), 409, kind="conflict")

        if result.finish_reason != "empty":
            self.turns_served += 1
        return web.json_response(self._turn_response(result))

    async def handle_reset(self, request: web.Request) -> web.Response:
        """POST /v1/reset"""
        try:
            self.async_engine.reset_context()
        except TurnInFlightError as e:
            return _error(str(e), 409, kind="conflict")
        logger.info("Rolling context cleared")
        return web.json_response({"status": "ok", "context_tokens": 0})

    async def handle_tokenize(self, request: web.Request) -> web.Response:
        """POST /v1/tokenize {"text": str}"""
        body = await self._read_json(request)
        if body is None:
            return _error("Invalid JSON", 400)
        text = body.get("text")
        if not isinstance(text, str):
            return _error("Missing 'text'", 400)
        tokens = self.engine.tokenizer.encode(
            text, add_bos=bool(body.get("add_bos", False)), add_eos=bool(body.get("add_eos", False)),
        )
        return web.json_response({"tokens": tokens, "count": len(tokens)})

    async def handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        return web.json_response({
            "status": "ok",
            "model": self.model_name,
            "uptime_seconds": int(time.monotonic() - self._start_time),
            "turns_served": self.turns_served,
            "engine": self.async_engine.get_stats(),
            "special_tokens": self.engine.tokenizer.special_token_ids(),
        })

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """GET /metrics"""
        metrics = self.engine.metrics
        if metrics is None:
            return _error("Metrics are not enabled", 404, kind="not_found")
        return web.Response(body=metrics.render(), content_type="text/plain")

    async def _on_cleanup(self, app):
        logger.info("Server cleanup: cancelling in-flight turn")
        self.async_engine.shutdown(wait=True)

    def create_app(self) -> web.Application:
        """Create aiohttp application with routes and engine lifecycle."""
        app = web.Application()
        app.router.add_post("/v1/chat", self.handle_chat)
        app.router.add_post("/v1/reset", self.handle_reset)
        app.router.add_post("/v1/tokenize", self.handle_tokenize)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/metrics", self.handle_metrics)
        app.on_cleanup.append(self._on_cleanup)
        return app

    def run(self):
        logger.info(f"tinychat :: {self.model_name}")
        logger.info(f"  http://{self.host}:{self.port}")
        logger.info("  POST /v1/chat | POST /v1/reset | POST /v1/tokenize | GET /health | GET /metrics")
        web.run_app(self.create_app(), host=self.host, port=self.port, print=None)
