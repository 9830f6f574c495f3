"""
tinychat :: Prometheus Metrics

Per-turn counters for long-running chat servers.

Metrics:
  - tinychat_turns_total: completed turns, by finish reason
  - tinychat_tokens_generated_total: total reply tokens
  - tinychat_tokens_prompt_total: total prompt tokens sent to the model
  - tinychat_turn_duration_seconds: turn latency histogram
  - tinychat_time_per_token_seconds: latency per generated token
  - tinychat_context_tokens: rolling context length

INL - 2025
"""

import time
from typing import Optional

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest, start_http_server,
)


class ChatMetrics:
    """Prometheus metrics for one engine."""

    def __init__(self, model_name: str = "", port: Optional[int] = None):
        # Own registry: several engines (tests) must not collide on names
        self.registry = CollectorRegistry()

        self.model_info = Info("tinychat_model", "Model information", registry=self.registry)
        self.model_info.info({"name": model_name, "engine": "tinychat"})

        self.turns_total = Counter(
            "tinychat_turns_total", "Turns finished", ["finish_reason"], registry=self.registry,
        )
        self.tokens_generated = Counter(
            "tinychat_tokens_generated_total", "Total tokens generated", registry=self.registry,
        )
        self.tokens_prompt = Counter(
            "tinychat_tokens_prompt_total", "Total prompt tokens processed", registry=self.registry,
        )

        self.turn_duration = Histogram(
            "tinychat_turn_duration_seconds",
            "Turn latency",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )
        self.time_per_token = Histogram(
            "tinychat_time_per_token_seconds",
            "Time per output token",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
            registry=self.registry,
        )

        self.context_tokens = Gauge(
            "tinychat_context_tokens", "Rolling context length", registry=self.registry,
        )

        if port:
            start_http_server(port, registry=self.registry)

    def on_turn_start(self) -> float:
        return time.perf_counter()

    def on_turn_end(self, start_time: float, finish_reason: str, prompt_tokens: int, output_tokens: int):
        elapsed = time.perf_counter() - start_time
        self.turns_total.labels(finish_reason=finish_reason).inc()
        self.turn_duration.observe(elapsed)
        self.tokens_generated.inc(output_tokens)
        self.tokens_prompt.inc(prompt_tokens)
        if output_tokens > 0:
            self.time_per_token.observe(elapsed / output_tokens)

    def update_context(self, length: int):
        self.context_tokens.set(length)

    def render(self) -> bytes:
        """Prometheus text exposition."""
        return generate_latest(self.registry)
