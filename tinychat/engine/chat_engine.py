"""
tinychat :: Chat Engine

Orchestrates one conversational turn:
  1. Prompt : [BOS] + rolling context + encode(user text), sliding window
  2. Step   : ids → model port → last-position scores → sampler → id
  3. Stop   : EOS (not appended) or max_new_tokens
  4. Commit : separator + reply ids folded into the rolling context

Turn states: Idle → PromptBuilt → Stepping → Completed
                                           ↘ Aborted / Cancelled

Context is committed only on Completed. An aborted or cancelled turn
returns its partial ids and leaves the rolling context untouched.

Two entry points:
  - ChatEngine: synchronous, one turn per run_turn() call
  - AsyncChatEngine: submit() from an event loop, turn runs on a worker thread

Single writer: one turn in flight per engine. The step loop is strictly
sequential; no key/value cache is carried between steps.

INL - 2025
"""

import asyncio
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional

import torch

from tinychat.core.config import GenerationConfig
from tinychat.core.logging import TurnLogger, get_logger
from tinychat.core.model_port import ModelContractError, ModelPort, extract_last_scores
from tinychat.core.sampling import sample_token
from tinychat.core.tokenizer import SpmTokenizer

logger = get_logger("tinychat.engine")


class TurnInFlightError(RuntimeError):
    """A second turn was submitted while one is still running."""


@dataclass
class TurnResult:
    """Result of one turn."""
    turn_id: int
    text: str
    prompt_tokens: List[int]
    output_tokens: List[int]
    num_steps: int
    elapsed_ms: float
    finish_reason: str = "length"  # "stop", "length", "error", "cancelled", "empty"
    error: Optional[str] = None

    @property
    def committed(self) -> bool:
        """Whether this turn was folded into the rolling context."""
        return self.finish_reason in ("stop", "length")


class ChatEngine:
    """
    Single-conversation generation engine.

    Control flow per turn:
        prompt = build_prompt(text)            # sliding window over context
        for step in range(max_new_tokens):
            scores = port(prompt + output)[-1] # full sequence, every step
            token = sample(scores)
            if token == EOS: break
            output.append(token)
        commit(output)                         # only on clean completion
    """

    def __init__(
        self,
        tokenizer: SpmTokenizer,
        model_port: ModelPort,
        config: Optional[GenerationConfig] = None,
        metrics=None,
    ):
        self.tokenizer = tokenizer
        self.model_port = model_port
        self.config = config or GenerationConfig()
        self.metrics = metrics

        if self.config.top_k > tokenizer.vocab_size:
            raise ValueError(
                f"top_k must be <= vocabulary size ({tokenizer.vocab_size}), got {self.config.top_k}"
            )

        self.sampling_params = self.config.to_sampling_params()
        self.generator = self.sampling_params.make_generator()

        # Rolling context: owned here, written only by _commit()
        self._context: List[int] = []
        self._separator: List[int] = tokenizer.encode(" ")
        if tokenizer.unk_id >= 0 and tokenizer.unk_id in self._separator:
            logger.warning(
                "Turn separator encodes to the unknown token; every reply will be "
                "preceded by <unk> in the rolling context",
                extra={"extra_data": {"separator": self._separator}},
            )
        self._active_cancel: Optional[threading.Event] = None

        # Counters
        self._turn_counter: int = 0
        self.turns_completed: int = 0
        self.turns_failed: int = 0
        self.model_calls: int = 0
        self.total_tokens_generated: int = 0

    # --- rolling context ---

    @property
    def context(self) -> List[int]:
        """Copy of the rolling context."""
        return list(self._context)

    def reset_context(self):
        self._context = []
        if self.metrics:
            self.metrics.update_context(0)

    def _commit(self, output_tokens: List[int]):
        """Completed: fold separator + reply into context, evict oldest first."""
        self._context.extend(self._separator)
        self._context.extend(output_tokens)
        overflow = len(self._context) - self.config.max_context_tokens
        if overflow > 0:
            del self._context[:overflow]
        if self.metrics:
            self.metrics.update_context(len(self._context))

    # --- prompt ---

    def build_prompt(self, text: str) -> List[int]:
        """[BOS] + context + encode(text), keeping the most recent max_context_tokens."""
        merged: List[int] = []
        if self.tokenizer.bos_id >= 0:
            merged.append(self.tokenizer.bos_id)
        merged.extend(self._context)
        merged.extend(self.tokenizer.encode(text, add_bos=False, add_eos=False))

        limit = self.config.max_context_tokens
        if len(merged) > limit:
            merged = merged[-limit:]
        return merged

    # --- stepping ---

    def _next_scores(self, sequence: List[int]) -> torch.Tensor:
        """One model call over the whole sequence → final-position scores."""
        seq_len = len(sequence)
        input_ids = torch.tensor([sequence], dtype=torch.long)
        inputs = {
            self.config.input_ids_name: input_ids,
            self.config.attention_mask_name: torch.ones_like(input_ids),
        }
        self.model_calls += 1
        outputs = self.model_port.run(inputs)
        return extract_last_scores(
            outputs, self.config.logits_name, seq_len, self.tokenizer.vocab_size,
        )

    def _generate(
        self,
        prompt_tokens: List[int],
        output: List[int],
        cancel: threading.Event,
    ) -> str:
        """
        Step loop. Appends to `output` in place so partial ids survive an abort.

        Returns the finish reason. Raises ModelContractError.
        """
        working = list(prompt_tokens)
        eos = self.tokenizer.eos_id

        for step in range(self.config.max_new_tokens):
            if cancel.is_set():
                return "cancelled"

            scores = self._next_scores(working)

            if step == 0 and self.config.suppress_eos_on_first_step and 0 <= eos < scores.shape[0]:
                scores = scores.clone()
                scores[eos] = float("-inf")

            token_id = sample_token(scores, self.sampling_params, generator=self.generator)
            if eos >= 0 and token_id == eos:
                return "stop"

            working.append(token_id)
            output.append(token_id)

        return "length"

    def cancel(self):
        """Interrupt the in-flight turn at the next step boundary."""
        event = self._active_cancel
        if event is not None:
            event.set()

    def run_turn(self, text: str, cancel: Optional[threading.Event] = None) -> TurnResult:
        """
        Run one turn. Never raises for per-turn failures: they come back
        as finish_reason "error" / "cancelled" with the partial ids.
        """
        self._turn_counter += 1
        turn_id = self._turn_counter

        with TurnLogger(turn_id, logger) as tlog:
            if not text or not text.strip():
                tlog.finish("empty")
                return TurnResult(
                    turn_id=turn_id, text="", prompt_tokens=[], output_tokens=[],
                    num_steps=0, elapsed_ms=0.0, finish_reason="empty",
                )
            return self._run_turn(turn_id, text, cancel or threading.Event(), tlog)

    def _run_turn(self, turn_id: int, text: str, cancel: threading.Event, tlog: TurnLogger) -> TurnResult:
        self._active_cancel = cancel
        metrics_start = self.metrics.on_turn_start() if self.metrics else None

        prompt_tokens = self.build_prompt(text)
        output: List[int] = []
        error = None
        calls_before = self.model_calls
        try:
            finish_reason = self._generate(prompt_tokens, output, cancel)
        except ModelContractError as e:
            finish_reason = "error"
            error = str(e)
            tlog.error(f"Turn aborted: {error}", partial_tokens=len(output))
        except Exception as e:
            # A failing runtime ends the turn, never the conversation
            finish_reason = "error"
            error = f"Model runtime failed: {type(e).__name__}: {e}"
            tlog.error("Turn aborted: model runtime failed", exc_info=True, partial_tokens=len(output))
        finally:
            self._active_cancel = None
        steps = self.model_calls - calls_before

        if finish_reason in ("stop", "length"):
            self._commit(output)
            self.turns_completed += 1
        else:
            self.turns_failed += 1

        self.total_tokens_generated += len(output)
        reply = self.tokenizer.decode(output)
        elapsed = tlog.elapsed_ms()

        if self.metrics and metrics_start is not None:
            self.metrics.on_turn_end(metrics_start, finish_reason, len(prompt_tokens), len(output))

        tlog.finish(
            finish_reason,
            prompt_tokens=len(prompt_tokens),
            output_tokens=len(output),
            context_tokens=len(self._context),
        )

        return TurnResult(
            turn_id=turn_id,
            text=reply,
            prompt_tokens=prompt_tokens,
            output_tokens=output,
            num_steps=steps,
            elapsed_ms=elapsed,
            finish_reason=finish_reason,
            error=error,
        )

    def get_stats(self) -> Dict[str, int]:
        """Engine stats."""
        return {
            "context_tokens": len(self._context),
            "max_context_tokens": self.config.max_context_tokens,
            "vocab_size": self.tokenizer.vocab_size,
            "turns_completed": self.turns_completed,
            "turns_failed": self.turns_failed,
            "model_calls": self.model_calls,
            "total_tokens_generated": self.total_tokens_generated,
        }


# =========================================================================
# Async front end
# =========================================================================

class AsyncChatEngine:
    """
    Async wrapper: submit() returns once the turn's reply is ready.

    Turns run on a single worker thread so the event loop (UI / HTTP)
    stays responsive. Only one turn may be in flight; a second submit()
    raises TurnInFlightError instead of racing on the rolling context.
    """

    def __init__(self, engine: ChatEngine):
        self.engine = engine
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tinychat-turn")
        self._current: Optional[Future] = None
        self._cancel_event: Optional[threading.Event] = None

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    async def submit_turn(self, text: str) -> TurnResult:
        """Run one turn off the event loop and return its full result."""
        if self.busy:
            raise TurnInFlightError("A turn is already in flight for this conversation")

        cancel = threading.Event()
        self._cancel_event = cancel
        self._current = self._executor.submit(self.engine.run_turn, text, cancel)
        try:
            return await asyncio.wrap_future(self._current)
        except asyncio.CancelledError:
            # Caller went away: stop at the next step boundary
            cancel.set()
            raise

    async def submit(self, text: str) -> str:
        """Submit user text, return the reply text."""
        result = await self.submit_turn(text)
        return result.text

    def cancel(self):
        """Interrupt the in-flight turn between steps."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    def reset_context(self):
        if self.busy:
            raise TurnInFlightError("Cannot reset context while a turn is in flight")
        self.engine.reset_context()

    def shutdown(self, wait: bool = True):
        self.cancel()
        self._executor.shutdown(wait=wait)

    def get_stats(self) -> Dict[str, int]:
        stats = self.engine.get_stats()
        stats["busy"] = int(self.busy)
        return stats
