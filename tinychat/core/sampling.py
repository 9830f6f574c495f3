"""
tinychat :: Sampling

Turns one score vector (vocab_size,) into one token id.

Order of operations:
  1. temperature scaling (clamped away from zero)
  2. stable softmax
  3. stable descending rank (ties keep original index order)
  4. top-k truncation        (top_k = 0 disables)
  5. top-p (nucleus) cut     (top_p <= 0 or >= 1 disables)
  6. weighted draw over the kept mass

INL - 2025
"""

import torch
from typing import Optional, Tuple
from dataclasses import dataclass

MIN_TEMPERATURE = 1e-6


@dataclass
class SamplingParams:
    """Sampling parameters, validated on construction."""
    temperature: float = 1.0
    top_k: int = 0
    top_p: float = 1.0
    seed: Optional[int] = None

    def __post_init__(self):
        if not self.temperature > 0:
            raise ValueError(f"temperature must be > 0, got {self.temperature}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be >= 0, got {self.top_k}")
        if not 0.0 <= self.top_p <= 1.0:
            raise ValueError(f"top_p must be in [0, 1], got {self.top_p}")

    def make_generator(self) -> Optional[torch.Generator]:
        """Seeded random source, or None for torch's global one."""
        if self.seed is None:
            return None
        gen = torch.Generator()
        gen.manual_seed(self.seed)
        return gen


def kept_candidates(
    scores: torch.Tensor,
    params: SamplingParams,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Steps 1-5: ranked ids and probabilities surviving top-k / top-p.

    Args:
        scores: (vocab_size,) float tensor
        params: sampling parameters

    Returns:
        (ids, probs): both (num_kept,), highest probability first
    """
    scores = torch.as_tensor(scores).detach().to(dtype=torch.float64, device="cpu").reshape(-1)
    vocab_size = scores.shape[0]
    if vocab_size == 0:
        raise ValueError("cannot sample from an empty score vector")

    scaled = scores / max(params.temperature, MIN_TEMPERATURE)
    scaled = torch.where(torch.isnan(scaled), torch.full_like(scaled, float("-inf")), scaled)
    max_score = scaled.max()
    if torch.isposinf(max_score):
        # +inf entries share all the mass
        top = torch.isposinf(scaled).to(torch.float64)
        probs = top / top.sum()
    elif torch.isneginf(max_score):
        # Nothing left to sample: id 0
        probs = torch.zeros(vocab_size, dtype=torch.float64)
        probs[0] = 1.0
    else:
        exp = torch.exp(scaled - max_score)
        probs = exp / exp.sum()

    sorted_probs, sorted_ids = torch.sort(probs, descending=True, stable=True)

    keep = min(params.top_k, vocab_size) if params.top_k > 0 else vocab_size
    sorted_probs = sorted_probs[:keep]
    sorted_ids = sorted_ids[:keep]

    if 0.0 < params.top_p < 1.0:
        cumulative = sorted_probs.cumsum(dim=0)
        reached = torch.nonzero(cumulative >= params.top_p)
        if reached.numel() > 0:
            cut = int(reached[0, 0]) + 1
            sorted_probs = sorted_probs[:cut]
            sorted_ids = sorted_ids[:cut]

    return sorted_ids, sorted_probs


def sample_token(
    scores: torch.Tensor,
    params: SamplingParams,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Sample a single token id from a score vector.

    Args:
        scores: (vocab_size,) float tensor (logits)
        params: sampling parameters
        generator: random source; a fixed seed gives a fixed result

    Returns:
        token_id: int
    """
    ids, probs = kept_candidates(scores, params)

    total = float(probs.sum())
    r = float(torch.rand((), generator=generator, dtype=torch.float64)) * total

    # First kept outcome whose running mass reaches the draw
    cumulative = probs.cumsum(dim=0)
    idx = int(torch.searchsorted(cumulative, torch.tensor([r], dtype=torch.float64))[0])
    if idx >= ids.shape[0]:
        return int(ids[0])
    return int(ids[idx])
