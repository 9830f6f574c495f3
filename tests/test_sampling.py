"""
tinychat :: Test Sampling

Tests:
  - top-k = 1 always returns the argmax
  - sampled id always inside the kept set
  - top-k = 0, top-p = 0 reaches the full distribution
  - nucleus cut position, stable tie ranking
  - temperature clamp, -inf scores, determinism under a seed
  - parameter validation

Run:
    python -m pytest tests/test_sampling.py -v

INL - 2025
"""

import math
import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tinychat.core.sampling import SamplingParams, sample_token, kept_candidates


def _gen(seed: int) -> torch.Generator:
    g = torch.Generator()
    g.manual_seed(seed)
    return g


class TestTopK:
    def test_top_k_one_is_argmax(self):
        scores = torch.tensor([10.0, 1.0, 1.0, 1.0])
        for top_p in (0.0, 0.3, 0.9, 1.0):
            params = SamplingParams(temperature=1.0, top_k=1, top_p=top_p)
            for seed in range(20):
                assert sample_token(scores, params, _gen(seed)) == 0

    def test_top_k_one_ignores_temperature(self):
        scores = torch.tensor([0.1, 0.3, 0.29, 0.2])
        params = SamplingParams(temperature=50.0, top_k=1)
        for seed in range(20):
            assert sample_token(scores, params, _gen(seed)) == 1

    def test_top_k_larger_than_vocab(self):
        ids, probs = kept_candidates(torch.tensor([1.0, 2.0]), SamplingParams(top_k=10))
        assert ids.tolist() == [1, 0]

    def test_top_k_restricts_draws(self):
        scores = torch.tensor([5.0, 4.0, 3.0, 2.0, 1.0, 0.0])
        params = SamplingParams(temperature=2.0, top_k=3)
        gen = _gen(0)
        seen = {sample_token(scores, params, gen) for _ in range(300)}
        assert seen <= {0, 1, 2}
        assert len(seen) == 3


class TestTopP:
    SCORES = torch.log(torch.tensor([0.5, 0.3, 0.15, 0.05]))

    def test_cut_after_threshold_reached(self):
        ids, _ = kept_candidates(self.SCORES, SamplingParams(top_p=0.75))
        assert ids.tolist() == [0, 1]

    def test_first_outcome_alone(self):
        ids, _ = kept_candidates(self.SCORES, SamplingParams(top_p=0.45))
        assert ids.tolist() == [0]

    @pytest.mark.parametrize("top_p", [0.0, 1.0])
    def test_disabled(self, top_p):
        ids, probs = kept_candidates(self.SCORES, SamplingParams(top_p=top_p))
        assert ids.tolist() == [0, 1, 2, 3]
        assert math.isclose(float(probs.sum()), 1.0, rel_tol=1e-9)

    def test_applies_within_top_k(self):
        ids, _ = kept_candidates(self.SCORES, SamplingParams(top_k=3, top_p=0.9))
        assert ids.tolist() == [0, 1, 2]


class TestDistribution:
    def test_sample_always_in_kept_set(self):
        gen = _gen(1234)
        for trial in range(50):
            scores = torch.randn(32, generator=gen) * 3
            params = SamplingParams(temperature=0.7, top_k=8, top_p=0.6)
            kept, _ = kept_candidates(scores, params)
            kept = set(kept.tolist())
            for _ in range(10):
                assert sample_token(scores, params, gen) in kept

    def test_full_distribution_reachable(self):
        scores = torch.zeros(4)
        params = SamplingParams(temperature=1.0, top_k=0, top_p=0.0)
        gen = _gen(7)
        seen = {sample_token(scores, params, gen) for _ in range(400)}
        assert seen == {0, 1, 2, 3}

    def test_stable_tie_order(self):
        ids, _ = kept_candidates(torch.tensor([1.0, 3.0, 3.0, 0.0]), SamplingParams())
        assert ids.tolist() == [1, 2, 0, 3]
        ids, _ = kept_candidates(torch.tensor([3.0, 3.0, 3.0]), SamplingParams(top_k=2))
        assert ids.tolist() == [0, 1]

    def test_tiny_temperature_is_greedy(self):
        scores = torch.tensor([1.0, 2.0, 3.0])
        params = SamplingParams(temperature=1e-9)
        for seed in range(10):
            assert sample_token(scores, params, _gen(seed)) == 2

    def test_neg_inf_never_sampled(self):
        scores = torch.tensor([0.0, float("-inf"), 0.0])
        params = SamplingParams(temperature=1.0, top_k=0, top_p=1.0)
        gen = _gen(3)
        draws = [sample_token(scores, params, gen) for _ in range(200)]
        assert 1 not in draws

    def test_all_neg_inf_returns_zero(self):
        scores = torch.full((5,), float("-inf"))
        params = SamplingParams(temperature=1.0, top_k=0, top_p=1.0)
        assert {sample_token(scores, params, _gen(seed)) for seed in range(20)} == {0}
        assert sample_token(scores, SamplingParams(top_k=3, top_p=0.5), _gen(0)) == 0

    def test_pos_inf_takes_all_mass(self):
        scores = torch.tensor([0.0, float("inf"), 0.0, 0.0])
        params = SamplingParams(temperature=1.0, top_k=0, top_p=1.0)
        assert {sample_token(scores, params, _gen(seed)) for seed in range(20)} == {1}

    def test_several_pos_inf_share_mass(self):
        scores = torch.tensor([float("inf"), 0.0, float("inf")])
        ids, probs = kept_candidates(scores, SamplingParams(top_k=0, top_p=1.0))
        assert ids.tolist()[:2] == [0, 2]
        assert probs.tolist()[:2] == [0.5, 0.5]
        assert probs[2:].sum().item() == 0.0

    def test_nan_treated_as_suppressed(self):
        scores = torch.tensor([float("nan"), 1.0, 0.0])
        params = SamplingParams(temperature=1.0, top_k=0, top_p=1.0)
        draws = {sample_token(scores, params, _gen(seed)) for seed in range(50)}
        assert 0 not in draws

    def test_accepts_lists(self):
        assert sample_token([0.0, 9.0, 0.0], SamplingParams(top_k=1)) == 1

    def test_empty_scores_rejected(self):
        with pytest.raises(ValueError):
            sample_token(torch.tensor([]), SamplingParams())


class TestDeterminism:
    def test_same_seed_same_output(self):
        scores = torch.randn(100, generator=_gen(0))
        params = SamplingParams(temperature=1.3, top_k=50, top_p=0.95)
        a = [sample_token(scores, params, _gen(42)) for _ in range(5)]
        b = [sample_token(scores, params, _gen(42)) for _ in range(5)]
        assert a == b

    def test_params_seed_generator(self):
        scores = torch.randn(100, generator=_gen(1))
        params = SamplingParams(temperature=1.0, seed=99)
        g1, g2 = params.make_generator(), params.make_generator()
        assert [sample_token(scores, params, g1) for _ in range(10)] == \
               [sample_token(scores, params, g2) for _ in range(10)]

    def test_no_seed_no_generator(self):
        assert SamplingParams().make_generator() is None


class TestValidation:
    @pytest.mark.parametrize("kwargs", [
        {"temperature": 0.0},
        {"temperature": -1.0},
        {"top_k": -1},
        {"top_p": -0.1},
        {"top_p": 1.5},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            SamplingParams(**kwargs)
