"""
tinychat :: Config

Static configuration, fixed for the lifetime of an engine:
  - GenerationConfig: sampling + loop bounds + port tensor names
  - SourcePaths: where the tokenizer / special-token map / model live

A model directory may ship a generation_config.json; its known keys
seed GenerationConfig and explicit overrides win.

INL - 2025
"""

import json
import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from tinychat.core.sampling import SamplingParams


@dataclass
class GenerationConfig:
    """
    Generation tunables.

    temperature:  (0, inf), recommended [0.2, 2.0]
    top_k:        [0, V], 0 disables
    top_p:        [0, 1], <= 0 or >= 1 disables
    """
    # Sampling
    temperature: float = 0.9
    top_k: int = 40
    top_p: float = 0.9
    seed: Optional[int] = None

    # Loop bounds
    max_new_tokens: int = 64
    max_context_tokens: int = 512
    suppress_eos_on_first_step: bool = True

    # Model port tensor names
    input_ids_name: str = "input_ids"
    attention_mask_name: str = "attention_mask"
    logits_name: str = "logits"

    def __post_init__(self):
        if not self.temperature > 0:
            raise ValueError(f"temperature must be > 0, got {self.temperature}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be >= 0, got {self.top_k}")
        if not 0.0 <= self.top_p <= 1.0:
            raise ValueError(f"top_p must be in [0, 1], got {self.top_p}")
        if self.max_new_tokens < 0:
            raise ValueError(f"max_new_tokens must be >= 0, got {self.max_new_tokens}")
        if self.max_context_tokens < 1:
            raise ValueError(f"max_context_tokens must be >= 1, got {self.max_context_tokens}")
        for name in ("input_ids_name", "attention_mask_name", "logits_name"):
            if not getattr(self, name):
                raise ValueError(f"{name} must not be empty")

    def to_sampling_params(self) -> SamplingParams:
        return SamplingParams(
            temperature=self.temperature,
            top_k=self.top_k,
            top_p=self.top_p,
            seed=self.seed,
        )

    def override(self, **kwargs) -> "GenerationConfig":
        """Copy with the non-None keyword values replaced."""
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})

    @staticmethod
    def from_dict(data: dict) -> "GenerationConfig":
        """Build from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(GenerationConfig)}
        return GenerationConfig(**{k: v for k, v in data.items() if k in known})

    @staticmethod
    def from_json(path: str) -> "GenerationConfig":
        """Load from a generation_config.json."""
        with open(path, "r") as f:
            data = json.load(f)
        if "max_length" in data and "max_context_tokens" not in data:
            data["max_context_tokens"] = data["max_length"]
        return GenerationConfig.from_dict(data)


@dataclass
class SourcePaths:
    """File locators inside a model directory."""
    model_dir: str
    tokenizer_file: str = "tokenizer.json"
    special_tokens_file: str = "special_tokens_map.json"
    generation_file: str = "generation_config.json"

    def resolve(self, name: str) -> str:
        return os.path.join(self.model_dir, name)

    @property
    def tokenizer_path(self) -> str:
        return self.resolve(self.tokenizer_file)

    @property
    def special_tokens_path(self) -> str:
        return self.resolve(self.special_tokens_file)

    @property
    def generation_path(self) -> str:
        return self.resolve(self.generation_file)

    def load_generation_config(self) -> GenerationConfig:
        """generation_config.json if present, defaults otherwise."""
        if os.path.isfile(self.generation_path):
            return GenerationConfig.from_json(self.generation_path)
        return GenerationConfig()
