"""
tinychat :: Model Port

The engine's only view of the model: named tensors in, named tensors out.

  in:   input_ids       (1, seq_len) int64
        attention_mask  (1, seq_len) int64, all ones
  out:  logits          (1, seq_len, vocab_size) float
                        or a single-step layout (1, vocab_size) / (1, 1, vocab_size)

The runtime behind the port is opaque. No state is carried between calls:
every step passes the complete sequence.

INL - 2025
"""

import os
from typing import Dict, Mapping, Optional

import torch

from tinychat.core.logging import get_logger

logger = get_logger("tinychat.model_port")


class ModelContractError(RuntimeError):
    """The port's output does not match the declared tensor contract."""


class ModelPort:
    """Interface: run(inputs) → outputs, both keyed by tensor name."""

    def run(self, inputs: Dict[str, torch.Tensor]) -> Mapping[str, torch.Tensor]:
        raise NotImplementedError


def extract_last_scores(
    outputs: Mapping[str, torch.Tensor],
    name: str,
    seq_len: int,
    vocab_size: int,
) -> torch.Tensor:
    """
    Read the score vector of the final sequence position.

    Multi-step layout (1, seq_len, V): offset (seq_len - 1) * V.
    Single-step layout (1, V) or (1, 1, V): offset 0.

    Raises:
        ModelContractError: output missing, not floating point, or its
        shape disagrees with the vocabulary size / sequence length.
    """
    if outputs is None or name not in outputs:
        available = ", ".join(outputs.keys()) if outputs else "none"
        raise ModelContractError(f"Model output '{name}' not found (available: {available})")

    logits = outputs[name]
    if not isinstance(logits, torch.Tensor):
        logits = torch.as_tensor(logits)
    if not logits.is_floating_point():
        raise ModelContractError(f"Model output '{name}' has dtype {logits.dtype}, expected float")

    shape = tuple(logits.shape)
    if len(shape) not in (2, 3) or shape[0] != 1:
        raise ModelContractError(f"Model output '{name}' has shape {shape}, expected (1, seq, vocab)")

    reported_vocab = shape[-1]
    if reported_vocab != vocab_size:
        raise ModelContractError(
            f"Model output '{name}' vocabulary size {reported_vocab} != tokenizer vocabulary size {vocab_size}"
        )

    steps = 1 if len(shape) == 2 else shape[1]
    if steps == 1:
        offset = 0
    elif steps == seq_len:
        offset = (seq_len - 1) * vocab_size
    else:
        raise ModelContractError(
            f"Model output '{name}' has {steps} time steps for an input of length {seq_len}"
        )

    flat = logits.reshape(-1)
    if flat.shape[0] < offset + vocab_size:
        raise ModelContractError(
            f"Model output '{name}' buffer holds {flat.shape[0]} values, need {offset + vocab_size}"
        )
    return flat[offset:offset + vocab_size].float()


class TorchModelPort(ModelPort):
    """
    Port over a torch module called as module(input_ids=..., attention_mask=...).

    The module may return a tensor, a mapping, or an object with a
    .logits attribute (HuggingFace CausalLMOutput).
    """

    def __init__(
        self,
        module: torch.nn.Module,
        device: str = "cpu",
        input_ids_name: str = "input_ids",
        attention_mask_name: str = "attention_mask",
        logits_name: str = "logits",
    ):
        self.module = module
        self.device = device
        self.input_ids_name = input_ids_name
        self.attention_mask_name = attention_mask_name
        self.logits_name = logits_name

    def run(self, inputs: Dict[str, torch.Tensor]) -> Mapping[str, torch.Tensor]:
        feed = {
            "input_ids": inputs[self.input_ids_name].to(self.device),
            "attention_mask": inputs[self.attention_mask_name].to(self.device),
        }
        try:
            with torch.no_grad():
                out = self.module(**feed)
        except (RuntimeError, IndexError) as e:
            # Out-of-range ids in the embedding surface here, before any shape check
            raise ModelContractError(f"Model runtime failed: {type(e).__name__}: {e}") from e

        if isinstance(out, torch.Tensor):
            return {self.logits_name: out.cpu()}
        if isinstance(out, Mapping):
            result = {k: v.cpu() if isinstance(v, torch.Tensor) else v for k, v in out.items()}
            if self.logits_name not in result and "logits" in result:
                result[self.logits_name] = result.pop("logits")
            return result
        logits = getattr(out, "logits", None)
        if logits is None:
            return {}
        return {self.logits_name: logits.cpu()}


def load_hf_model_port(
    model_dir: str,
    device: Optional[str] = None,
    dtype: str = "float32",
    logits_name: str = "logits",
) -> TorchModelPort:
    """
    Build a port over a HuggingFace causal LM directory.

    Model loading itself is delegated to transformers.
    """
    if not os.path.isdir(model_dir):
        raise FileNotFoundError(f"Model directory not found: {model_dir}")

    from transformers import AutoModelForCausalLM

    dtype_map = {"float16": torch.float16, "bfloat16": torch.bfloat16, "float32": torch.float32}
    device = device or ("cuda" if torch.cuda.is_available() else "cpu")
    torch_dtype = dtype_map[dtype]
    # CPU has no fast fp16 path
    if device == "cpu" and torch_dtype != torch.float32:
        logger.info("CPU detected, overriding dtype to float32")
        torch_dtype = torch.float32

    model = AutoModelForCausalLM.from_pretrained(model_dir, torch_dtype=torch_dtype)
    model.to(device)
    model.eval()
    logger.info(f"model: {model_dir} ({type(model).__name__}, device={device}, dtype={torch_dtype})")
    return TorchModelPort(model, device=device, logits_name=logits_name)
