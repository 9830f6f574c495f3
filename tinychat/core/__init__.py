"""
tinychat :: Core

Building blocks the engine composes:
  - tokenizer: text ↔ token ids, special tokens
  - sampling: score vector → token id
  - model_port: tensor contract with the model runtime
  - config: generation tunables and source locators
"""

from tinychat.core.tokenizer import (
    SpmTokenizer, UnigramTokenizer, HFTokenizer, load_tokenizer,
    VocabularyNotFoundError, MalformedVocabularyError,
)
from tinychat.core.sampling import SamplingParams, sample_token, kept_candidates
from tinychat.core.model_port import ModelPort, TorchModelPort, ModelContractError, extract_last_scores
from tinychat.core.config import GenerationConfig, SourcePaths
