"""
tinychat: Local interactive chat over a pretrained causal language model.

One turn, end to end:

  Tokenizer:  text → token ids (subword pieces, special-token aware)
  Engine:     rolling context + prompt → sliding window → step loop
  Model:      ids → next-token scores (opaque tensor port)
  Sampler:    scores → one id (temperature, top-k, top-p)
  Tokenizer:  ids → reply text

INL - 2025
"""

__version__ = "0.1.0"
