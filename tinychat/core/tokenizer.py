"""
tinychat :: Tokenizer

SentencePiece-style subword tokenizers: text ↔ token ids.

Two interchangeable backends behind one interface (SpmTokenizer):
  - UnigramTokenizer: Viterbi segmentation over a (piece, score) table
  - HFTokenizer:      segmentation by the HuggingFace tokenizers library

Both share the same vocabulary table (built from tokenizer.json) and the
same special-token resolution (special_tokens_map.json, optional).

INL - 2025
"""

import abc
import json
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from tinychat.core.logging import get_logger

logger = get_logger("tinychat.tokenizer")

WORD_BOUNDARY = "▁"  # ▁
UNK_LITERAL = "<unk>"

SPECIAL_ROLES = ("bos", "eos", "unk", "pad")
DEFAULT_SPECIAL_IDS = {"unk": 0, "bos": 1, "eos": 2, "pad": 3}
ABSENT = -1


class VocabularyNotFoundError(FileNotFoundError):
    """Vocabulary / tokenizer description could not be located."""


class MalformedVocabularyError(ValueError):
    """Vocabulary source exists but cannot be turned into a piece table."""


# =========================================================================
# Vocabulary
# =========================================================================

class Vocabulary:
    """
    Dense piece table: id → piece, piece → id.

    Ids are positions in the table. Sparse overrides grow the table;
    holes hold the empty piece. When a piece appears twice the later
    assignment wins for piece → id.
    """

    def __init__(self, pieces: Sequence[str] = (), scores: Optional[Sequence[float]] = None):
        self._id_to_piece: List[str] = []
        self._piece_to_id: Dict[str, int] = {}
        self._scores: List[float] = []
        for i, piece in enumerate(pieces):
            score = scores[i] if scores is not None else 0.0
            self.set(i, piece, score)

    def set(self, token_id: int, piece: str, score: float = 0.0):
        while len(self._id_to_piece) <= token_id:
            self._id_to_piece.append("")
            self._scores.append(0.0)
        self._id_to_piece[token_id] = piece
        self._scores[token_id] = float(score)
        self._piece_to_id[piece] = token_id

    def __len__(self) -> int:
        return len(self._id_to_piece)

    def __contains__(self, piece: str) -> bool:
        return piece in self._piece_to_id

    def get(self, piece: str) -> Optional[int]:
        return self._piece_to_id.get(piece)

    def piece(self, token_id: int) -> Optional[str]:
        if 0 <= token_id < len(self._id_to_piece):
            return self._id_to_piece[token_id]
        return None

    def score(self, token_id: int) -> float:
        return self._scores[token_id]

    def items(self) -> Iterable[Tuple[str, int]]:
        return self._piece_to_id.items()


def read_tokenizer_json(path: str) -> dict:
    """Read tokenizer.json. Missing → VocabularyNotFoundError."""
    if not os.path.isfile(path):
        raise VocabularyNotFoundError(f"Vocabulary source not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except (OSError, ValueError) as e:
        raise MalformedVocabularyError(f"Cannot parse {path}: {e}") from e
    if not isinstance(doc, dict):
        raise MalformedVocabularyError(f"{path}: expected a JSON object")
    return doc


def build_vocabulary(doc: dict) -> Vocabulary:
    """
    Build the piece table from a tokenizer description.

    model.vocab is either a list of [piece, score] pairs (unigram) or a
    {piece: id} mapping (BPE). added_tokens entries ({id, content}) may
    overwrite or extend the table at arbitrary ids.
    """
    model = doc.get("model")
    vocab = model.get("vocab") if isinstance(model, dict) else None
    if not vocab:
        raise MalformedVocabularyError("tokenizer description has no model.vocab")

    table = Vocabulary()
    if isinstance(vocab, list):
        for i, item in enumerate(vocab):
            if isinstance(item, (list, tuple)) and item and isinstance(item[0], str):
                score = item[1] if len(item) > 1 and isinstance(item[1], (int, float)) else 0.0
                table.set(i, item[0], score)
            elif isinstance(item, str):
                table.set(i, item, -1.0)
            else:
                raise MalformedVocabularyError(f"model.vocab[{i}]: expected [piece, score]")
    elif isinstance(vocab, dict):
        for piece, token_id in vocab.items():
            if not isinstance(token_id, int) or token_id < 0:
                raise MalformedVocabularyError(f"model.vocab[{piece!r}]: invalid id {token_id!r}")
            # No scores in a BPE table: uniform cost favours fewer pieces
            table.set(token_id, piece, -1.0)
    else:
        raise MalformedVocabularyError("model.vocab must be a list or an object")

    for tok in doc.get("added_tokens") or []:
        if not isinstance(tok, dict):
            continue
        token_id = tok.get("id")
        content = tok.get("content")
        if not isinstance(token_id, int) or token_id < 0 or not isinstance(content, str):
            continue
        table.set(token_id, content, 0.0)

    return table


# =========================================================================
# Special tokens
# =========================================================================

@dataclass
class SpecialTokens:
    """Resolved special-token ids. ABSENT (-1) marks an undefined role."""
    bos: int = DEFAULT_SPECIAL_IDS["bos"]
    eos: int = DEFAULT_SPECIAL_IDS["eos"]
    unk: int = DEFAULT_SPECIAL_IDS["unk"]
    pad: int = DEFAULT_SPECIAL_IDS["pad"]
    status: str = "defaults"
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {role: getattr(self, role) for role in SPECIAL_ROLES}


def _literal(value) -> Optional[str]:
    # special_tokens_map.json stores either "<s>" or {"content": "<s>", ...}
    if isinstance(value, dict):
        value = value.get("content")
    return value if isinstance(value, str) else None


def resolve_special_tokens(path: Optional[str], vocab: Vocabulary) -> SpecialTokens:
    """
    Resolve bos/eos/unk/pad from an optional side-channel document.

    Never raises: a missing or malformed document leaves the fallbacks
    {unk: 0, bos: 1, eos: 2, pad: 3} in place and records why.
    """
    tokens = SpecialTokens()
    if path is None:
        tokens.status = "defaults (no special-token map configured)"
        return tokens
    if not os.path.isfile(path):
        tokens.status = f"defaults (special-token map not found: {path})"
        logger.warning(f"Special-token map not found, using fallback ids: {path}")
        return tokens

    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except (OSError, ValueError) as e:
        tokens.status = f"defaults (special-token map unreadable: {e})"
        logger.warning(f"Failed to read special-token map {path}: {e}")
        return tokens
    if not isinstance(doc, dict):
        tokens.status = "defaults (special-token map is not an object)"
        logger.warning(f"Special-token map {path} is not a JSON object, using fallback ids")
        return tokens

    for role in SPECIAL_ROLES:
        literal = _literal(doc.get(f"{role}_token"))
        if literal is not None:
            token_id = vocab.get(literal)
            if token_id is not None:
                setattr(tokens, role, token_id)
            else:
                tokens.warnings.append(f"{role}_token {literal!r} not in vocabulary")

        # Direct ids take precedence; an explicit null means "no such token"
        key = f"{role}_token_id"
        if key in doc:
            value = doc[key]
            if value is None:
                setattr(tokens, role, ABSENT)
            elif isinstance(value, int) and not isinstance(value, bool) and 0 <= value < len(vocab):
                setattr(tokens, role, value)
            else:
                tokens.warnings.append(f"{key}={value!r} out of range")

    for msg in tokens.warnings:
        logger.warning(f"Special-token map {path}: {msg}")
    tokens.status = "loaded" if not tokens.warnings else "loaded with warnings"
    return tokens


# =========================================================================
# Tokenizers
# =========================================================================

class SpmTokenizer(abc.ABC):
    """
    Tokenizer capability: encode, decode, special-token ids.

    Subclasses only decide how text is split into pieces (segment()).
    Piece → id mapping, special tokens and decoding are shared.
    """

    def __init__(self, vocab: Vocabulary, special_tokens_path: Optional[str] = None):
        if len(vocab) == 0:
            raise MalformedVocabularyError("empty vocabulary")
        self.vocab = vocab
        self.special_tokens = resolve_special_tokens(special_tokens_path, vocab)

    @abc.abstractmethod
    def segment(self, text: str) -> List[str]:
        """Split text into vocabulary pieces."""

    # --- special tokens ---

    @property
    def bos_id(self) -> int:
        return self.special_tokens.bos

    @property
    def eos_id(self) -> int:
        return self.special_tokens.eos

    @property
    def unk_id(self) -> int:
        return self.special_tokens.unk

    @property
    def pad_id(self) -> int:
        return self.special_tokens.pad

    @property
    def special_tokens_status(self) -> str:
        return self.special_tokens.status

    def special_token_ids(self) -> Dict[str, int]:
        return self.special_tokens.as_dict()

    @property
    def vocab_size(self) -> int:
        return len(self.vocab)

    # --- conversion ---

    def piece_to_id(self, piece: str) -> int:
        token_id = self.vocab.get(piece)
        return token_id if token_id is not None else self.unk_id

    def id_to_piece(self, token_id: int) -> str:
        piece = self.vocab.piece(token_id)
        return piece if piece is not None else UNK_LITERAL

    def encode(self, text: str, add_bos: bool = False, add_eos: bool = False) -> List[int]:
        """Text → token ids. Unknown pieces map to UNK; never fails."""
        ids: List[int] = []
        if add_bos and self.bos_id >= 0:
            ids.append(self.bos_id)
        ids.extend(self.piece_to_id(piece) for piece in self.segment(text or ""))
        if add_eos and self.eos_id >= 0:
            ids.append(self.eos_id)
        return ids

    def decode(self, token_ids: Iterable[int]) -> str:
        """Token ids → text. BOS/EOS/PAD are dropped; unknown ids decode as <unk>."""
        skip = {i for i in (self.bos_id, self.eos_id, self.pad_id) if i >= 0}
        pieces = []
        for token_id in token_ids:
            token_id = int(token_id)
            if token_id in skip:
                continue
            pieces.append(self.id_to_piece(token_id))
        return "".join(pieces).replace(WORD_BOUNDARY, " ").strip()


class UnigramTokenizer(SpmTokenizer):
    """
    Unigram segmentation over a (piece, score) table.

    Normalization follows SentencePiece defaults: whitespace runs collapse
    to a single ▁ and a ▁ is prefixed to the text. Segmentation is the
    Viterbi path maximizing the summed piece scores. A character no piece
    covers becomes its own piece (→ UNK).
    """

    def __init__(
        self,
        pieces: Sequence[Tuple[str, float]],
        special_tokens_path: Optional[str] = None,
        added_tokens: Optional[Dict[int, str]] = None,
    ):
        vocab = Vocabulary([p for p, _ in pieces], [s for _, s in pieces])
        for token_id, content in (added_tokens or {}).items():
            vocab.set(token_id, content, 0.0)
        self._init_from_vocab(vocab, special_tokens_path)

    @classmethod
    def from_vocabulary(cls, vocab: Vocabulary, special_tokens_path: Optional[str] = None) -> "UnigramTokenizer":
        tok = cls.__new__(cls)
        tok._init_from_vocab(vocab, special_tokens_path)
        return tok

    def _init_from_vocab(self, vocab: Vocabulary, special_tokens_path: Optional[str]):
        super().__init__(vocab, special_tokens_path)
        special = {i for i in self.special_tokens.as_dict().values() if i >= 0}
        self._piece_scores: Dict[str, float] = {
            piece: vocab.score(token_id)
            for piece, token_id in vocab.items()
            if piece and token_id not in special
        }
        self._max_piece_len = max((len(p) for p in self._piece_scores), default=1)
        lowest = min(self._piece_scores.values(), default=0.0)
        self._unk_score = min(lowest, 0.0) - 10.0

    @staticmethod
    def normalize(text: str) -> str:
        words = text.split()
        if not words:
            return WORD_BOUNDARY if text else ""
        return WORD_BOUNDARY + WORD_BOUNDARY.join(words)

    def segment(self, text: str) -> List[str]:
        s = self.normalize(text)
        n = len(s)
        if n == 0:
            return []

        best: List[Optional[float]] = [None] * (n + 1)
        back = [0] * (n + 1)
        best[0] = 0.0
        for end in range(1, n + 1):
            for start in range(max(0, end - self._max_piece_len), end):
                if best[start] is None:
                    continue
                piece_score = self._piece_scores.get(s[start:end])
                if piece_score is None:
                    if end - start != 1:
                        continue
                    piece_score = self._unk_score
                candidate = best[start] + piece_score
                if best[end] is None or candidate > best[end]:
                    best[end] = candidate
                    back[end] = start

        pieces = []
        end = n
        while end > 0:
            start = back[end]
            pieces.append(s[start:end])
            end = start
        pieces.reverse()
        return pieces


class HFTokenizer(SpmTokenizer):
    """
    Segmentation by the HuggingFace tokenizers library.

    Uses the full pipeline in tokenizer.json (normalizer, pre-tokenizer,
    model) for splitting, then maps pieces through the shared table so
    added_tokens overrides and UNK fallback apply.
    """

    def __init__(self, tokenizer_path: str, special_tokens_path: Optional[str] = None):
        from tokenizers import Tokenizer

        doc = read_tokenizer_json(tokenizer_path)
        super().__init__(build_vocabulary(doc), special_tokens_path)
        self.tokenizer = Tokenizer.from_file(tokenizer_path)

    def segment(self, text: str) -> List[str]:
        if not text:
            return []
        return self.tokenizer.encode(text, add_special_tokens=False).tokens


def load_tokenizer(
    model_dir: str,
    backend: str = "auto",
    tokenizer_file: str = "tokenizer.json",
    special_tokens_file: Optional[str] = "special_tokens_map.json",
) -> SpmTokenizer:
    """
    Load a tokenizer from a model directory.

    backend:
        "unigram" → UnigramTokenizer over model.vocab
        "hf"      → HFTokenizer (tokenizers library)
        "auto"    → "hf" when tokenizer.json describes a full pipeline
                    (model.type present), else "unigram"
    """
    tokenizer_path = os.path.join(model_dir, tokenizer_file)
    special_path = os.path.join(model_dir, special_tokens_file) if special_tokens_file else None

    doc = read_tokenizer_json(tokenizer_path)
    if backend == "auto":
        model = doc.get("model")
        backend = "hf" if isinstance(model, dict) and "type" in model else "unigram"

    if backend == "hf":
        tok = HFTokenizer(tokenizer_path, special_path)
    elif backend == "unigram":
        tok = UnigramTokenizer.from_vocabulary(build_vocabulary(doc), special_path)
    else:
        raise ValueError(f"Unknown tokenizer backend: {backend}. Available: auto, hf, unigram")

    logger.info(
        f"tokenizer: {tokenizer_path} ({type(tok).__name__}, vocab={tok.vocab_size}, "
        f"special={tok.special_token_ids()}, {tok.special_tokens_status})"
    )
    return tok
