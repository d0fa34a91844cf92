"""
SeqForge Options Store
=======================
Hierarchical key → value options that flow from the experiment config into
every sub-model constructor.

Two layers live here:

    Options          Immutable ordered mapping with typed accessors. Sub-model
                     builders never mutate it; they create shadowing copies
                     with ``with_overrides`` / ``overlay``.
    SubModelConfig   The explicit, validated record a single encoder, decoder
                     or classifier is built from. Keys the core does not know
                     about are carried along in ``extras``.

Keys are stored hyphenated (``dim-vocabs``), which is also how they appear in
YAML files. Python-style underscored keys are normalised on the way in, so
``opts.with_overrides(dim_vocabs=[...])`` and ``opts.get("dim-vocabs")``
refer to the same entry.

Usage:
    >>> opts = Options.from_dict({"type": "transformer", "dim-vocabs": [800, 900]})
    >>> enc = opts.with_overrides(type="bert-encoder", index=0)
    >>> enc.get_str("type"), opts.get_str("type")
    ('bert-encoder', 'transformer')
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

logger = logging.getLogger(__name__)

_MISSING = object()


def normalize_key(key: str) -> str:
    """Map ``dim_vocabs`` and ``dim-vocabs`` to the same canonical key."""
    return key.replace("_", "-")


class Options(Mapping):
    """
    Read-only options dictionary.

    Parameters
    ----------
    values : Mapping or None
        Initial key/value pairs. Keys are normalised to hyphenated form.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: dict[str, Any] = {}
        for key, value in (values or {}).items():
            self._values[normalize_key(key)] = value

    # -- Mapping protocol ---------------------------------------------------

    def __getitem__(self, key: str) -> Any:
        return self._values[normalize_key(key)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and normalize_key(key) in self._values

    # -- construction -------------------------------------------------------

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> Options:
        return cls(values)

    @classmethod
    def from_config(cls, config: Any) -> Options:
        """Build options from a dataclass config such as ``ModelConfig``."""
        return cls(asdict(config))

    @classmethod
    def from_yaml(cls, path: str | Path) -> Options:
        """
        Load a flat options mapping from a YAML file.

        If the file holds a full experiment config, only its ``model``
        section is used.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Options file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ValueError(f"Options file is empty: {path}")
        if not isinstance(raw, dict):
            raise ValueError(
                f"Options file must contain a mapping, got {type(raw).__name__}"
            )
        if isinstance(raw.get("model"), dict):
            raw = raw["model"]
        return cls(raw)

    def with_overrides(self, **overrides: Any) -> Options:
        """Return a copy in which ``overrides`` shadow existing keys."""
        return self.overlay(overrides)

    def overlay(self, overrides: Mapping[str, Any]) -> Options:
        merged = dict(self._values)
        for key, value in overrides.items():
            merged[normalize_key(key)] = value
        return Options(merged)

    # -- typed accessors ----------------------------------------------------

    def has(self, key: str) -> bool:
        return key in self

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(normalize_key(key), default)

    def _require(self, key: str, default: Any) -> Any:
        value = self._values.get(normalize_key(key), default)
        if value is _MISSING:
            raise KeyError(f"Required option '{normalize_key(key)}' is not set")
        return value

    def get_str(self, key: str, default: Any = _MISSING) -> str:
        value = self._require(key, default)
        if not isinstance(value, str):
            raise TypeError(
                f"Option '{key}' must be a string, got {type(value).__name__}"
            )
        return value

    def get_int(self, key: str, default: Any = _MISSING) -> int:
        value = self._require(key, default)
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(
                f"Option '{key}' must be an integer, got {type(value).__name__}"
            )
        return value

    def get_float(self, key: str, default: Any = _MISSING) -> float:
        value = self._require(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(
                f"Option '{key}' must be a number, got {type(value).__name__}"
            )
        return float(value)

    def get_bool(self, key: str, default: Any = _MISSING) -> bool:
        value = self._require(key, default)
        if not isinstance(value, bool):
            raise TypeError(
                f"Option '{key}' must be a boolean, got {type(value).__name__}"
            )
        return value

    def get_int_list(self, key: str, default: Any = _MISSING) -> list[int]:
        value = self._require(key, default)
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            raise TypeError(
                f"Option '{key}' must be a list of integers, "
                f"got {type(value).__name__}"
            )
        return [int(v) for v in value]

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def __repr__(self) -> str:
        items = ", ".join(f"{k}={v!r}" for k, v in self._values.items())
        return f"Options({items})"


@dataclass(frozen=True)
class SubModelConfig:
    """
    Validated configuration for one sub-model.

    Parameters
    ----------
    type : str
        Sub-model type, e.g. ``"transformer"`` or ``"bert-masked-lm"``.
    prefix : str
        Parameter-name prefix inside the shared graph. Two sub-models with the
        same prefix share their parameters.
    index : int
        Data stream this sub-model reads from.
    dim_vocabs : tuple[int, ...]
        Vocabulary size per stream.
    dim_emb : int
        Embedding / model width.
    dim_rnn : int
        Hidden size of recurrent cells (s2s models).
    transformer_heads : int
        Attention heads per transformer layer.
    transformer_dim_ffn : int
        Inner width of the transformer feed-forward block.
    enc_depth, dec_depth : int
        Number of stacked encoder / decoder layers.
    dropout : float
        Dropout used throughout the sub-model.
    label_smoothing : float
        Label smoothing applied to the training loss of output layers.
    tied_embeddings : bool
        Tie the output projection to the target embedding matrix.
    max_length : int
        Longest sequence supported by positional encodings.
    bert_type_vocab_size : int
        Number of segment (sentence A/B) types for BERT encoders.
    num_classes : int
        Output classes for ``bert-classifier`` heads.
    dim_context : int
        Width of the encoder states a decoder attends to. Set by the
        encoder-decoder builder; 0 means the decoder runs without encoder.
    extras : dict
        Pass-through keys not interpreted by the core.
    """

    type: str
    prefix: str = ""
    index: int = 0
    dim_vocabs: tuple[int, ...] = ()
    dim_emb: int = 512
    dim_rnn: int = 1024
    transformer_heads: int = 8
    transformer_dim_ffn: int = 2048
    enc_depth: int = 6
    dec_depth: int = 6
    dropout: float = 0.1
    label_smoothing: float = 0.0
    tied_embeddings: bool = False
    max_length: int = 256
    bert_type_vocab_size: int = 2
    num_classes: int = 2
    dim_context: int = 0
    extras: dict = field(default_factory=dict)

    @classmethod
    def from_options(cls, options: Options) -> SubModelConfig:
        """Validated overlay step: pull known keys, keep the rest in ``extras``."""
        known = {f.name for f in fields(cls)} - {"extras"}
        values: dict[str, Any] = {}
        extras: dict[str, Any] = {}
        for key, value in options.items():
            attr = key.replace("-", "_")
            if attr in known:
                values[attr] = value
            else:
                extras[key] = value

        if "type" not in values:
            raise ValueError("Sub-model options must define 'type'")
        if "dim_vocabs" in values:
            values["dim_vocabs"] = tuple(int(v) for v in values["dim_vocabs"])
        for name in ("index", "dim_emb", "dim_rnn", "transformer_heads",
                     "transformer_dim_ffn", "enc_depth", "dec_depth",
                     "max_length", "bert_type_vocab_size", "num_classes",
                     "dim_context"):
            if name in values:
                values[name] = int(values[name])
        for name in ("dropout", "label_smoothing"):
            if name in values:
                values[name] = float(values[name])

        config = cls(extras=extras, **values)
        config.validate()
        return config

    def validate(self) -> None:
        """
        Raises
        ------
        ValueError
            If any field is out of range.
        """
        if self.index < 0:
            raise ValueError(f"index must be >= 0, got {self.index}")
        if not self.dim_vocabs:
            raise ValueError("dim-vocabs must list at least one vocabulary size")
        if any(v <= 0 for v in self.dim_vocabs):
            raise ValueError(f"dim-vocabs must be positive, got {list(self.dim_vocabs)}")
        if self.dim_emb <= 0:
            raise ValueError(f"dim-emb must be positive, got {self.dim_emb}")
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError(f"dropout must be in [0, 1), got {self.dropout}")
        if not 0.0 <= self.label_smoothing < 1.0:
            raise ValueError(
                f"label-smoothing must be in [0, 1), got {self.label_smoothing}"
            )

    def vocab_size(self, index: Optional[int] = None) -> int:
        """Vocabulary size of stream ``index`` (defaults to this sub-model's stream)."""
        index = self.index if index is None else index
        if index >= len(self.dim_vocabs):
            raise ValueError(
                f"No vocabulary size for stream {index}: dim-vocabs has only "
                f"{len(self.dim_vocabs)} entries ({list(self.dim_vocabs)})"
            )
        return self.dim_vocabs[index]

    def name(self, suffix: str) -> str:
        """Fully-qualified parameter name under this sub-model's prefix."""
        return f"{self.prefix}_{suffix}" if self.prefix else suffix
