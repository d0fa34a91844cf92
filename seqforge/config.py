"""
SeqForge Configuration System
==============================
Centralized experiment configuration using Python dataclasses. Architecture
sizes, the model-type token and the optimizer-side settings (including
gradient clipping) all live here.

The model factory does not read these dataclasses directly. It reads an
``Options`` view produced by ``SeqForgeConfig.to_options()``, so that each
sub-model can shadow individual keys without touching the shared config.

Usage:
    # Load from YAML file:
    >>> config = SeqForgeConfig.from_yaml("configs/transformer.yaml")

    # Create programmatically:
    >>> config = SeqForgeConfig(
    ...     model=ModelConfig(type="transformer12-bert0", dim_vocabs=[8000, 8000, 8000]),
    ...     training=TrainingConfig(clip_method="norm", clip_norm=1.0),
    ... )

    # Hand over to the factory:
    >>> model = from_options(config.to_options(), config.training.usage)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

import torch
import yaml

from seqforge.options import Options

logger = logging.getLogger(__name__)


# =============================================================================
# Model Configuration
# =============================================================================

@dataclass
class ModelConfig:
    """
    Architecture hyperparameters shared by every sub-model.

    Parameters
    ----------
    type : str
        Model-type token, e.g. ``"transformer"``, ``"bert"`` or
        ``"transformer12-bert0-gpt2"``.

    dim_vocabs : list[int]
        Vocabulary size of every data stream, in stream order.

    dim_emb : int
        Embedding size, also the transformer model width.

    dim_rnn : int
        Hidden size of GRU cells in s2s encoders and decoders.

    transformer_heads : int
        Attention heads per transformer layer. Must divide dim_emb.

    transformer_dim_ffn : int
        Inner width of the transformer feed-forward block.

    enc_depth, dec_depth : int
        Number of stacked encoder / decoder layers.

    dropout : float
        Dropout probability used inside sub-models.

    label_smoothing : float
        Label smoothing for training losses. Masked-LM heads override it to 0.

    tied_embeddings : bool
        Share the decoder output projection with the target embeddings.

    max_length : int
        Longest sequence the positional encodings cover.

    bert_type_vocab_size : int
        Number of sentence types (segment ids) for BERT encoders.

    num_classes : int
        Number of labels predicted by ``bert-classifier`` heads.
    """
    type: str = "transformer"
    dim_vocabs: list[int] = field(default_factory=lambda: [32000, 32000])
    dim_emb: int = 512
    dim_rnn: int = 1024
    transformer_heads: int = 8
    transformer_dim_ffn: int = 2048
    enc_depth: int = 6
    dec_depth: int = 6
    dropout: float = 0.1
    label_smoothing: float = 0.1
    tied_embeddings: bool = False
    max_length: int = 256
    bert_type_vocab_size: int = 2
    num_classes: int = 2

    def validate(self) -> None:
        """
        Check that all model parameters are valid and consistent.

        Raises
        ------
        ValueError
            If any parameter is invalid or inconsistent with others.
        """
        if not self.type:
            raise ValueError("type must be a non-empty model-type token")
        if not self.dim_vocabs:
            raise ValueError("dim_vocabs must list at least one vocabulary size")
        if any(v <= 0 for v in self.dim_vocabs):
            raise ValueError(f"dim_vocabs must be positive, got {self.dim_vocabs}")
        if self.dim_emb <= 0:
            raise ValueError(f"dim_emb must be positive, got {self.dim_emb}")
        if self.dim_emb % self.transformer_heads != 0:
            raise ValueError(
                f"dim_emb ({self.dim_emb}) must be divisible by "
                f"transformer_heads ({self.transformer_heads})"
            )
        if self.enc_depth < 1 or self.dec_depth < 1:
            raise ValueError(
                f"enc_depth and dec_depth must be >= 1, got "
                f"{self.enc_depth}/{self.dec_depth}"
            )
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError(f"dropout must be in [0, 1), got {self.dropout}")
        if not 0.0 <= self.label_smoothing < 1.0:
            raise ValueError(
                f"label_smoothing must be in [0, 1), got {self.label_smoothing}"
            )
        if self.max_length < 2:
            raise ValueError(f"max_length must be >= 2, got {self.max_length}")
        if self.num_classes < 2:
            raise ValueError(f"num_classes must be >= 2, got {self.num_classes}")


# =============================================================================
# Training Configuration
# =============================================================================

@dataclass
class TrainingConfig:
    """
    Optimizer-side settings.

    Parameters
    ----------
    usage : str
        What the model is built for: ``"training"``, ``"scoring"`` or
        ``"translation"``. Non-training usages drop auxiliary heads.

    learning_rate : float
        Peak AdamW learning rate.

    clip_method : str
        Gradient clipping strategy: ``"norm"`` rescales gradients whose L2
        norm exceeds ``clip_norm``; ``"elementwise"`` clamps each gradient
        entry to ``[-clip_norm, clip_norm]``; ``"none"`` disables clipping.

    clip_norm : float
        Clipping threshold. 0 disables clipping.

    warmup_steps : int
        Linear warmup length before cosine decay.

    weight_decay : float
        AdamW weight decay.

    seed : int
        Random seed for reproducibility.

    device : str
        ``"auto"``, ``"cpu"``, ``"cuda"`` or ``"mps"``.

    log_every : int
        Log training stats every N optimizer steps.
    """
    usage: Literal["training", "scoring", "translation"] = "training"
    learning_rate: float = 3e-4
    clip_method: Literal["norm", "elementwise", "none"] = "norm"
    clip_norm: float = 1.0
    warmup_steps: int = 200
    weight_decay: float = 0.01
    seed: int = 42
    device: str = "auto"
    log_every: int = 50

    def validate(self) -> None:
        """Validate training parameters."""
        if self.usage not in ("training", "scoring", "translation"):
            raise ValueError(
                f"Unknown usage: '{self.usage}'. "
                f"Choose from: training, scoring, translation"
            )
        if self.learning_rate <= 0:
            raise ValueError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if self.clip_method not in ("norm", "elementwise", "none"):
            raise ValueError(
                f"Unknown clip_method: '{self.clip_method}'. "
                f"Choose from: norm, elementwise, none"
            )
        if self.clip_norm < 0:
            raise ValueError(f"clip_norm must be >= 0, got {self.clip_norm}")
        if self.warmup_steps < 0:
            raise ValueError(
                f"warmup_steps must be >= 0, got {self.warmup_steps}"
            )

    def resolve_device(self) -> torch.device:
        """
        Auto-detect the best available device.

        Priority: CUDA > MPS (Apple Silicon) > CPU
        """
        if self.device != "auto":
            return torch.device(self.device)

        if torch.cuda.is_available():
            logger.info("Using CUDA device (GPU detected)")
            return torch.device("cuda")
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            logger.info("Using MPS device (Apple Silicon detected)")
            return torch.device("mps")
        else:
            logger.info("Using CPU device")
            return torch.device("cpu")


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class SeqForgeConfig:
    """
    Master configuration combining the model and training sections.

    Usage:
        >>> config = SeqForgeConfig.from_yaml("configs/bert.yaml")
        >>> config.to_yaml("configs/my_experiment.yaml")
    """
    model: ModelConfig = field(default_factory=ModelConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)

    def validate(self) -> None:
        """
        Validate all sub-configurations.

        Raises
        ------
        ValueError
            If any parameter is invalid.
        """
        self.model.validate()
        self.training.validate()

        if self.model.type.startswith("lm") and len(self.model.dim_vocabs) > 1:
            logger.warning(
                f"Model type '{self.model.type}' only uses the first "
                f"vocabulary size; got {self.model.dim_vocabs}"
            )

        logger.info(
            f"Config validated: type={self.model.type}, "
            f"usage={self.training.usage}, streams={len(self.model.dim_vocabs)}"
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> SeqForgeConfig:
        """
        Load configuration from a YAML file.

        Raises
        ------
        FileNotFoundError
            If the YAML file does not exist.
        ValueError
            If the file is empty or fails validation.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ValueError(f"Config file is empty: {path}")

        config = cls(
            model=ModelConfig(**raw.get("model", {})),
            training=TrainingConfig(**raw.get("training", {})),
        )

        config.validate()
        return config

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.to_dict(),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"Config saved to {path}")

    def to_dict(self) -> dict:
        """Convert to nested dictionary."""
        return asdict(self)

    def to_options(self) -> Options:
        """Flatten into the ``Options`` view read by the model factory."""
        return Options.from_config(self.model).with_overrides(
            usage=self.training.usage
        )

    @classmethod
    def for_smoke_test(cls, model_type: str = "transformer") -> SeqForgeConfig:
        """
        Tiny configuration that builds and runs any recipe in seconds on CPU.
        """
        return cls(
            model=ModelConfig(
                type=model_type,
                dim_vocabs=[50, 50, 50, 50],
                dim_emb=16,
                dim_rnn=16,
                transformer_heads=2,
                transformer_dim_ffn=32,
                enc_depth=1,
                dec_depth=1,
                dropout=0.0,
                label_smoothing=0.1,
                max_length=32,
            ),
            training=TrainingConfig(
                learning_rate=1e-3,
                warmup_steps=0,
                weight_decay=0.0,
                device="cpu",
                log_every=1,
            ),
        )

    def __repr__(self) -> str:
        lines = [
            "SeqForgeConfig(",
            f"  Model:    {self.model.type} ({self.training.usage})",
            f"  Dims:     dim_emb={self.model.dim_emb}, dim_rnn={self.model.dim_rnn}, "
            f"heads={self.model.transformer_heads}, "
            f"depth={self.model.enc_depth}/{self.model.dec_depth}",
            f"  Vocabs:   {self.model.dim_vocabs}",
            f"  Clipping: {self.training.clip_method} @ {self.training.clip_norm}",
            ")",
        ]
        return "\n".join(lines)
