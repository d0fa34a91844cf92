"""
SeqForge Model Base
====================
The handle contract every built model satisfies, plus the ``Usage`` enum that
decides how much of a multi-task graph gets built.

    ModelBase.forward(batch)   raw outputs (logits, states)
    ModelBase.loss(batch)      RationalLoss: label-smoothed under training,
                               plain negative log-likelihood otherwise
    ModelBase.usage            the Usage the model was built for
    ModelBase.original_type    model-type token the model was built from
"""

from __future__ import annotations

import enum
import logging
from typing import Union

import torch.nn as nn

from seqforge.model.batch import CorpusBatch
from seqforge.model.costs import RationalLoss
from seqforge.options import Options

logger = logging.getLogger(__name__)


class Usage(enum.Enum):
    """
    What a model is built for.

    ``TRAINING`` builds every auxiliary head and applies label smoothing;
    ``SCORING`` and ``TRANSLATION`` build the primary model alone and score
    with plain cross-entropy.
    """
    TRAINING = "training"
    SCORING = "scoring"
    TRANSLATION = "translation"

    @classmethod
    def parse(cls, value: Union[Usage, str]) -> Usage:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown usage: '{value}'. "
                f"Choose from: training, scoring, translation"
            ) from None


class ModelBase(nn.Module):
    """
    Base class of every handle returned by the model factory.

    Parameters
    ----------
    options : Options
        Options the model was built from. ``usage`` and ``original-type``
        are read here; everything else is up to subclasses.
    """

    def __init__(self, options: Options):
        super().__init__()
        self.options = options
        self.usage = Usage.parse(options.get("usage", Usage.TRAINING))
        self.original_type = options.get("original-type", options.get("type"))

    @property
    def training_usage(self) -> bool:
        return self.usage is Usage.TRAINING

    def loss(self, batch: CorpusBatch) -> RationalLoss:
        raise NotImplementedError

    def sub_models(self) -> list[nn.Module]:
        return list(self.children())

    @property
    def n_params(self) -> int:
        """Number of distinct parameters (shared blocks counted once)."""
        return sum(p.numel() for p in self.parameters())

    def extra_repr(self) -> str:
        return f"type={self.original_type}, usage={self.usage.value}"
