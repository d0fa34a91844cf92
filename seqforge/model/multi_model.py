"""
SeqForge Multi-Model
=====================
Wraps several independently built composites under one training objective:
the sum of their multi-rational losses, normalised by the first model's label
count. The first model is the primary one (translation or target LM); the
rest are auxiliary heads that only exist for multi-task training signal.
"""

from __future__ import annotations

import logging

import torch.nn as nn

from seqforge.model.base import ModelBase
from seqforge.model.batch import CorpusBatch
from seqforge.model.costs import RationalLoss, SumMultiRationalLoss
from seqforge.options import Options

logger = logging.getLogger(__name__)


class MultiModel(ModelBase):
    """
    Parameters
    ----------
    options : Options
        Options of the wrapper (``usage``, ``original-type``).
    """

    def __init__(self, options: Options):
        super().__init__(options)
        self.models = nn.ModuleList()

    def push_back(self, model: ModelBase) -> MultiModel:
        if not isinstance(model, ModelBase):
            raise TypeError(
                f"MultiModel members must be models, got {type(model).__name__}"
            )
        self.models.append(model)
        return self

    @property
    def primary(self) -> ModelBase:
        return self.models[0]

    def forward(self, batch: CorpusBatch) -> list:
        return [model(batch) for model in self.models]

    def loss(self, batch: CorpusBatch) -> RationalLoss:
        multi = SumMultiRationalLoss()
        for model in self.models:
            multi.push_back(model.loss(batch))
        return multi.accumulate()

    def sub_models(self) -> list[nn.Module]:
        return list(self.models)

    def __repr__(self) -> str:
        members = ", ".join(type(m).__name__ for m in self.models)
        return (
            f"MultiModel(type={self.original_type}, usage={self.usage.value}, "
            f"models=[{members}], params={self.n_params:,})"
        )
