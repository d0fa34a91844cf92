"""
SeqForge Encoder-Classifier
============================
Classification composite: encoders feeding one or more classifier heads.
With several heads (BERT pre-training: masked LM + next sentence) the head
losses are summed and normalised by the first head's label count.
"""

from __future__ import annotations

import logging

import torch
import torch.nn as nn

from seqforge.model.base import ModelBase
from seqforge.model.batch import CorpusBatch
from seqforge.model.classifiers import ClassifierBase
from seqforge.model.costs import RationalLoss, SumMultiRationalLoss
from seqforge.model.encoders import BertEncoder, EncoderBase, EncoderState
from seqforge.options import Options

logger = logging.getLogger(__name__)


class EncoderClassifier(ModelBase):
    """
    Parameters
    ----------
    options : Options
        Options of the composite (``usage``, ``original-type`` ...).
    """

    def __init__(self, options: Options):
        super().__init__(options)
        self.encoders = nn.ModuleList()
        self.classifiers = nn.ModuleList()

    def push_back(self, sub_model: nn.Module) -> EncoderClassifier:
        if isinstance(sub_model, EncoderBase):
            self.encoders.append(sub_model)
        elif isinstance(sub_model, ClassifierBase):
            self.classifiers.append(sub_model)
        else:
            raise TypeError(
                f"EncoderClassifier accepts encoders and classifiers, "
                f"got {type(sub_model).__name__}"
            )
        return self

    def sub_models(self) -> list[nn.Module]:
        return list(self.encoders) + list(self.classifiers)

    def encode(self, batch: CorpusBatch) -> list[EncoderState]:
        return [encoder(batch) for encoder in self.encoders]

    def forward(self, batch: CorpusBatch) -> list[torch.Tensor]:
        """Logits of every classifier head, in push order."""
        states = self.encode(batch)
        return [classifier(batch, states) for classifier in self.classifiers]

    def loss(self, batch: CorpusBatch) -> RationalLoss:
        states = self.encode(batch)
        multi = SumMultiRationalLoss()
        for classifier in self.classifiers:
            smoothing = classifier.config.label_smoothing if self.training_usage else 0.0
            multi.push_back(classifier.loss(batch, states, smoothing))
        return multi.accumulate()

    def score(self, batch: CorpusBatch) -> list[torch.Tensor]:
        """Per-example log-probabilities for every classifier head."""
        states = self.encode(batch)
        return [classifier.score(batch, states) for classifier in self.classifiers]

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(type={self.original_type}, "
            f"usage={self.usage.value}, encoders={len(self.encoders)}, "
            f"classifiers={len(self.classifiers)}, params={self.n_params:,})"
        )


class BertEncoderClassifier(EncoderClassifier):
    """EncoderClassifier whose encoders must be BERT encoders."""

    def push_back(self, sub_model: nn.Module) -> BertEncoderClassifier:
        if isinstance(sub_model, EncoderBase) and not isinstance(sub_model, BertEncoder):
            raise TypeError(
                f"BERT models need a bert-encoder, got {type(sub_model).__name__}"
            )
        super().push_back(sub_model)
        return self
