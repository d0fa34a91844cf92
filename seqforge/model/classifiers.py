"""
SeqForge Classifiers
=====================
Classification heads that sit on top of an encoder.

    BertMaskedLM     predicts the original tokens at masked positions
    BertClassifier   predicts one label per example from the first position

Both read their targets from their own stream: ``batch[index].targets`` for
the masked LM, ``batch[index].labels`` for the classifier. The encoder states
they classify may come from another stream (BERT's next-sentence head reads
labels from stream 1 while classifying the stream-0 encoding).
"""

from __future__ import annotations

import logging
from typing import Sequence

import torch
import torch.nn as nn
import torch.nn.functional as F

from seqforge.model.batch import PAD_ID, CorpusBatch
from seqforge.model.costs import RationalLoss, cross_entropy
from seqforge.model.encoders import EncoderState
from seqforge.model.graph import ExpressionGraph
from seqforge.model.layers import init_weights
from seqforge.options import SubModelConfig

logger = logging.getLogger(__name__)


class ClassifierBase(nn.Module):
    """
    Common classifier interface.

    Parameters
    ----------
    graph : ExpressionGraph
        Shared parameter registry.
    config : SubModelConfig
        Validated sub-model configuration.
    """

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__()
        self.config = config
        self.index = config.index
        self.prefix = config.prefix

    def forward(
        self, batch: CorpusBatch, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        raise NotImplementedError

    def loss(
        self,
        batch: CorpusBatch,
        states: Sequence[EncoderState],
        label_smoothing: float = 0.0,
    ) -> RationalLoss:
        raise NotImplementedError

    def extra_repr(self) -> str:
        return f"prefix={self.prefix!r}, index={self.index}"


class BertMaskedLM(ClassifierBase):
    """Masked language-model head: dense + GELU + LayerNorm + vocabulary projection."""

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__(graph, config)
        dim, vocab = config.dim_emb, config.vocab_size()

        def build_head() -> nn.Sequential:
            head = nn.Sequential(
                nn.Linear(dim, dim),
                nn.GELU(),
                nn.LayerNorm(dim),
                nn.Linear(dim, vocab),
            )
            init_weights(head)
            return head

        self.head = graph.get_or_create(
            config.name("ff_logit"), build_head, ("masked-lm", dim, vocab)
        )

    def forward(
        self, batch: CorpusBatch, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        return self.head(states[0].context)

    def _targets(self, batch: CorpusBatch) -> torch.Tensor:
        targets = batch[self.index].targets
        if targets is None:
            raise ValueError(
                f"Masked-LM head on stream {self.index} needs a stream with "
                f"masked-token targets"
            )
        return targets

    def loss(
        self,
        batch: CorpusBatch,
        states: Sequence[EncoderState],
        label_smoothing: float = 0.0,
    ) -> RationalLoss:
        targets = self._targets(batch)
        logits = self.forward(batch, states)
        return cross_entropy(logits, targets, targets != PAD_ID, label_smoothing)

    def score(
        self, batch: CorpusBatch, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        """Summed log-probability of the masked tokens, per example."""
        targets = self._targets(batch)
        log_probs = torch.log_softmax(self.forward(batch, states).float(), dim=-1)
        picked = log_probs.gather(-1, targets.unsqueeze(-1)).squeeze(-1)
        return (picked * (targets != PAD_ID).to(picked.dtype)).sum(dim=-1)


class BertClassifier(ClassifierBase):
    """Sentence-level classifier over the first (``[CLS]``) position."""

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__(graph, config)
        dim, n_classes = config.dim_emb, config.num_classes

        def build_head() -> nn.ModuleDict:
            head = nn.ModuleDict({
                "pool": nn.Linear(dim, dim),
                "out": nn.Linear(dim, n_classes),
            })
            init_weights(head)
            return head

        self.head = graph.get_or_create(
            config.name("ff_logit"), build_head, ("classifier", dim, n_classes)
        )
        self.dropout = nn.Dropout(config.dropout)

    def forward(
        self, batch: CorpusBatch, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        cls = states[0].context[:, 0]
        pooled = torch.tanh(self.head["pool"](self.dropout(cls)))
        return self.head["out"](self.dropout(pooled))

    def loss(
        self,
        batch: CorpusBatch,
        states: Sequence[EncoderState],
        label_smoothing: float = 0.0,
    ) -> RationalLoss:
        labels = batch[self.index].labels
        return cross_entropy(self.forward(batch, states), labels, None, label_smoothing)

    def score(
        self, batch: CorpusBatch, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        """Log-probability of the gold label, per example."""
        labels = batch[self.index].labels
        log_probs = F.log_softmax(self.forward(batch, states).float(), dim=-1)
        return log_probs.gather(-1, labels.unsqueeze(-1)).squeeze(-1)
