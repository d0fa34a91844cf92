"""
SeqForge Encoder-Decoder
=========================
Sequence-generation composite: zero or more encoders feeding one decoder.

    EncoderDecoder   generic container; zero encoders gives a language model
    Amun             shallow s2s variant (single-layer encoder and decoder)
    Nematus          s2s variant with a single-layer encoder

How the handle behaves depends on its usage:
    training      loss() is label-smoothed cross-entropy
    scoring       loss() is plain NLL; score() gives sentence log-probs
    translation   start_state()/step() drive decoding; greedy_search() is a
                  reference search loop
"""

from __future__ import annotations

import logging
from typing import Optional

import torch
import torch.nn as nn

from seqforge.model.base import ModelBase
from seqforge.model.batch import EOS_ID, PAD_ID, CorpusBatch
from seqforge.model.costs import RationalLoss, SumMultiRationalLoss
from seqforge.model.decoders import DecoderBase
from seqforge.model.encoders import EncoderBase, EncoderState
from seqforge.options import Options

logger = logging.getLogger(__name__)


class EncoderDecoder(ModelBase):
    """
    Parameters
    ----------
    options : Options
        Options of the composite (``usage``, ``original-type`` ...).
    """

    # Options pinned by subclasses before sub-models are built.
    FIXED_OPTIONS: dict = {}

    def __init__(self, options: Options):
        super().__init__(options)
        self.encoders = nn.ModuleList()
        self.decoders = nn.ModuleList()

    def push_back(self, sub_model: nn.Module) -> EncoderDecoder:
        if isinstance(sub_model, EncoderBase):
            self.encoders.append(sub_model)
        elif isinstance(sub_model, DecoderBase):
            self.decoders.append(sub_model)
        else:
            raise TypeError(
                f"EncoderDecoder accepts encoders and decoders, "
                f"got {type(sub_model).__name__}"
            )
        return self

    @property
    def decoder(self) -> DecoderBase:
        if len(self.decoders) == 0:
            raise RuntimeError(f"Model '{self.original_type}' has no decoder")
        return self.decoders[0]

    def sub_models(self) -> list[nn.Module]:
        return list(self.encoders) + list(self.decoders)

    def encode(self, batch: CorpusBatch) -> list[EncoderState]:
        return [encoder(batch) for encoder in self.encoders]

    def forward(self, batch: CorpusBatch) -> torch.Tensor:
        """Teacher-forced logits of the (first) decoder, shape (B, T, V)."""
        return self.decoder(batch, self.encode(batch))

    def loss(self, batch: CorpusBatch) -> RationalLoss:
        states = self.encode(batch)
        multi = SumMultiRationalLoss()
        for decoder in self.decoders:
            smoothing = decoder.config.label_smoothing if self.training_usage else 0.0
            multi.push_back(decoder.loss(batch, states, smoothing))
        return multi.accumulate()

    def score(self, batch: CorpusBatch) -> torch.Tensor:
        """Log-probability of every target sentence, shape (batch_size,)."""
        return self.decoder.score(batch, self.encode(batch))

    # -- translation ------------------------------------------------------

    def start_state(self, batch: CorpusBatch) -> list[EncoderState]:
        return self.encode(batch)

    def step(self, states: list[EncoderState], prefix: torch.Tensor) -> torch.Tensor:
        """
        Log-probabilities of the next token given the decoded ``prefix``.

        ``prefix`` starts with ``</s>`` and has shape (batch_size, t).
        Returns shape (batch_size, vocab_size).
        """
        logits = self.decoder.logits(prefix, states)[:, -1]
        return torch.log_softmax(logits.float(), dim=-1)

    @torch.no_grad()
    def greedy_search(
        self, batch: CorpusBatch, max_length: Optional[int] = None
    ) -> torch.Tensor:
        """
        Greedy decoding for every sentence in ``batch``.

        Returns
        -------
        torch.Tensor
            Generated ids without the start symbol, shape (batch_size, n).
            Finished hypotheses are padded with 0 after their ``</s>``.
        """
        was_training = self.training
        self.eval()
        max_length = max_length or self.decoder.config.max_length - 1

        states = self.start_state(batch)
        if states:
            batch_size, device = states[0].context.size(0), states[0].context.device
        else:
            batch_size, device = batch.batch_size, batch[self.decoder.index].ids.device

        prefix = torch.full((batch_size, 1), EOS_ID, dtype=torch.long, device=device)
        finished = torch.zeros(batch_size, dtype=torch.bool, device=device)
        for _ in range(max_length):
            next_ids = self.step(states, prefix).argmax(dim=-1)
            next_ids = next_ids.masked_fill(finished, PAD_ID)
            prefix = torch.cat([prefix, next_ids.unsqueeze(1)], dim=1)
            finished = finished | (next_ids == EOS_ID)
            if bool(finished.all()):
                break

        self.train(was_training)
        return prefix[:, 1:]

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(type={self.original_type}, "
            f"usage={self.usage.value}, encoders={len(self.encoders)}, "
            f"decoders={len(self.decoders)}, params={self.n_params:,})"
        )


class Amun(EncoderDecoder):
    """Shallow s2s: one bidirectional encoder layer, one decoder cell."""

    FIXED_OPTIONS = {"enc-depth": 1, "dec-depth": 1}


class Nematus(EncoderDecoder):
    """s2s with a single encoder layer and a configurable decoder depth."""

    FIXED_OPTIONS = {"enc-depth": 1}
