"""
SeqForge Decoders
==================
Decoders generate the target stream, attending to the encoder states when an
encoder exists and running as plain language models when it does not.

    DecoderS2S           conditional GRU with additive attention
    TransformerDecoder   causal transformer stack with encoder-decoder attention

Training uses teacher forcing: the decoder input is the target shifted right
by one position, with ``</s>`` (id 1) as start symbol. Several encoder states
(multi-source models) are concatenated along the time axis and attended to as
one memory.
"""

from __future__ import annotations

import math
import logging
from typing import Optional, Sequence

import torch
import torch.nn as nn
import torch.nn.functional as F

from seqforge.model.batch import EOS_ID, CorpusBatch
from seqforge.model.costs import RationalLoss, cross_entropy, sequence_log_probs
from seqforge.model.encoders import EncoderState
from seqforge.model.graph import ExpressionGraph
from seqforge.model.layers import (
    AdditiveAttention,
    SinusoidalPositionalEncoding,
    TransformerStack,
    build_embedding,
    init_weights,
)
from seqforge.options import SubModelConfig

logger = logging.getLogger(__name__)


def combine_states(
    states: Sequence[EncoderState],
) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
    """Concatenate encoder contexts and masks along time; (None, None) without encoders."""
    if not states:
        return None, None
    if len(states) == 1:
        return states[0].context, states[0].mask
    memory = torch.cat([s.context for s in states], dim=1)
    mask = torch.cat([s.mask for s in states], dim=1)
    return memory, mask


def shift_right(ids: torch.Tensor) -> torch.Tensor:
    """Decoder input for teacher forcing: ``</s>`` followed by ids[:, :-1]."""
    start = torch.full_like(ids[:, :1], EOS_ID)
    return torch.cat([start, ids[:, :-1]], dim=1)


class OutputLayer(nn.Module):
    """Projection to vocabulary logits, optionally tied to an embedding matrix."""

    def __init__(self, dim: int, vocab: int, tied: Optional[nn.Embedding] = None):
        super().__init__()
        self.tied = tied
        if tied is None:
            self.proj = nn.Linear(dim, vocab)
            init_weights(self.proj)
        else:
            self.proj = None
            self.bias = nn.Parameter(torch.zeros(vocab))

    def forward(self, h: torch.Tensor) -> torch.Tensor:
        if self.tied is not None:
            return F.linear(h, self.tied.weight, self.bias)
        return self.proj(h)


class DecoderBase(nn.Module):
    """
    Common decoder interface.

    Parameters
    ----------
    graph : ExpressionGraph
        Shared parameter registry.
    config : SubModelConfig
        Validated sub-model configuration; ``dim_context`` is the width of the
        encoder states (0 for decoder-only language models).
    """

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__()
        self.config = config
        self.index = config.index
        self.prefix = config.prefix
        self.vocab_size = config.vocab_size()

    def logits(
        self, input_ids: torch.Tensor, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        """Logits for every position of ``input_ids``, shape (B, T, V)."""
        raise NotImplementedError

    def forward(
        self, batch: CorpusBatch, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        return self.logits(shift_right(batch[self.index].ids), states)

    def loss(
        self,
        batch: CorpusBatch,
        states: Sequence[EncoderState],
        label_smoothing: float = 0.0,
    ) -> RationalLoss:
        sub = batch[self.index]
        logits = self.forward(batch, states)
        return cross_entropy(logits, sub.ids, sub.mask, label_smoothing)

    def score(
        self, batch: CorpusBatch, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        """Log-probability of each target sentence, shape (batch_size,)."""
        sub = batch[self.index]
        return sequence_log_probs(self.forward(batch, states), sub.ids, sub.mask)

    def extra_repr(self) -> str:
        return f"prefix={self.prefix!r}, index={self.index}, vocab={self.vocab_size}"


class DecoderS2S(DecoderBase):
    """
    Conditional GRU decoder.

    At every step the first GRU cell reads the previous target embedding and
    the previous attention context, attention is computed from its state, and
    ``dec_depth - 1`` further cells refine the state. The output layer sees
    the top state, the context and the previous embedding.
    """

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__(graph, config)
        vocab, dim_emb, dim_rnn = self.vocab_size, config.dim_emb, config.dim_rnn
        dim_ctx = config.dim_context
        self.dim_context = dim_ctx

        self.embeddings = graph.get_or_create(
            config.name("Wemb"),
            lambda: build_embedding(vocab, dim_emb),
            ("embedding", vocab, dim_emb),
        )

        def build_core() -> nn.ModuleDict:
            core = nn.ModuleDict({
                "cells": nn.ModuleList(
                    [nn.GRUCell(dim_emb + dim_ctx, dim_rnn)]
                    + [nn.GRUCell(dim_rnn, dim_rnn) for _ in range(config.dec_depth - 1)]
                ),
                "ff_logit": nn.Linear(dim_rnn + dim_ctx + dim_emb, dim_emb),
            })
            if dim_ctx > 0:
                core["attention"] = AdditiveAttention(dim_rnn, dim_ctx, dim_rnn)
                core["ff_state"] = nn.Linear(dim_ctx, dim_rnn)
            init_weights(core)
            return core

        self.core = graph.get_or_create(
            config.name("rnn"),
            build_core,
            ("s2s-decoder", config.dec_depth, dim_emb, dim_rnn, dim_ctx),
        )
        self.output = graph.get_or_create(
            config.name("ff_logit_out"),
            lambda: OutputLayer(
                dim_emb, vocab, self.embeddings if config.tied_embeddings else None
            ),
            ("output", dim_emb, vocab, config.tied_embeddings),
        )
        self.dropout = nn.Dropout(config.dropout)

    def _initial_state(
        self, batch_size: int, memory: Optional[torch.Tensor], mask: Optional[torch.Tensor],
        device: torch.device,
    ) -> torch.Tensor:
        if memory is None:
            return torch.zeros(batch_size, self.config.dim_rnn, device=device)
        weights = mask.unsqueeze(-1).to(memory.dtype)
        mean = (memory * weights).sum(dim=1) / weights.sum(dim=1).clamp(min=1.0)
        return torch.tanh(self.core["ff_state"](mean))

    def logits(
        self, input_ids: torch.Tensor, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        memory, mask = combine_states(states)
        if (memory is None) != (self.dim_context == 0):
            raise ValueError(
                f"Decoder '{self.prefix}' was built for context width "
                f"{self.dim_context} but received "
                f"{'no encoder states' if memory is None else 'encoder states'}"
            )

        batch_size, steps = input_ids.shape
        emb = self.dropout(self.embeddings(input_ids))
        cells = self.core["cells"]

        hidden = [self._initial_state(batch_size, memory, mask, input_ids.device)]
        hidden += [torch.zeros_like(hidden[0]) for _ in range(len(cells) - 1)]
        context = (
            memory.new_zeros(batch_size, self.dim_context) if memory is not None
            else emb.new_zeros(batch_size, 0)
        )

        outputs = []
        for t in range(steps):
            hidden[0] = cells[0](torch.cat([emb[:, t], context], dim=-1), hidden[0])
            if memory is not None:
                context = self.core["attention"](hidden[0], memory, mask)
            for depth in range(1, len(cells)):
                hidden[depth] = cells[depth](hidden[depth - 1], hidden[depth])
            out = torch.tanh(self.core["ff_logit"](
                torch.cat([hidden[-1], context, emb[:, t]], dim=-1)
            ))
            outputs.append(out)

        h = self.dropout(torch.stack(outputs, dim=1))
        return self.output(h)


class TransformerDecoder(DecoderBase):
    """
    Causal transformer decoder.

    The layer stack is shared by prefix. A GPT head built with prefix
    ``decoder`` next to a translation decoder reuses that decoder's layers
    and simply skips their encoder-decoder attention.
    """

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__(graph, config)
        vocab, dim = self.vocab_size, config.dim_emb

        if config.dim_context not in (0, dim):
            raise ValueError(
                f"Transformer decoder '{config.prefix}' needs encoder states of "
                f"width {dim}, got {config.dim_context}"
            )

        self.embeddings = graph.get_or_create(
            config.name("Wemb"),
            lambda: build_embedding(vocab, dim),
            ("embedding", vocab, dim),
        )
        self.positions = SinusoidalPositionalEncoding(dim, config.max_length, config.dropout)
        self.layers = graph.get_or_create(
            config.name("layers"),
            lambda: TransformerStack(
                config.dec_depth,
                dim,
                config.transformer_heads,
                config.transformer_dim_ffn,
                config.dropout,
                cross_attention=config.dim_context > 0,
            ),
            ("transformer", config.dec_depth, dim,
             config.transformer_heads, config.transformer_dim_ffn),
        )
        if config.dim_context > 0 and self.layers.layers[0].cross_attention is None:
            raise ValueError(
                f"Decoder layers '{config.name('layers')}' were first built "
                f"without encoder attention and cannot serve an encoder-decoder"
            )
        self.output = graph.get_or_create(
            config.name("ff_logit_out"),
            lambda: OutputLayer(
                dim, vocab, self.embeddings if config.tied_embeddings else None
            ),
            ("output", dim, vocab, config.tied_embeddings),
        )
        self.scale = math.sqrt(dim)

    def logits(
        self, input_ids: torch.Tensor, states: Sequence[EncoderState]
    ) -> torch.Tensor:
        memory, memory_mask = combine_states(states)
        x = self.positions(self.embeddings(input_ids) * self.scale)
        h = self.layers(
            x,
            mask=None,
            memory=memory,
            memory_mask=memory_mask,
            causal=True,
        )
        return self.output(h)
