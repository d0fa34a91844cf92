"""
SeqForge Encoders
==================
Encoders turn one input stream into a sequence of context vectors that
decoders and classifiers attend to.

    EncoderS2S           embedding → bidirectional GRU → optional stacked GRUs
    CharS2SEncoder       character CNN → max-pool → highway → bidirectional GRU
    TransformerEncoder   embedding + sinusoidal positions → transformer stack
    BertEncoder          TransformerEncoder + sentence-type embeddings

All parameter blocks are requested from the shared ``ExpressionGraph`` under
the encoder's prefix (``encoder_Wemb``, ``encoder_layers`` ...). A
``BertEncoder`` with prefix ``encoder`` therefore reuses the embedding and
layers of a ``TransformerEncoder`` built with the same prefix.
"""

from __future__ import annotations

import math
import logging
from dataclasses import dataclass

import torch
import torch.nn as nn
import torch.nn.functional as F
from torch.nn.utils.rnn import pack_padded_sequence, pad_packed_sequence

from seqforge.model.batch import CorpusBatch
from seqforge.model.graph import ExpressionGraph
from seqforge.model.layers import (
    Highway,
    SinusoidalPositionalEncoding,
    TransformerStack,
    build_embedding,
    init_weights,
)
from seqforge.options import SubModelConfig

logger = logging.getLogger(__name__)


@dataclass
class EncoderState:
    """Encoder output for one stream."""
    context: torch.Tensor   # (batch_size, src_len, context_dim)
    mask: torch.Tensor      # (batch_size, src_len)
    index: int


class EncoderBase(nn.Module):
    """
    Common encoder interface.

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

    @property
    def context_dim(self) -> int:
        raise NotImplementedError

    def forward(self, batch: CorpusBatch) -> EncoderState:
        raise NotImplementedError

    def extra_repr(self) -> str:
        return f"prefix={self.prefix!r}, index={self.index}"


def run_gru(gru: nn.GRU, x: torch.Tensor, mask: torch.Tensor) -> torch.Tensor:
    """Run a batch-first GRU over padded input so padding never feeds the state."""
    lengths = mask.sum(dim=1).clamp(min=1).cpu()
    packed = pack_padded_sequence(x, lengths, batch_first=True, enforce_sorted=False)
    out, _ = gru(packed)
    out, _ = pad_packed_sequence(out, batch_first=True, total_length=x.size(1))
    return out


class EncoderS2S(EncoderBase):
    """Bidirectional GRU encoder, followed by ``enc_depth - 1`` residual GRU layers."""

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__(graph, config)
        vocab = config.vocab_size()
        dim_emb, dim_rnn = config.dim_emb, config.dim_rnn

        self.embeddings = graph.get_or_create(
            config.name("Wemb"),
            lambda: build_embedding(vocab, dim_emb),
            ("embedding", vocab, dim_emb),
        )
        self.bi_rnn = graph.get_or_create(
            config.name("bi_gru"),
            lambda: nn.GRU(dim_emb, dim_rnn, batch_first=True, bidirectional=True),
            ("bi_gru", dim_emb, dim_rnn),
        )
        self.stacked_rnns = nn.ModuleList([
            graph.get_or_create(
                config.name(f"gru_l{depth}"),
                lambda: nn.GRU(2 * dim_rnn, 2 * dim_rnn, batch_first=True),
                ("gru", 2 * dim_rnn),
            )
            for depth in range(2, config.enc_depth + 1)
        ])
        self.dropout = nn.Dropout(config.dropout)

    @property
    def context_dim(self) -> int:
        return 2 * self.config.dim_rnn

    def forward(self, batch: CorpusBatch) -> EncoderState:
        sub = batch[self.index]
        x = self.dropout(self.embeddings(sub.ids))
        h = run_gru(self.bi_rnn, x, sub.mask)
        for rnn in self.stacked_rnns:
            h = h + run_gru(rnn, self.dropout(h), sub.mask)
        h = h * sub.mask.unsqueeze(-1).to(h.dtype)
        return EncoderState(context=h, mask=sub.mask, index=self.index)


class CharS2SEncoder(EncoderBase):
    """
    Character-level encoder (Lee et al., 2017).

    Convolutions of several widths run over character embeddings, the result
    is max-pooled with stride ``char-stride`` to shorten the sequence, passed
    through highway layers and finally a bidirectional GRU.

    Extra options: ``char-stride`` (5), ``char-highway`` (4),
    ``char-conv-filters-widths`` (1..8), ``char-conv-filters-num``.
    """

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__(graph, config)
        vocab = config.vocab_size()
        dim_emb, dim_rnn = config.dim_emb, config.dim_rnn
        extras = config.extras

        self.stride = int(extras.get("char-stride", 5))
        widths = [int(w) for w in extras.get("char-conv-filters-widths", range(1, 9))]
        nums = [int(n) for n in extras.get(
            "char-conv-filters-num", [200, 200, 250, 250, 300, 300, 300, 300]
        )]
        if len(widths) != len(nums):
            raise ValueError(
                f"char-conv-filters-widths ({len(widths)}) and "
                f"char-conv-filters-num ({len(nums)}) must have the same length"
            )
        n_highway = int(extras.get("char-highway", 4))
        conv_dim = sum(nums)

        self.embeddings = graph.get_or_create(
            config.name("Wemb"),
            lambda: build_embedding(vocab, dim_emb),
            ("embedding", vocab, dim_emb),
        )
        self.convolutions = graph.get_or_create(
            config.name("char_conv"),
            lambda: nn.ModuleList([
                nn.Conv1d(dim_emb, n, w, padding="same") for w, n in zip(widths, nums)
            ]),
            ("char_conv", dim_emb, tuple(widths), tuple(nums)),
        )
        self.highways = graph.get_or_create(
            config.name("char_highway"),
            lambda: nn.Sequential(*[Highway(conv_dim) for _ in range(n_highway)]),
            ("char_highway", conv_dim, n_highway),
        )
        self.bi_rnn = graph.get_or_create(
            config.name("bi_gru"),
            lambda: nn.GRU(conv_dim, dim_rnn, batch_first=True, bidirectional=True),
            ("bi_gru", conv_dim, dim_rnn),
        )
        self.dropout = nn.Dropout(config.dropout)

    @property
    def context_dim(self) -> int:
        return 2 * self.config.dim_rnn

    def forward(self, batch: CorpusBatch) -> EncoderState:
        sub = batch[self.index]
        x = self.dropout(self.embeddings(sub.ids)).transpose(1, 2)  # (B, E, S)
        h = torch.cat([F.relu(conv(x)) for conv in self.convolutions], dim=1)

        h = F.max_pool1d(h, self.stride, self.stride, ceil_mode=True)
        mask = F.max_pool1d(
            sub.mask.unsqueeze(1).float(), self.stride, self.stride, ceil_mode=True
        ).squeeze(1).long()

        h = self.highways(h.transpose(1, 2))
        h = run_gru(self.bi_rnn, self.dropout(h), mask)
        h = h * mask.unsqueeze(-1).to(h.dtype)
        return EncoderState(context=h, mask=mask, index=self.index)


class TransformerEncoder(EncoderBase):
    """Pre-norm transformer encoder over one stream."""

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__(graph, config)
        vocab = config.vocab_size()
        dim = config.dim_emb

        self.embeddings = graph.get_or_create(
            config.name("Wemb"),
            lambda: build_embedding(vocab, dim),
            ("embedding", vocab, dim),
        )
        self.positions = SinusoidalPositionalEncoding(dim, config.max_length, config.dropout)
        self.layers = graph.get_or_create(
            config.name("layers"),
            lambda: TransformerStack(
                config.enc_depth,
                dim,
                config.transformer_heads,
                config.transformer_dim_ffn,
                config.dropout,
            ),
            ("transformer", config.enc_depth, dim,
             config.transformer_heads, config.transformer_dim_ffn),
        )
        self.scale = math.sqrt(dim)

    @property
    def context_dim(self) -> int:
        return self.config.dim_emb

    def embed(self, batch: CorpusBatch) -> torch.Tensor:
        sub = batch[self.index]
        return self.positions(self.embeddings(sub.ids) * self.scale)

    def forward(self, batch: CorpusBatch) -> EncoderState:
        sub = batch[self.index]
        h = self.layers(self.embed(batch), mask=sub.mask)
        return EncoderState(context=h, mask=sub.mask, index=self.index)


class BertEncoder(TransformerEncoder):
    """
    Transformer encoder with BERT sentence-type embeddings.

    Segment ids come from ``batch[index].segments``; streams without them are
    treated as a single sentence A.
    """

    def __init__(self, graph: ExpressionGraph, config: SubModelConfig):
        super().__init__(graph, config)
        n_types, dim = config.bert_type_vocab_size, config.dim_emb

        def build_types() -> nn.Embedding:
            emb = nn.Embedding(n_types, dim)
            init_weights(emb)
            return emb

        self.type_embeddings = graph.get_or_create(
            config.name("Wtype"), build_types, ("embedding", n_types, dim)
        )

    def embed(self, batch: CorpusBatch) -> torch.Tensor:
        sub = batch[self.index]
        segments = sub.segments
        if segments is None:
            segments = torch.zeros_like(sub.ids)
        x = self.embeddings(sub.ids) * self.scale + self.type_embeddings(segments)
        return self.positions(x)
