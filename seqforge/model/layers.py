"""
SeqForge Layers
================
The tensor-level building blocks used by encoders, decoders and classifiers.

    SinusoidalPositionalEncoding   fixed position "stamps" added to embeddings
    MultiHeadAttention             self- or cross-attention with masking
    FeedForward                    pre-norm two-layer GELU block with residual
    TransformerLayer               self-attn (+ cross-attn) + feed-forward
    TransformerStack               N layers plus a final LayerNorm
    AdditiveAttention              Bahdanau-style attention for GRU decoders
    Highway                        gated highway layer for character encoders

All blocks use pre-norm residual connections and the same initialisation
scheme, so that a stack built for an encoder can be reused verbatim by a
BERT encoder sharing its prefix.
"""

from __future__ import annotations

import math
import logging
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

logger = logging.getLogger(__name__)


class SinusoidalPositionalEncoding(nn.Module):
    """
    Fixed sinusoidal positional encoding (non-learnable).

    Parameters
    ----------
    d_model : int
        Dimensionality of the encoding (must match model dimension).
    max_seq_len : int
        Maximum sequence length to precompute encodings for.
    dropout : float
        Dropout probability applied after adding positional encoding.
    """

    def __init__(self, d_model: int, max_seq_len: int = 512, dropout: float = 0.1):
        super().__init__()
        self.dropout = nn.Dropout(p=dropout)
        self.max_seq_len = max_seq_len

        pe = torch.zeros(max_seq_len, d_model)
        position = torch.arange(0, max_seq_len, dtype=torch.float).unsqueeze(1)
        div_term = torch.exp(
            torch.arange(0, d_model, 2).float() * (-math.log(10000.0) / d_model)
        )

        # Even dimensions get sin, odd dimensions get cos
        pe[:, 0::2] = torch.sin(position * div_term)
        pe[:, 1::2] = torch.cos(position * div_term[: d_model // 2])

        self.register_buffer("pe", pe.unsqueeze(0))  # (1, max_seq_len, d_model)

    def forward(self, x: torch.Tensor, offset: int = 0) -> torch.Tensor:
        """
        Add positional encoding to embeddings of shape (batch, seq_len, d_model).

        ``offset`` shifts the positions, which incremental decoding needs.
        """
        seq_len = x.size(1)
        if offset + seq_len > self.max_seq_len:
            raise ValueError(
                f"Sequence of length {offset + seq_len} exceeds max_length "
                f"{self.max_seq_len}"
            )
        x = x + self.pe[:, offset:offset + seq_len, :]
        return self.dropout(x)


class MultiHeadAttention(nn.Module):
    """
    Multi-head scaled dot-product attention.

    Works as self-attention (``memory`` is None) or as encoder-decoder
    attention (``memory`` holds the encoder states).

    Parameters
    ----------
    d_model : int
        Total model dimension.
    n_heads : int
        Number of attention heads. Must divide d_model evenly.
    dropout : float
        Attention dropout probability.
    """

    def __init__(self, d_model: int, n_heads: int, dropout: float = 0.1):
        super().__init__()

        if d_model % n_heads != 0:
            raise ValueError(
                f"d_model ({d_model}) must be divisible by n_heads ({n_heads})"
            )

        self.d_model = d_model
        self.n_heads = n_heads
        self.head_dim = d_model // n_heads
        self.scale = math.sqrt(self.head_dim)

        self.q_proj = nn.Linear(d_model, d_model, bias=False)
        self.kv_proj = nn.Linear(d_model, 2 * d_model, bias=False)
        self.out_proj = nn.Linear(d_model, d_model, bias=False)

        self.attn_dropout = nn.Dropout(dropout)
        self.out_dropout = nn.Dropout(dropout)

    def _split_heads(self, x: torch.Tensor) -> torch.Tensor:
        batch_size, seq_len, _ = x.shape
        x = x.reshape(batch_size, seq_len, self.n_heads, self.head_dim)
        return x.transpose(1, 2)  # (B, H, S, head_dim)

    def forward(
        self,
        x: torch.Tensor,
        memory: Optional[torch.Tensor] = None,
        key_mask: Optional[torch.Tensor] = None,
        causal: bool = False,
    ) -> torch.Tensor:
        """
        Parameters
        ----------
        x : torch.Tensor
            Queries, shape (batch_size, q_len, d_model).
        memory : torch.Tensor or None
            Keys/values, shape (batch_size, k_len, d_model). Defaults to ``x``.
        key_mask : torch.Tensor or None
            Shape (batch_size, k_len). 1 = attend, 0 = ignore.
        causal : bool
            Forbid attending to later positions (self-attention only).

        Returns
        -------
        torch.Tensor
            Shape (batch_size, q_len, d_model).
        """
        memory = x if memory is None else memory
        batch_size, q_len, _ = x.shape
        k_len = memory.size(1)

        q = self._split_heads(self.q_proj(x))
        k, v = self.kv_proj(memory).chunk(2, dim=-1)
        k, v = self._split_heads(k), self._split_heads(v)

        scores = torch.matmul(q, k.transpose(-2, -1)) / self.scale  # (B, H, Q, K)

        if causal:
            causal_mask = torch.triu(
                torch.ones(q_len, k_len, device=x.device, dtype=torch.bool),
                diagonal=1 + k_len - q_len,
            )
            scores = scores.masked_fill(causal_mask, float("-inf"))

        if key_mask is not None:
            pad_mask = (key_mask == 0).unsqueeze(1).unsqueeze(2)
            scores = scores.masked_fill(pad_mask, float("-inf"))

        weights = torch.softmax(scores, dim=-1)
        # Fully masked rows (all padding) produce NaN after softmax
        weights = torch.nan_to_num(weights, nan=0.0)
        weights = self.attn_dropout(weights)

        out = torch.matmul(weights, v).transpose(1, 2).reshape(
            batch_size, q_len, self.d_model
        )
        return self.out_dropout(self.out_proj(out))


class FeedForward(nn.Module):
    """
    Position-wise feed-forward block with pre-norm and residual connection.

        x → LayerNorm → Linear(d_model → d_ff) → GELU → Dropout
          → Linear(d_ff → d_model) → Dropout → + x
    """

    def __init__(self, d_model: int, d_ff: int, dropout: float = 0.1):
        super().__init__()

        if d_ff <= 0:
            raise ValueError(f"d_ff must be positive, got {d_ff}")

        self.norm = nn.LayerNorm(d_model)
        self.fc1 = nn.Linear(d_model, d_ff)
        self.fc2 = nn.Linear(d_ff, d_model)
        self.activation = nn.GELU()
        self.dropout1 = nn.Dropout(dropout)
        self.dropout2 = nn.Dropout(dropout)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        h = self.fc1(self.norm(x))
        h = self.dropout1(self.activation(h))
        h = self.dropout2(self.fc2(h))
        return x + h


class TransformerLayer(nn.Module):
    """
    One pre-norm transformer layer.

    Encoder layers use bidirectional self-attention. Decoder layers use
    causal self-attention followed by attention over the encoder memory;
    a decoder without encoder (language model) skips the cross-attention.

    Parameters
    ----------
    d_model : int
        Model dimension.
    n_heads : int
        Number of attention heads.
    d_ff : int
        Feed-forward inner width.
    dropout : float
        Dropout probability.
    cross_attention : bool
        Whether to allocate encoder-decoder attention.
    """

    def __init__(
        self,
        d_model: int,
        n_heads: int,
        d_ff: int,
        dropout: float = 0.1,
        cross_attention: bool = False,
    ):
        super().__init__()
        self.attn_norm = nn.LayerNorm(d_model)
        self.self_attention = MultiHeadAttention(d_model, n_heads, dropout)
        if cross_attention:
            self.cross_norm = nn.LayerNorm(d_model)
            self.cross_attention = MultiHeadAttention(d_model, n_heads, dropout)
        else:
            self.cross_norm = None
            self.cross_attention = None
        self.ffn = FeedForward(d_model, d_ff, dropout)

    def forward(
        self,
        x: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        memory: Optional[torch.Tensor] = None,
        memory_mask: Optional[torch.Tensor] = None,
        causal: bool = False,
    ) -> torch.Tensor:
        x = x + self.self_attention(self.attn_norm(x), key_mask=mask, causal=causal)
        if self.cross_attention is not None and memory is not None:
            x = x + self.cross_attention(
                self.cross_norm(x), memory=memory, key_mask=memory_mask
            )
        return self.ffn(x)


class TransformerStack(nn.Module):
    """``depth`` transformer layers followed by a final LayerNorm."""

    def __init__(
        self,
        depth: int,
        d_model: int,
        n_heads: int,
        d_ff: int,
        dropout: float = 0.1,
        cross_attention: bool = False,
    ):
        super().__init__()
        self.layers = nn.ModuleList([
            TransformerLayer(d_model, n_heads, d_ff, dropout, cross_attention)
            for _ in range(depth)
        ])
        self.output_norm = nn.LayerNorm(d_model)
        init_weights(self)

    def forward(
        self,
        x: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        memory: Optional[torch.Tensor] = None,
        memory_mask: Optional[torch.Tensor] = None,
        causal: bool = False,
    ) -> torch.Tensor:
        for layer in self.layers:
            x = layer(x, mask, memory, memory_mask, causal)
        return self.output_norm(x)


class AdditiveAttention(nn.Module):
    """
    Bahdanau attention used by the GRU decoder.

    score(s, h_j) = vᵀ tanh(W_s s + W_h h_j)
    """

    def __init__(self, query_dim: int, memory_dim: int, attn_dim: int):
        super().__init__()
        self.query_proj = nn.Linear(query_dim, attn_dim, bias=False)
        self.memory_proj = nn.Linear(memory_dim, attn_dim)
        self.v = nn.Linear(attn_dim, 1, bias=False)

    def forward(
        self,
        query: torch.Tensor,
        memory: torch.Tensor,
        memory_mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """
        Parameters
        ----------
        query : torch.Tensor
            Shape (batch_size, query_dim).
        memory : torch.Tensor
            Shape (batch_size, src_len, memory_dim).

        Returns
        -------
        torch.Tensor
            Context vector, shape (batch_size, memory_dim).
        """
        scores = self.v(torch.tanh(
            self.query_proj(query).unsqueeze(1) + self.memory_proj(memory)
        )).squeeze(-1)  # (B, S)
        if memory_mask is not None:
            scores = scores.masked_fill(memory_mask == 0, float("-inf"))
        weights = torch.nan_to_num(torch.softmax(scores, dim=-1), nan=0.0)
        return torch.bmm(weights.unsqueeze(1), memory).squeeze(1)


class Highway(nn.Module):
    """y = g * relu(W x) + (1 - g) * x with g = sigmoid(W_g x)."""

    def __init__(self, dim: int):
        super().__init__()
        self.transform = nn.Linear(dim, dim)
        self.gate = nn.Linear(dim, dim)
        nn.init.constant_(self.gate.bias, -1.0)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        g = torch.sigmoid(self.gate(x))
        return g * F.relu(self.transform(x)) + (1.0 - g) * x


def init_weights(module: nn.Module) -> None:
    """
    Xavier uniform for linear layers, N(0, 0.02) for embeddings (padding row
    kept at zero), identity LayerNorms.
    """
    for m in module.modules():
        if isinstance(m, nn.Linear):
            nn.init.xavier_uniform_(m.weight)
            if m.bias is not None:
                nn.init.zeros_(m.bias)
        elif isinstance(m, nn.Embedding):
            nn.init.normal_(m.weight, mean=0, std=0.02)
            if m.padding_idx is not None:
                with torch.no_grad():
                    m.weight[m.padding_idx].zero_()
        elif isinstance(m, nn.LayerNorm):
            nn.init.ones_(m.weight)
            nn.init.zeros_(m.bias)


def build_embedding(vocab_size: int, dim: int) -> nn.Embedding:
    """Token embedding with id 0 reserved for padding."""
    emb = nn.Embedding(vocab_size, dim, padding_idx=0)
    init_weights(emb)
    return emb
