"""
SeqForge Batches
=================
A multi-stream batch: one ``SubBatch`` per data column. A sub-model reads the
column selected by its stream index, so ``batch[2]`` is what a head built
with ``index=2`` sees.

Conventions:
    - token id 0 is padding, 1 is BOS/EOS (``</s>``);
    - ``mask`` is 1 for real tokens and 0 for padding;
    - ``targets`` is only used by masked-LM streams: the original token at
      masked positions and 0 everywhere else;
    - ``segments`` holds BERT sentence-type ids (0 = sentence A, 1 = B);
    - a classification stream stores its label in ``ids[:, 0]``.

Building batches from corpora is left to the data pipeline; this module only
defines the container the models consume.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import torch

PAD_ID = 0
EOS_ID = 1


@dataclass
class SubBatch:
    """One data stream. ``ids`` and ``mask`` have shape (batch_size, seq_len)."""
    ids: torch.Tensor
    mask: Optional[torch.Tensor] = None
    targets: Optional[torch.Tensor] = None
    segments: Optional[torch.Tensor] = None

    def __post_init__(self):
        if self.ids.dim() != 2:
            raise ValueError(
                f"SubBatch ids must be 2-D (batch, seq_len), got shape "
                f"{tuple(self.ids.shape)}"
            )
        if self.mask is None:
            self.mask = (self.ids != PAD_ID).long()

    @property
    def batch_size(self) -> int:
        return self.ids.size(0)

    @property
    def width(self) -> int:
        return self.ids.size(1)

    @property
    def labels(self) -> torch.Tensor:
        """Class labels for classification streams."""
        return self.ids[:, 0]

    def to(self, device: torch.device) -> SubBatch:
        def move(t):
            return None if t is None else t.to(device)
        return SubBatch(
            ids=self.ids.to(device),
            mask=move(self.mask),
            targets=move(self.targets),
            segments=move(self.segments),
        )


@dataclass
class CorpusBatch:
    """
    Ordered collection of streams.

    Analogy: The columns of a parallel corpus. ``batch[0]`` might be the
    source sentences, ``batch[1]`` their translations and ``batch[2]`` a
    monolingual stream for an auxiliary BERT head. Sub-models pick their
    column by stream index.
    """
    streams: list[SubBatch] = field(default_factory=list)

    @classmethod
    def from_tensors(cls, tensors: Sequence[torch.Tensor]) -> CorpusBatch:
        return cls([SubBatch(ids=t) for t in tensors])

    def __getitem__(self, index: int) -> SubBatch:
        if index < 0 or index >= len(self.streams):
            raise IndexError(
                f"Stream {index} requested but the batch only has "
                f"{len(self.streams)} streams"
            )
        return self.streams[index]

    def __len__(self) -> int:
        return len(self.streams)

    @property
    def batch_size(self) -> int:
        return self.streams[0].batch_size if self.streams else 0

    def to(self, device: torch.device) -> CorpusBatch:
        return CorpusBatch([s.to(device) for s in self.streams])
