"""
SeqForge Losses
================
Loss values are kept as ratios, ``loss / count``, instead of averages. A
ratio can be summed across heads that see different numbers of labels and
still be normalised correctly at the end.

    RationalLoss           (loss sum, label count) for one model
    SumMultiRationalLoss   accumulates several RationalLosses: numerators are
                           summed, the label count of the first (primary) head
                           is kept as the denominator
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import torch
import torch.nn.functional as F

logger = logging.getLogger(__name__)


@dataclass
class RationalLoss:
    """A summed loss together with the number of labels it covers."""
    loss: torch.Tensor
    count: torch.Tensor

    def mean(self) -> torch.Tensor:
        return self.loss / self.count.clamp(min=1)

    def __add__(self, other: RationalLoss) -> RationalLoss:
        return RationalLoss(self.loss + other.loss, self.count + other.count)


class SumMultiRationalLoss:
    """
    Sum of per-head losses, normalised by the primary head's label count.

    The first pushed loss is the primary objective (translation or masked
    LM); auxiliary heads add to its numerator only.
    """

    def __init__(self):
        self.parts: list[RationalLoss] = []

    def push_back(self, part: RationalLoss) -> SumMultiRationalLoss:
        self.parts.append(part)
        return self

    def extend(self, parts: Iterable[RationalLoss]) -> SumMultiRationalLoss:
        for part in parts:
            self.push_back(part)
        return self

    def __len__(self) -> int:
        return len(self.parts)

    def accumulate(self) -> RationalLoss:
        if not self.parts:
            raise ValueError("SumMultiRationalLoss has no parts to accumulate")
        loss = self.parts[0].loss
        for part in self.parts[1:]:
            loss = loss + part.loss
        return RationalLoss(loss, self.parts[0].count)


def cross_entropy(
    logits: torch.Tensor,
    targets: torch.Tensor,
    mask: Optional[torch.Tensor] = None,
    label_smoothing: float = 0.0,
) -> RationalLoss:
    """
    Summed (optionally label-smoothed) cross-entropy over unmasked positions.

    Parameters
    ----------
    logits : torch.Tensor
        Shape (..., vocab_size).
    targets : torch.Tensor
        Shape (...), integer ids.
    mask : torch.Tensor or None
        Shape (...). Positions with 0 are excluded from loss and count.
    label_smoothing : float
        Probability mass spread uniformly over the vocabulary.
    """
    flat_logits = logits.reshape(-1, logits.size(-1))
    flat_targets = targets.reshape(-1)
    ce = F.cross_entropy(
        flat_logits.float(),
        flat_targets,
        reduction="none",
        label_smoothing=label_smoothing,
    )
    if mask is None:
        weights = torch.ones_like(ce)
    else:
        weights = mask.reshape(-1).to(ce.dtype)
    return RationalLoss(loss=(ce * weights).sum(), count=weights.sum())


def sequence_log_probs(
    logits: torch.Tensor,
    targets: torch.Tensor,
    mask: torch.Tensor,
) -> torch.Tensor:
    """Per-sequence log-probability of ``targets``, shape (batch_size,)."""
    log_probs = torch.log_softmax(logits.float(), dim=-1)
    picked = log_probs.gather(-1, targets.unsqueeze(-1)).squeeze(-1)
    return (picked * mask.to(picked.dtype)).sum(dim=-1)
