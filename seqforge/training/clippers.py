"""
SeqForge Gradient Clippers
===========================
Two ways to keep gradients bounded before the optimizer step:

    Elementwise(c)   clamp every entry to [-c, c]
    Norm(c)          rescale the whole tensor to L2 norm c if it is larger

Clippers are immutable values; clipping mutates the tensor in place.

Usage:
    >>> clipper = make_clipper("norm", 1.0)
    >>> clip_gradients(clipper, model.parameters())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

import torch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Elementwise:
    """Clamp each element to ``[-c, c]``."""
    c: float = 10.0

    def __post_init__(self):
        if self.c <= 0:
            raise ValueError(f"Clipping threshold must be positive, got {self.c}")

    @torch.no_grad()
    def clip(self, tensor: torch.Tensor) -> None:
        tensor.clamp_(-self.c, self.c)


@dataclass(frozen=True)
class Norm:
    """Rescale the tensor so its L2 norm is at most ``c``; direction is preserved."""
    c: float = 1.0

    def __post_init__(self):
        if self.c <= 0:
            raise ValueError(f"Clipping threshold must be positive, got {self.c}")

    @torch.no_grad()
    def clip(self, tensor: torch.Tensor) -> None:
        norm = float(torch.linalg.vector_norm(tensor.float()))
        if norm > self.c:
            tensor.mul_(self.c / norm)


Clipper = Union[Elementwise, Norm]

CLIPPERS = {
    "elementwise": Elementwise,
    "norm": Norm,
}


def clip(clipper: Clipper, tensor: torch.Tensor) -> None:
    """Apply ``clipper`` to ``tensor`` in place."""
    clipper.clip(tensor)


def make_clipper(name: str, c: Optional[float] = None) -> Optional[Clipper]:
    """
    Create a clipper by name.

    Parameters
    ----------
    name : str
        ``"elementwise"``, ``"norm"`` or ``"none"``.
    c : float, optional
        Threshold. Each clipper has its own default; 0 disables clipping.

    Returns
    -------
    Clipper or None
        None when clipping is disabled.

    Raises
    ------
    ValueError
        Unknown name or negative threshold.
    """
    if name != "none" and name not in CLIPPERS:
        raise ValueError(
            f"Unknown clipper: '{name}'. Choose from: {', '.join(CLIPPERS)}, none"
        )
    if name == "none" or c == 0:
        return None
    clipper_cls = CLIPPERS[name]
    return clipper_cls() if c is None else clipper_cls(c)


def clip_gradients(
    clipper: Optional[Clipper], parameters: Iterable[torch.nn.Parameter]
) -> None:
    """Clip the gradient of every parameter that has one (per tensor)."""
    if clipper is None:
        return
    for param in parameters:
        if param.grad is not None:
            clipper.clip(param.grad)
