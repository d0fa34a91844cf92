"""
SeqForge Expression Graph
==========================
The single computation-graph object shared by every sub-model of one build.

Sub-models do not own their parameters outright. They ask the graph for a
named block (embedding matrix, transformer stack, output layer) and the graph
either creates it or hands back the block registered earlier under the same
name. Naming is prefix-based (``encoder_layers``, ``decoder_Wemb``), so:

    - two encoders built with prefix ``encoder`` share all their weights
      (``shared-multi-s2s``), while ``encoder1``/``encoder2`` do not;
    - an auxiliary BERT head built with prefix ``encoder`` trains the same
      transformer stack as the translation encoder it sits next to.

Analogy: A tool library. Whoever asks first for "encoder_layers" gets a new
set made; everyone who asks later under that name borrows the same set.

Registration order follows construction order, which is the only thing
construction order affects.

Usage:
    >>> graph = ExpressionGraph()
    >>> emb = graph.get_or_create("encoder_Wemb", lambda: nn.Embedding(100, 16), (100, 16))
    >>> emb is graph.get_or_create("encoder_Wemb", lambda: nn.Embedding(100, 16), (100, 16))
    True
"""

from __future__ import annotations

import logging
from typing import Callable, Hashable, Optional

import torch.nn as nn

logger = logging.getLogger(__name__)


class ExpressionGraph(nn.Module):
    """
    Named registry of parameter blocks shared across sub-models.

    Every sub-model of one build receives the same graph. Blocks live in
    ``self.blocks`` so the graph's ``parameters()`` are exactly the
    model's unique trainable tensors, each counted once however many
    sub-models use it.

    Analogy: A warehouse with labelled shelves. A sub-model asks for a
    label; if the shelf is empty a new block is built and stored, otherwise
    the stored block is handed out, provided its shape signature matches.
    """

    def __init__(self):
        super().__init__()
        self.blocks = nn.ModuleDict()
        self._signatures: dict[str, Optional[Hashable]] = {}

    def get_or_create(
        self,
        name: str,
        builder: Callable[[], nn.Module],
        signature: Optional[Hashable] = None,
    ) -> nn.Module:
        """
        Return the block registered as ``name``, building it on first use.

        Parameters
        ----------
        name : str
            Fully-qualified block name (prefix included).
        builder : callable
            Zero-argument constructor, only called if ``name`` is new.
        signature : hashable or None
            Shape description of the block. Reusing a name with a different
            signature is an error: the two sub-models disagree on what the
            shared parameters look like.

        Raises
        ------
        ValueError
            If ``name`` is already registered with another signature.
        """
        if name in self.blocks:
            known = self._signatures.get(name)
            if signature is not None and known is not None and known != signature:
                raise ValueError(
                    f"Parameter block '{name}' is shared with incompatible "
                    f"shapes: registered as {known}, requested as {signature}"
                )
            logger.debug(f"Reusing parameter block '{name}'")
            return self.blocks[name]

        block = builder()
        self.blocks[name] = block
        self._signatures[name] = signature
        logger.debug(f"Registered parameter block '{name}' {signature or ''}")
        return block

    def has(self, name: str) -> bool:
        return name in self.blocks

    def names(self) -> list[str]:
        return list(self.blocks.keys())

    @property
    def n_params(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def __repr__(self) -> str:
        return f"ExpressionGraph(blocks={len(self.blocks)}, params={self.n_params:,})"
