"""
SeqForge Trainer
=================
Minimal optimisation loop for any model returned by the factory.

What This Handles:
    - Loss computation through ``model.loss(batch)`` (a RationalLoss, so
      multi-task models are normalised by the primary head's label count)
    - Gradient clipping with the configured clipper
    - Learning rate scheduling (linear warmup, cosine decay)
    - Seeding and logging

Data loading is the caller's business: ``train`` takes any iterable of
``CorpusBatch`` objects.

Usage:
    >>> config = SeqForgeConfig.for_smoke_test()
    >>> model = from_options(config.to_options())
    >>> trainer = Trainer(model, config)
    >>> trainer.train_step(batch)
"""

from __future__ import annotations

import logging
import math
import random
from typing import Iterable

import numpy as np
import torch

from seqforge.config import SeqForgeConfig
from seqforge.model.base import ModelBase
from seqforge.model.batch import CorpusBatch
from seqforge.training.clippers import clip_gradients, make_clipper

logger = logging.getLogger(__name__)


def set_seed(seed: int) -> None:
    """Seed Python, NumPy and PyTorch PRNGs."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


class Trainer:
    """
    Parameters
    ----------
    model : ModelBase
        Model built by the factory.
    config : SeqForgeConfig
        Full configuration; only ``config.training`` is read.
    total_steps : int
        Length of the cosine schedule. 0 keeps the learning rate flat after
        warmup.
    """

    def __init__(self, model: ModelBase, config: SeqForgeConfig, total_steps: int = 0):
        self.config = config
        self.device = config.training.resolve_device()
        self.model = model.to(self.device)
        self.total_steps = total_steps

        trainable_params = [p for p in model.parameters() if p.requires_grad]
        if not trainable_params:
            raise ValueError("No trainable parameters found in the model")
        self.params = trainable_params

        self.optimizer = torch.optim.AdamW(
            trainable_params,
            lr=config.training.learning_rate,
            weight_decay=config.training.weight_decay,
            betas=(0.9, 0.999),
            eps=1e-8,
        )
        self.scheduler = self._create_scheduler()
        self.clipper = make_clipper(config.training.clip_method, config.training.clip_norm)

        self.global_step = 0
        logger.info(
            f"Trainer initialized on {self.device} for {model.original_type} "
            f"with {sum(p.numel() for p in trainable_params) / 1e6:.2f}M "
            f"trainable parameters, clipper={self.clipper}"
        )

    def train_step(self, batch: CorpusBatch) -> float:
        """One optimizer update. Returns the normalised loss."""
        self.model.train()
        batch = batch.to(self.device)

        self.optimizer.zero_grad()
        loss = self.model.loss(batch).mean()
        loss.backward()

        clip_gradients(self.clipper, self.params)

        self.optimizer.step()
        self.scheduler.step()
        self.global_step += 1

        value = loss.item()
        log_every = self.config.training.log_every
        if log_every > 0 and self.global_step % log_every == 0:
            lr = self.optimizer.param_groups[0]["lr"]
            logger.info(
                f"step={self.global_step}, loss={value:.4f}, "
                f"ppl={math.exp(min(value, 20)):.2f}, lr={lr:.2e}"
            )
        return value

    def train(self, batches: Iterable[CorpusBatch]) -> list[float]:
        """Run ``train_step`` over every batch; returns the per-step losses."""
        losses = [self.train_step(batch) for batch in batches]
        if losses:
            logger.info(
                f"Trained {len(losses)} steps, final loss={losses[-1]:.4f}"
            )
        return losses

    @torch.no_grad()
    def evaluate(self, batch: CorpusBatch) -> float:
        self.model.eval()
        return self.model.loss(batch.to(self.device)).mean().item()

    def _create_scheduler(self) -> torch.optim.lr_scheduler.LambdaLR:
        """Linear warmup, then cosine decay over ``total_steps`` (if set)."""
        warmup_steps = self.config.training.warmup_steps
        total_steps = self.total_steps

        def lr_lambda(step: int) -> float:
            if step < warmup_steps:
                return step / max(warmup_steps, 1)
            if total_steps <= 0:
                return 1.0
            progress = (step - warmup_steps) / max(total_steps - warmup_steps, 1)
            return 0.5 * (1.0 + math.cos(math.pi * min(progress, 1.0)))

        return torch.optim.lr_scheduler.LambdaLR(self.optimizer, lr_lambda)

    def __repr__(self) -> str:
        return f"Trainer(model={self.model.original_type}, device={self.device}, step={self.global_step})"
