"""
SeqForge MNIST Demo Models
===========================
Two small image classifiers that exercise the factory outside of sequence
modelling (model types ``mnist-ffnn`` and ``mnist-lenet``).

Stream 0 holds flattened 28×28 images as floats, shape (batch_size, 784);
stream 1 holds the digit label in ``ids[:, 0]``.
"""

from __future__ import annotations

import logging

import torch
import torch.nn as nn
import torch.nn.functional as F

from seqforge.model.base import ModelBase
from seqforge.model.batch import CorpusBatch
from seqforge.model.costs import RationalLoss, cross_entropy
from seqforge.model.layers import init_weights
from seqforge.options import Options

logger = logging.getLogger(__name__)

MNIST_IMAGE_SIZE = 28
MNIST_CLASSES = 10


class MnistModel(ModelBase):
    """Shared loss/score logic for the demo classifiers."""

    def loss(self, batch: CorpusBatch) -> RationalLoss:
        return cross_entropy(self.forward(batch), batch[1].labels)

    def score(self, batch: CorpusBatch) -> torch.Tensor:
        """Log-probabilities over the ten digits, shape (batch_size, 10)."""
        return F.log_softmax(self.forward(batch), dim=-1)


class MnistFeedForwardNet(MnistModel):
    """784 → hidden layers (ReLU) → 10. Hidden sizes come from ``layer-dims``."""

    def __init__(self, options: Options):
        super().__init__(options)
        dims = [MNIST_IMAGE_SIZE ** 2] + options.get_int_list("layer-dims", [2048, 2048])
        layers: list[nn.Module] = []
        for d_in, d_out in zip(dims[:-1], dims[1:]):
            layers += [nn.Linear(d_in, d_out), nn.ReLU()]
        layers.append(nn.Linear(dims[-1], MNIST_CLASSES))
        self.net = nn.Sequential(*layers)
        init_weights(self.net)
        logger.info(f"MnistFeedForwardNet: {self.n_params / 1e6:.2f}M parameters")

    def forward(self, batch: CorpusBatch) -> torch.Tensor:
        return self.net(batch[0].ids.float())


class MnistLeNet(MnistModel):
    """LeNet-style CNN: two conv/pool blocks, then two dense layers."""

    def __init__(self, options: Options):
        super().__init__(options)
        dropout = options.get_float("dropout", 0.0)
        self.features = nn.Sequential(
            nn.Conv2d(1, 32, 3, padding=1),
            nn.ReLU(),
            nn.MaxPool2d(2),
            nn.Conv2d(32, 64, 3, padding=1),
            nn.ReLU(),
            nn.MaxPool2d(2),
        )
        self.classifier = nn.Sequential(
            nn.Flatten(),
            nn.Linear(64 * 7 * 7, 128),
            nn.ReLU(),
            nn.Dropout(dropout),
            nn.Linear(128, MNIST_CLASSES),
        )
        init_weights(self)
        logger.info(f"MnistLeNet: {self.n_params / 1e6:.2f}M parameters")

    def forward(self, batch: CorpusBatch) -> torch.Tensor:
        images = batch[0].ids.float().view(-1, 1, MNIST_IMAGE_SIZE, MNIST_IMAGE_SIZE)
        return self.classifier(self.features(images))
