"""
SeqForge
========
Builds trainable neural sequence models (RNN and transformer
encoder-decoders, BERT-style encoder-classifiers, multi-task combinations)
from a short model-type token plus an options mapping.

Quick Start:
    >>> from seqforge import SeqForgeConfig, from_options
    >>> config = SeqForgeConfig.for_smoke_test("transformer")
    >>> model = from_options(config.to_options())
    >>> print(model)

Model-type tokens:
    - literal bases: s2s, amun, nematus, transformer, transformer_s2s, lm,
      lm-transformer, multi-s2s, shared-multi-s2s, multi-transformer,
      shared-multi-transformer, bert, bert-classifier, bert-gpt, char-s2s,
      mnist-ffnn, mnist-lenet
    - composites: ``transformer[E[D]]-bert[N]-gpt[N]...`` and
      ``smtransformer-bert[N]-gpt[N]...`` add auxiliary BERT/GPT heads that
      share the encoder/decoder parameters during training

Subpackages:
    - seqforge.model    : Descriptor parsing, sub-models, composites, factory
    - seqforge.training : Gradient clippers and a minimal trainer
"""

from seqforge.config import ModelConfig, SeqForgeConfig, TrainingConfig
from seqforge.exceptions import ConstructionError, SeqForgeError
from seqforge.model.base import Usage
from seqforge.model.factory import build_model, build_model_or_exit, from_options
from seqforge.options import Options

__version__ = "0.1.0"
