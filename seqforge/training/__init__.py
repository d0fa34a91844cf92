"""
seqforge.training - Optimisation Helpers
=========================================
    - clippers.py : Elementwise / Norm gradient clippers
    - trainer.py  : AdamW loop with warmup/cosine schedule and clipping
"""

from seqforge.training.clippers import Elementwise, Norm, clip, clip_gradients, make_clipper
from seqforge.training.trainer import Trainer, set_seed
