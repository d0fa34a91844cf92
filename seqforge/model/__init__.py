"""
seqforge.model - Model Construction
====================================
Everything between a model-type token and a ready-to-train ``nn.Module``.

Construction Flow:

    "transformer12-bert0"
        │  descriptor.parse_model_type
        ▼
    ParsedDescriptor(base=transformer, encoder=1, decoder=2, aux=[bert@0])
        │  streams.allocate_streams
        ▼
    StreamAssignment(encoders=(1,), decoder=2, aux=(0,))
        │  factory.build_model (recipes, component factories)
        ▼
    MultiModel[ EncoderDecoder(encoder@1, decoder@2),
                EncoderClassifier(bert-encoder@0, masked-lm@0) ]

All sub-models of one build register their parameters in one
``ExpressionGraph``; equal prefixes mean shared parameters.

Components:
    - descriptor.py         : Model-type token grammar
    - streams.py            : Stream index allocation
    - graph.py              : Shared parameter registry
    - layers.py             : Attention, transformer and recurrent building blocks
    - encoders.py           : s2s, char-s2s, transformer and BERT encoders
    - decoders.py           : s2s and transformer decoders
    - classifiers.py        : Masked-LM and sentence classification heads
    - encoder_decoder.py    : EncoderDecoder composite (+ Amun, Nematus)
    - encoder_classifier.py : EncoderClassifier composite
    - multi_model.py        : Multi-task wrapper
    - mnist.py              : MNIST demo classifiers
    - factory.py            : Component and composite factories, build_model
"""

from seqforge.model.base import ModelBase, Usage
from seqforge.model.batch import CorpusBatch, SubBatch
from seqforge.model.encoder_classifier import EncoderClassifier
from seqforge.model.encoder_decoder import EncoderDecoder
from seqforge.model.factory import build_model, build_model_or_exit, from_options
from seqforge.model.graph import ExpressionGraph
from seqforge.model.multi_model import MultiModel
