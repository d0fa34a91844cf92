"""
SeqForge Model Factory
=======================
Builds a ready-to-train model from a model-type token and an options mapping.

Three layers of builders:

    EncoderFactory / DecoderFactory / ClassifierFactory
        Hold an options overlay for one sub-model. ``construct`` merges the
        overlay onto the parent composite's options, validates it into a
        ``SubModelConfig`` and instantiates the class registered for its
        ``type``.
    EncoderDecoderFactory / EncoderClassifierFactory
        Hold the composite's options and an ordered list of sub-factories.
        ``construct`` builds the encoders first, then the decoders or
        classifiers, inside one shared ``ExpressionGraph``.
    build_model
        Parses the token, assigns stream indices and applies the recipe for
        the base architecture. With ``Usage.TRAINING`` the auxiliary heads of
        a composite token are built too and everything is wrapped in a
        ``MultiModel``; any other usage returns the primary model alone.

Analogy:
    A kitchen ticket system. The token is the order, the recipe says which
    stations (encoders, decoders, heads) it needs, and every station cooks
    from the same pantry (the ExpressionGraph), so parts named alike share
    ingredients.

All builders are immutable values: ``with_options`` and ``push_back`` return
new builders, so a partially configured factory can be reused.

Usage:
    >>> from seqforge.model.factory import build_model
    >>> model = build_model("transformer12-bert0", "training", {
    ...     "dim-vocabs": [1000, 1000, 1000], "dim-emb": 64,
    ... })
    >>> type(model).__name__, len(model.models)
    ('MultiModel', 2)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, ClassVar, Mapping, Optional, Union

import torch.nn as nn

from seqforge.exceptions import (
    ConstructionError,
    UnknownClassifierType,
    UnknownDecoderType,
    UnknownEncoderType,
    UnknownModelSubtype,
)
from seqforge.model.base import ModelBase, Usage
from seqforge.model.classifiers import BertClassifier, BertMaskedLM
from seqforge.model.decoders import DecoderS2S, TransformerDecoder
from seqforge.model.descriptor import (
    LITERAL_FAMILY,
    ParsedDescriptor,
    Role,
    SubModelDescriptor,
    parse_model_type,
)
from seqforge.model.encoder_classifier import BertEncoderClassifier, EncoderClassifier
from seqforge.model.encoder_decoder import Amun, EncoderDecoder, Nematus
from seqforge.model.encoders import (
    BertEncoder,
    CharS2SEncoder,
    EncoderBase,
    EncoderS2S,
    TransformerEncoder,
)
from seqforge.model.graph import ExpressionGraph
from seqforge.model.mnist import MnistFeedForwardNet, MnistLeNet
from seqforge.model.multi_model import MultiModel
from seqforge.model.streams import StreamAssignment, allocate_streams, fill_lm_vocabs
from seqforge.options import Options, SubModelConfig, normalize_key

logger = logging.getLogger(__name__)

NUM_ENCODERS = 2

ENCODER_TYPES = {
    "s2s": EncoderS2S,
    "char-s2s": CharS2SEncoder,
    "transformer": TransformerEncoder,
    "bert-encoder": BertEncoder,
}

DECODER_TYPES = {
    "s2s": DecoderS2S,
    "transformer": TransformerDecoder,
}

CLASSIFIER_TYPES = {
    "bert-masked-lm": BertMaskedLM,
    "bert-classifier": BertClassifier,
}

ENCODER_DECODER_TYPES = {
    "amun": Amun,
    "nematus": Nematus,
}

ENCODER_CLASSIFIER_TYPES = {
    "bert": BertEncoderClassifier,
    "bert-classifier": BertEncoderClassifier,
}


def _normalized(values: Mapping[str, Any]) -> dict[str, Any]:
    return {normalize_key(k): v for k, v in values.items()}


# =============================================================================
# Component factories
# =============================================================================

@dataclass(frozen=True)
class _ComponentFactory:
    """Options overlay for one sub-model plus the type → class table for its role."""

    overrides: Mapping[str, Any] = field(default_factory=dict)

    registry: ClassVar[dict] = {}
    unknown_type: ClassVar[type] = ConstructionError
    role: ClassVar[Role]

    @classmethod
    def from_descriptor(cls, descriptor: SubModelDescriptor) -> _ComponentFactory:
        return cls(_normalized(descriptor.options()))

    def with_options(self, **overrides: Any) -> _ComponentFactory:
        merged = dict(self.overrides)
        merged.update(_normalized(overrides))
        return replace(self, overrides=merged)

    def construct(self, graph: ExpressionGraph, parent: Options) -> nn.Module:
        options = parent.overlay(self.overrides)
        type_name = options.get("type")
        model_cls = self.registry.get(type_name)
        if model_cls is None:
            logger.error(
                f"Unknown {self.role.value} type '{type_name}'. "
                f"Available: {sorted(self.registry)}"
            )
            raise self.unknown_type(type_name)

        config = SubModelConfig.from_options(options)
        module = model_cls(graph, config)
        logger.debug(
            f"Built {self.role.value} {model_cls.__name__} "
            f"(prefix='{config.prefix}', index={config.index})"
        )
        return module


@dataclass(frozen=True)
class EncoderFactory(_ComponentFactory):
    """
    Builder for one encoder.

    Analogy: An order slip for a single part. It records what to build
    (``type``, ``prefix``, ``index`` and any size overrides) but builds
    nothing until the composite hands it the shared graph.

    Parameters
    ----------
    overrides : mapping
        Option keys that shadow the parent composite's options.
    """

    registry: ClassVar[dict] = ENCODER_TYPES
    unknown_type: ClassVar[type] = UnknownEncoderType
    role: ClassVar[Role] = Role.ENCODER


@dataclass(frozen=True)
class DecoderFactory(_ComponentFactory):
    """Builder for one decoder; see ``EncoderFactory``."""

    registry: ClassVar[dict] = DECODER_TYPES
    unknown_type: ClassVar[type] = UnknownDecoderType
    role: ClassVar[Role] = Role.DECODER


@dataclass(frozen=True)
class ClassifierFactory(_ComponentFactory):
    """Builder for one classifier head (masked LM or sentence classifier)."""

    registry: ClassVar[dict] = CLASSIFIER_TYPES
    unknown_type: ClassVar[type] = UnknownClassifierType
    role: ClassVar[Role] = Role.CLASSIFIER


ROLE_FACTORIES = {
    Role.ENCODER: EncoderFactory,
    Role.DECODER: DecoderFactory,
    Role.CLASSIFIER: ClassifierFactory,
}


def sub_model(
    role: Role, subtype: str, prefix: str, index: int, **extra_options: Any
) -> _ComponentFactory:
    """Component factory for one sub-model, e.g. ``sub_model(Role.ENCODER, "s2s", "encoder", 0)``."""
    descriptor = SubModelDescriptor(
        role=role,
        subtype=subtype,
        prefix=prefix,
        stream_index=index,
        extra_options=extra_options,
    )
    return ROLE_FACTORIES[role].from_descriptor(descriptor)


# =============================================================================
# Composite factories
# =============================================================================

def _context_dim(encoders: list[EncoderBase]) -> int:
    """Width of the (concatenated) encoder memory a decoder attends to."""
    dims = sorted({encoder.context_dim for encoder in encoders})
    if len(dims) > 1:
        raise ValueError(
            f"All encoders of one model must produce states of the same width, "
            f"got {dims}"
        )
    return dims[0] if dims else 0


@dataclass(frozen=True)
class EncoderDecoderFactory:
    """
    Builder for an ``EncoderDecoder`` (or its Amun/Nematus variants).

    Parameters
    ----------
    options : Options
        Composite-level options. Every sub-factory overlays its own keys on
        top of these at construction time.
    encoders, decoders : tuple
        Sub-factories in build order. Encoders are always built before
        decoders, so each decoder learns the encoders' context width.
    """

    options: Options = field(default_factory=Options)
    encoders: tuple[EncoderFactory, ...] = ()
    decoders: tuple[DecoderFactory, ...] = ()

    def with_options(self, **overrides: Any) -> EncoderDecoderFactory:
        return replace(self, options=self.options.with_overrides(**overrides))

    def push_back(
        self, factory: Union[EncoderFactory, DecoderFactory]
    ) -> EncoderDecoderFactory:
        if isinstance(factory, EncoderFactory):
            return replace(self, encoders=self.encoders + (factory,))
        if isinstance(factory, DecoderFactory):
            return replace(self, decoders=self.decoders + (factory,))
        raise TypeError(
            f"EncoderDecoderFactory accepts encoder and decoder factories, "
            f"got {type(factory).__name__}"
        )

    def _fixed_options(self, model_cls: type[EncoderDecoder]) -> Options:
        options = self.options
        for key, value in model_cls.FIXED_OPTIONS.items():
            current = options.get(key)
            if current is not None and current != value:
                logger.warning(
                    f"{model_cls.__name__} requires {key}={value}; "
                    f"ignoring configured value {current}"
                )
        return options.overlay(model_cls.FIXED_OPTIONS)

    def construct(self, graph: ExpressionGraph) -> EncoderDecoder:
        model_cls = ENCODER_DECODER_TYPES.get(self.options.get("type"), EncoderDecoder)
        options = self._fixed_options(model_cls)
        model = model_cls(options)

        for factory in self.encoders:
            model.push_back(factory.construct(graph, options))

        dim_context = _context_dim(list(model.encoders))
        for factory in self.decoders:
            model.push_back(
                factory.with_options(dim_context=dim_context).construct(graph, options)
            )
        return model


@dataclass(frozen=True)
class EncoderClassifierFactory:
    """Builder for an ``EncoderClassifier`` (BERT pre-training and fine-tuning)."""

    options: Options = field(default_factory=Options)
    encoders: tuple[EncoderFactory, ...] = ()
    classifiers: tuple[ClassifierFactory, ...] = ()

    def with_options(self, **overrides: Any) -> EncoderClassifierFactory:
        return replace(self, options=self.options.with_overrides(**overrides))

    def push_back(
        self, factory: Union[EncoderFactory, ClassifierFactory]
    ) -> EncoderClassifierFactory:
        if isinstance(factory, EncoderFactory):
            return replace(self, encoders=self.encoders + (factory,))
        if isinstance(factory, ClassifierFactory):
            return replace(self, classifiers=self.classifiers + (factory,))
        raise TypeError(
            f"EncoderClassifierFactory accepts encoder and classifier factories, "
            f"got {type(factory).__name__}"
        )

    def construct(self, graph: ExpressionGraph) -> EncoderClassifier:
        model_cls = ENCODER_CLASSIFIER_TYPES.get(self.options.get("type"), EncoderClassifier)
        model = model_cls(self.options)
        for factory in self.encoders:
            model.push_back(factory.construct(graph, self.options))
        for factory in self.classifiers:
            model.push_back(factory.construct(graph, self.options))
        return model


# =============================================================================
# Recipes
# =============================================================================

def encoder_decoder(options: Options, **overrides: Any) -> EncoderDecoderFactory:
    return EncoderDecoderFactory(options.with_overrides(**overrides))


def encoder_classifier(options: Options, **overrides: Any) -> EncoderClassifierFactory:
    return EncoderClassifierFactory(options.with_overrides(**overrides))


def _seq2seq(options: Options, base: str, enc_type: str, dec_type: str) -> EncoderDecoderFactory:
    return (
        encoder_decoder(options, type=base)
        .push_back(sub_model(Role.ENCODER, enc_type, "encoder", 0))
        .push_back(sub_model(Role.DECODER, dec_type, "decoder", 1))
    )


def _language_model(options: Options, dec_type: str) -> EncoderDecoderFactory:
    index = options.get_int("index", 0)
    dim_vocabs = fill_lm_vocabs(options.get_int_list("dim-vocabs", []), index)
    return (
        encoder_decoder(options, type=dec_type)
        .push_back(sub_model(Role.DECODER, dec_type, "decoder", index, dim_vocabs=dim_vocabs))
    )


def _multi_source(options: Options, sub_type: str, shared: bool) -> EncoderDecoderFactory:
    factory = encoder_decoder(options, type=sub_type)
    for i in range(NUM_ENCODERS):
        prefix = "encoder" if shared else f"encoder{i + 1}"
        factory = factory.push_back(sub_model(Role.ENCODER, sub_type, prefix, i))
    return factory.push_back(sub_model(Role.DECODER, sub_type, "decoder", NUM_ENCODERS))


def _bert(options: Options) -> EncoderClassifierFactory:
    return (
        encoder_classifier(options, type="bert")
        .push_back(sub_model(Role.ENCODER, "bert-encoder", "encoder", 0))
        .push_back(sub_model(Role.CLASSIFIER, "bert-masked-lm", "masked-lm", 0))
        .push_back(sub_model(Role.CLASSIFIER, "bert-classifier", "next-sentence", 1))
    )


def _bert_classifier(options: Options) -> EncoderClassifierFactory:
    return (
        encoder_classifier(options, type="bert-classifier")
        .push_back(sub_model(Role.ENCODER, "bert-encoder", "encoder", 0))
        .push_back(sub_model(Role.CLASSIFIER, "bert-classifier", "classifier", 1))
    )


def _bert_head(options: Options, stream: int) -> EncoderClassifierFactory:
    """Masked-LM head sharing the ``encoder`` parameters, reading ``stream``."""
    return (
        encoder_classifier(options, type="bert", index=stream)
        .push_back(sub_model(Role.ENCODER, "bert-encoder", "encoder", stream))
        .push_back(sub_model(
            Role.CLASSIFIER, "bert-masked-lm", "masked-lm", stream, label_smoothing=0.0,
        ))
    )


def _gpt_head(options: Options, stream: int) -> EncoderDecoderFactory:
    """Decoder-only LM head sharing the ``decoder`` parameters, reading ``stream``."""
    return (
        encoder_decoder(options, type="transformer", index=stream)
        .push_back(sub_model(Role.DECODER, "transformer", "decoder", stream))
    )


def _aux_head(
    token: str, subtype: str, stream: int, options: Options
) -> Union[EncoderDecoderFactory, EncoderClassifierFactory]:
    if subtype == "bert":
        return _bert_head(options, stream)
    if subtype == "gpt":
        return _gpt_head(options, stream)
    logger.error(f"Unknown model subtype '{subtype}' in '{token}'")
    raise UnknownModelSubtype(token, subtype)


def _transformer_with_heads(
    parsed: ParsedDescriptor,
    streams: StreamAssignment,
    usage: Usage,
    options: Options,
    graph: ExpressionGraph,
) -> ModelBase:
    primary = encoder_decoder(options, type="transformer")
    for stream in streams.encoders:
        primary = primary.push_back(sub_model(Role.ENCODER, "transformer", "encoder", stream))
    primary = primary.push_back(
        sub_model(Role.DECODER, "transformer", "decoder", streams.decoder)
    )

    if usage is not Usage.TRAINING:
        logger.info(f"Usage '{usage.value}': auxiliary heads of '{parsed.token}' not built")
        return primary.construct(graph)

    multi = MultiModel(options)
    # The primary model goes first: it creates the decoder layers with
    # encoder attention that GPT heads then reuse.
    multi.push_back(primary.construct(graph))
    for head, stream in zip(parsed.aux, streams.aux):
        multi.push_back(_aux_head(parsed.token, head.subtype, stream, options).construct(graph))
    return multi


def _bert_gpt(usage: Usage, options: Options, graph: ExpressionGraph) -> ModelBase:
    gpt = _gpt_head(options, 1)
    if usage is not Usage.TRAINING:
        return gpt.construct(graph)

    bert = (
        encoder_classifier(options, type="bert", index=0)
        .push_back(sub_model(Role.ENCODER, "bert-encoder", "encoder", 0))
        .push_back(sub_model(Role.CLASSIFIER, "bert-masked-lm", "masked-lm", 0))
    )
    multi = MultiModel(options)
    multi.push_back(bert.construct(graph))
    multi.push_back(gpt.construct(graph))
    return multi


_SEQ2SEQ_RECIPES = {
    "s2s": ("s2s", "s2s"),
    "amun": ("s2s", "s2s"),
    "nematus": ("s2s", "s2s"),
    "transformer": ("transformer", "transformer"),
    "transformer_s2s": ("transformer", "s2s"),
    "char-s2s": ("char-s2s", "s2s"),
}

_MULTI_SOURCE_RECIPES = {
    "multi-s2s": ("s2s", False),
    "shared-multi-s2s": ("s2s", True),
    "multi-transformer": ("transformer", False),
    "shared-multi-transformer": ("transformer", True),
}


def _build_literal(base: str, usage: Usage, options: Options, graph: ExpressionGraph) -> ModelBase:
    if base in _SEQ2SEQ_RECIPES:
        return _seq2seq(options, base, *_SEQ2SEQ_RECIPES[base]).construct(graph)
    if base in _MULTI_SOURCE_RECIPES:
        return _multi_source(options, *_MULTI_SOURCE_RECIPES[base]).construct(graph)
    if base == "lm":
        return _language_model(options, "s2s").construct(graph)
    if base == "lm-transformer":
        return _language_model(options, "transformer").construct(graph)
    if base == "bert":
        return _bert(options).construct(graph)
    if base == "bert-classifier":
        return _bert_classifier(options).construct(graph)
    if base == "bert-gpt":
        return _bert_gpt(usage, options, graph)
    if base == "mnist-ffnn":
        return MnistFeedForwardNet(options)
    if base == "mnist-lenet":
        return MnistLeNet(options)
    # Literal bases and this table are kept in sync in descriptor.py
    raise AssertionError(f"No recipe for literal model type '{base}'")


# =============================================================================
# Entry points
# =============================================================================

def build_model(
    type_token: str,
    usage: Union[Usage, str] = Usage.TRAINING,
    options: Optional[Mapping[str, Any]] = None,
    graph: Optional[ExpressionGraph] = None,
) -> ModelBase:
    """
    Build the model described by ``type_token``.

    Parameters
    ----------
    type_token : str
        Model type, e.g. ``"transformer"``, ``"bert-gpt"`` or
        ``"transformer12-bert0-gpt2"``.
    usage : Usage or str
        ``training`` builds auxiliary heads, ``scoring`` and ``translation``
        return only the primary model.
    options : mapping
        Model options (``dim-vocabs``, ``dim-emb`` ...). Not modified.
    graph : ExpressionGraph, optional
        Parameter registry to build into. A fresh one is created if omitted.

    Returns
    -------
    ModelBase
        ``EncoderDecoder``, ``EncoderClassifier``, ``MultiModel`` or one of
        the MNIST demo models. ``model.original_type`` is the
        token after alias rewriting (``transformer-bert-gpt`` is recorded as
        ``transformer12-bert0``).

    Raises
    ------
    ConstructionError
        Unknown model type, sub-model type or head subtype, or a malformed
        token.
    ValueError
        Invalid option values, or parameters shared with conflicting shapes.
    """
    usage = Usage.parse(usage)
    if not isinstance(options, Options):
        options = Options(options)
    graph = graph if graph is not None else ExpressionGraph()

    parsed = parse_model_type(type_token)
    options = options.with_overrides(usage=usage.value, original_type=parsed.token)

    if parsed.family == LITERAL_FAMILY:
        logger.info(f"Building '{type_token}' for {usage.value}")
        model = _build_literal(parsed.base_type, usage, options, graph)
    else:
        streams = allocate_streams(parsed)
        heads = ", ".join(
            f"{head.subtype}@{stream}" for head, stream in zip(parsed.aux, streams.aux)
        )
        logger.info(
            f"Building '{parsed.token}' for {usage.value}: "
            f"encoder streams {list(streams.encoders)}, decoder stream "
            f"{streams.decoder}, heads [{heads}]"
        )
        model = _transformer_with_heads(parsed, streams, usage, options, graph)

    logger.info(f"Built {type(model).__name__} with {model.n_params / 1e6:.2f}M parameters")
    return model


def from_options(
    options: Mapping[str, Any], usage: Union[Usage, str, None] = None
) -> ModelBase:
    """Build the model named by ``options['type']``; usage defaults to ``options['usage']``."""
    if not isinstance(options, Options):
        options = Options(options)
    if usage is None:
        usage = options.get("usage", Usage.TRAINING)
    return build_model(options.get_str("type"), usage, options)


def build_model_or_exit(*args: Any, **kwargs: Any) -> ModelBase:
    """
    ``build_model`` for command-line drivers: a construction error is logged
    as critical and ends the process with exit status 1.
    """
    try:
        return build_model(*args, **kwargs)
    except ConstructionError as e:
        logger.critical(f"Cannot build model: {e}")
        raise SystemExit(1) from e
