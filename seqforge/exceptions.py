"""
SeqForge Exception Hierarchy
=============================

SeqForgeError (base, Exception)
└── ConstructionError(SeqForgeError, ValueError)   ← model assembly failures
    ├── UnknownModelType          unrecognised model-type token
    ├── UnknownEncoderType        encoder factory got an unknown ``type``
    ├── UnknownDecoderType        decoder factory got an unknown ``type``
    ├── UnknownClassifierType     classifier factory got an unknown ``type``
    ├── UnknownModelSubtype       auxiliary head is neither ``bert`` nor ``gpt``
    └── MalformedDescriptor       token breaks the descriptor grammar

ConstructionError multi-inherits from ValueError so callers that already
guard model building with ``except ValueError`` keep working.

Construction errors are never recovered inside the library. The caller
decides whether to propagate them or terminate (see
``seqforge.model.factory.build_model_or_exit``).
"""

from __future__ import annotations


class SeqForgeError(Exception):
    """Base exception for all SeqForge errors."""


class ConstructionError(SeqForgeError, ValueError):
    """Fatal error raised while assembling a model."""


class UnknownModelType(ConstructionError):
    """The model-type token matches no literal base and no composite pattern."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Unknown model type: {token!r}")


class UnknownEncoderType(ConstructionError):
    """The encoder factory was asked for a ``type`` it has no class for."""

    def __init__(self, type_name: str):
        self.type_name = type_name
        super().__init__(f"Unknown encoder type: {type_name!r}")


class UnknownDecoderType(ConstructionError):
    """The decoder factory was asked for a ``type`` it has no class for."""

    def __init__(self, type_name: str):
        self.type_name = type_name
        super().__init__(f"Unknown decoder type: {type_name!r}")


class UnknownClassifierType(ConstructionError):
    """The classifier factory was asked for a ``type`` it has no class for."""

    def __init__(self, type_name: str):
        self.type_name = type_name
        super().__init__(f"Unknown classifier type: {type_name!r}")


class UnknownModelSubtype(ConstructionError):
    """An auxiliary head segment names something other than bert/gpt."""

    def __init__(self, token: str, subtype: str):
        self.token = token
        self.subtype = subtype
        super().__init__(f"Unknown model subtype {subtype!r} in {token!r}")


UnknownSubtype = UnknownModelSubtype


class MalformedDescriptor(ConstructionError):
    """The token starts like a known pattern but violates its grammar."""

    def __init__(self, token: str, reason: str):
        self.token = token
        self.reason = reason
        super().__init__(f"Malformed model type {token!r}: {reason}")
