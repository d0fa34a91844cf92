"""
SeqForge Model-Type Descriptors
================================
Parses model-type tokens such as ``"transformer12-bert0-gpt2"`` into a base
architecture and a list of auxiliary heads.

Grammar (case-sensitive):

    token        := literal | composite | sm-composite
    literal      := "s2s" | "amun" | "nematus" | "transformer" | ...
    composite    := "transformer" [digit [digit]] head+
    sm-composite := "smtransformer" head+
    head         := "-" ("bert" | "gpt") [digit]

In ``composite`` the first optional digit overrides the encoder stream and
the second the decoder stream. A head's digit overrides that head's stream.
Omitted streams stay ``None`` here and are filled in by
``seqforge.model.streams.allocate_streams``.

The literal ``transformer-bert-gpt`` is a historical alias for
``transformer12-bert0``. The alias is applied before generic parsing, so it
does NOT mean "bert on stream 2, gpt on stream 3" as the generic grammar
would read it.

Usage:
    >>> parse_model_type("transformer12-bert0-gpt2")
    ParsedDescriptor(token='transformer12-bert0-gpt2', base_type='transformer',
                     family='transformer', encoder_stream=1, decoder_stream=2,
                     aux=(AuxDescriptor('bert', 0), AuxDescriptor('gpt', 2)))
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from seqforge.exceptions import (
    MalformedDescriptor,
    UnknownModelSubtype,
    UnknownModelType,
)

logger = logging.getLogger(__name__)

LITERAL_BASES = frozenset({
    "s2s",
    "amun",
    "nematus",
    "transformer",
    "transformer_s2s",
    "lm",
    "multi-s2s",
    "shared-multi-s2s",
    "multi-transformer",
    "shared-multi-transformer",
    "lm-transformer",
    "bert",
    "bert-classifier",
    "bert-gpt",
    "char-s2s",
    "mnist-ffnn",
    "mnist-lenet",
})

ALIASES = {
    "transformer-bert-gpt": "transformer12-bert0",
}

AUX_SUBTYPES = ("bert", "gpt")

TRANSFORMER_FAMILY = "transformer"
SMTRANSFORMER_FAMILY = "smtransformer"
LITERAL_FAMILY = "literal"

_DIGITS = "0123456789"


class Role(enum.Enum):
    """Which slot of a composite a sub-model fills."""

    ENCODER = "encoder"
    DECODER = "decoder"
    CLASSIFIER = "classifier"


@dataclass(frozen=True)
class AuxDescriptor:
    """An auxiliary head: ``subtype`` is ``bert`` or ``gpt``; ``stream`` may be omitted."""
    subtype: str
    stream: Optional[int] = None


@dataclass(frozen=True)
class ParsedDescriptor:
    """Result of parsing a model-type token."""
    token: str
    base_type: str
    family: str
    encoder_stream: Optional[int] = None
    decoder_stream: Optional[int] = None
    aux: tuple[AuxDescriptor, ...] = ()

    @property
    def is_composite(self) -> bool:
        return self.family != LITERAL_FAMILY


@dataclass(frozen=True)
class SubModelDescriptor:
    """
    Everything a component factory needs to build one sub-model.

    Produced from a parsed token, consumed once by the factory.
    """
    role: Role
    subtype: str
    prefix: str
    stream_index: int
    extra_options: Mapping[str, Any] = field(default_factory=dict)

    def options(self) -> dict[str, Any]:
        """Option overlay for the component factory."""
        overlay = {"type": self.subtype, "prefix": self.prefix, "index": self.stream_index}
        overlay.update(self.extra_options)
        return overlay


def parse_model_type(token: str, resolve_aliases: bool = True) -> ParsedDescriptor:
    """
    Parse a model-type token.

    Parameters
    ----------
    token : str
        The model-type token.
    resolve_aliases : bool
        Apply historical aliases (``transformer-bert-gpt``) first. Turning
        this off shows how the generic grammar alone reads a token.

    Raises
    ------
    UnknownModelType
        No literal base or composite prefix matches.
    UnknownModelSubtype
        A head segment names something other than bert/gpt.
    MalformedDescriptor
        The token starts like a composite but breaks its grammar.
    """
    if not token:
        raise _malformed(token, "model type must be a non-empty string")

    if token in LITERAL_BASES:
        return ParsedDescriptor(token=token, base_type=token, family=LITERAL_FAMILY)

    if resolve_aliases and token in ALIASES:
        rewritten = ALIASES[token]
        logger.info(f"Model type '{token}' is an alias for '{rewritten}'")
        token = rewritten

    # Longest family name first
    for family in (SMTRANSFORMER_FAMILY, TRANSFORMER_FAMILY):
        if token.startswith(family):
            return _parse_composite(token, family)

    logger.error(f"Unknown model type: {token}")
    raise UnknownModelType(token)


def _parse_composite(token: str, family: str) -> ParsedDescriptor:
    rest = token[len(family):]
    pos = 0

    digits: list[int] = []
    while pos < len(rest) and rest[pos] in _DIGITS:
        digits.append(int(rest[pos]))
        pos += 1

    if pos < len(rest) and rest[pos] != "-":
        if not digits:
            # e.g. "transformers": a different word, not a broken composite
            logger.error(f"Unknown model type: {token}")
            raise UnknownModelType(token)
        raise _malformed(
            token, f"unexpected character {rest[pos]!r} after stream digits"
        )
    if family == SMTRANSFORMER_FAMILY and digits:
        raise _malformed(
            token, "smtransformer streams are fixed and cannot be overridden"
        )
    if len(digits) > 2:
        raise _malformed(
            token, "at most two stream digits (encoder, decoder) may follow the base"
        )
    if pos >= len(rest):
        raise _malformed(token, "expected at least one -bert or -gpt head")

    aux = tuple(_parse_head(token, segment) for segment in rest[pos + 1:].split("-"))

    return ParsedDescriptor(
        token=token,
        base_type=family,
        family=family,
        encoder_stream=digits[0] if len(digits) > 0 else None,
        decoder_stream=digits[1] if len(digits) > 1 else None,
        aux=aux,
    )


def _parse_head(token: str, segment: str) -> AuxDescriptor:
    if not segment:
        raise _malformed(token, "empty head segment")

    split = len(segment)
    for i, ch in enumerate(segment):
        if ch in _DIGITS:
            split = i
            break
    subtype, stream = segment[:split], segment[split:]

    if subtype not in AUX_SUBTYPES:
        logger.error(f"Unknown model subtype {subtype or segment!r} in {token!r}")
        raise UnknownModelSubtype(token, subtype or segment)
    if len(stream) > 1:
        raise _malformed(
            token, f"head '{segment}' stream must be a single digit"
        )
    return AuxDescriptor(subtype=subtype, stream=int(stream) if stream else None)


def _malformed(token: str, reason: str) -> MalformedDescriptor:
    logger.error(f"Malformed model type {token!r}: {reason}")
    return MalformedDescriptor(token, reason)
