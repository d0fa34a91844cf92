"""
SeqForge Stream Allocation
===========================
Assigns data-stream indices to every sub-model of a parsed descriptor.

Defaults:
    transformer family    encoder 0, decoder 1, heads 2, 3, 4, ...
    smtransformer family  encoders 0 and 1, decoder 2, heads 3, 4, ...

Explicit digits in the token always win. Nothing prevents two sub-models
from reading the same stream (a GPT head on the decoder's stream is a normal
setup).
"""

from __future__ import annotations

from dataclasses import dataclass

from seqforge.model.descriptor import (
    SMTRANSFORMER_FAMILY,
    TRANSFORMER_FAMILY,
    ParsedDescriptor,
)

DEFAULT_ENCODER_STREAM = 0
DEFAULT_DECODER_STREAM = 1
TRANSFORMER_AUX_BASE = 2
SMTRANSFORMER_ENCODER_STREAMS = (0, 1)
SMTRANSFORMER_DECODER_STREAM = 2
SMTRANSFORMER_AUX_BASE = 3


@dataclass(frozen=True)
class StreamAssignment:
    """
    Resolved stream indices for one composite token.

    Analogy: A seating chart. The token says who is coming; the
    assignment says which input stream (corpus column) each part reads.

    Attributes
    ----------
    encoders : tuple of int
        One stream per encoder of the primary model, in build order.
    decoder : int
        Stream the primary decoder reads and predicts.
    aux : tuple of int
        One stream per auxiliary head, in token order.
    """

    encoders: tuple[int, ...]
    decoder: int
    aux: tuple[int, ...]


def allocate_streams(parsed: ParsedDescriptor) -> StreamAssignment:
    """
    Fill omitted stream indices.

    Literal bases have fixed recipes and get the plain encoder/decoder
    defaults with no heads.
    """
    if parsed.family == SMTRANSFORMER_FAMILY:
        return StreamAssignment(
            encoders=SMTRANSFORMER_ENCODER_STREAMS,
            decoder=SMTRANSFORMER_DECODER_STREAM,
            aux=_fill_aux(parsed, SMTRANSFORMER_AUX_BASE),
        )

    encoder = (
        DEFAULT_ENCODER_STREAM if parsed.encoder_stream is None
        else parsed.encoder_stream
    )
    decoder = (
        DEFAULT_DECODER_STREAM if parsed.decoder_stream is None
        else parsed.decoder_stream
    )
    aux = _fill_aux(parsed, TRANSFORMER_AUX_BASE) if parsed.family == TRANSFORMER_FAMILY else ()
    return StreamAssignment(encoders=(encoder,), decoder=decoder, aux=aux)


def _fill_aux(parsed: ParsedDescriptor, base: int) -> tuple[int, ...]:
    return tuple(
        base + position if head.stream is None else head.stream
        for position, head in enumerate(parsed.aux)
    )


def fill_lm_vocabs(dim_vocabs: list[int], index: int) -> list[int]:
    """
    Vocabulary list for a decoder-only language model reading stream
    ``index``: ``index + 1`` entries, all equal to the first vocabulary size.
    """
    if not dim_vocabs:
        raise ValueError("dim-vocabs must list at least one vocabulary size")
    if index < 0:
        raise ValueError(f"index must be >= 0, got {index}")
    return [dim_vocabs[0]] * (index + 1)
