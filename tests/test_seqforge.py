#!/usr/bin/env python3
"""
Tests for SeqForge configuration, descriptor parsing, stream allocation,
model construction, losses and gradient clipping.

Run all tests:
    python -m pytest tests/ -v --tb=short
"""

import logging
import math
import sys
from pathlib import Path

import pytest
import torch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


# Tiny dimensions shared by every construction test
OPTS = {
    "dim-vocabs": [20, 20, 20, 20, 20],
    "dim-emb": 8,
    "dim-rnn": 8,
    "transformer-heads": 2,
    "transformer-dim-ffn": 16,
    "enc-depth": 1,
    "dec-depth": 1,
    "dropout": 0.0,
    "label-smoothing": 0.1,
    "max-length": 16,
}

CHAR_OPTS = {
    "char-stride": 2,
    "char-highway": 1,
    "char-conv-filters-widths": [1, 3],
    "char-conv-filters-num": [4, 4],
}


def make_tokens(seed, batch_size=2, seq_len=6, vocab=20):
    """Random token ids in [2, vocab) with one padded position in row 0."""
    gen = torch.Generator().manual_seed(seed)
    ids = torch.randint(2, vocab, (batch_size, seq_len), generator=gen)
    ids[0, -1] = 0
    return ids


def make_stream(seed):
    from seqforge.model.batch import SubBatch
    ids = make_tokens(seed)
    targets = torch.zeros_like(ids)
    targets[:, 1] = ids[:, 1]
    return SubBatch(ids=ids, targets=targets)


def make_batch(n_streams=5):
    from seqforge.model.batch import CorpusBatch
    return CorpusBatch([make_stream(i) for i in range(n_streams)])


# =============================================================================
# Config Tests
# =============================================================================

class TestConfig:
    """Tests for the experiment configuration."""

    def test_default_config_validates(self):
        from seqforge.config import SeqForgeConfig
        config = SeqForgeConfig()
        config.validate()

    def test_smoke_test_config(self):
        """Smoke config should be tiny and CPU-only."""
        from seqforge.config import SeqForgeConfig
        config = SeqForgeConfig.for_smoke_test("bert")
        config.validate()
        assert config.model.type == "bert"
        assert config.model.dim_emb == 16
        assert config.training.device == "cpu"

    def test_heads_must_divide_dim_emb(self):
        from seqforge.config import ModelConfig
        with pytest.raises(ValueError, match="divisible"):
            ModelConfig(dim_emb=10, transformer_heads=3).validate()

    def test_invalid_clip_method(self):
        from seqforge.config import TrainingConfig
        with pytest.raises(ValueError, match="clip_method"):
            TrainingConfig(clip_method="bogus").validate()

    def test_invalid_usage(self):
        from seqforge.config import TrainingConfig
        with pytest.raises(ValueError):
            TrainingConfig(usage="inference").validate()

    def test_yaml_round_trip(self, tmp_path):
        """Config should survive save → load."""
        from seqforge.config import SeqForgeConfig
        config = SeqForgeConfig.for_smoke_test("transformer12-bert0")
        path = tmp_path / "config.yaml"
        config.to_yaml(path)

        loaded = SeqForgeConfig.from_yaml(path)
        assert loaded.model.type == "transformer12-bert0"
        assert loaded.model.dim_vocabs == config.model.dim_vocabs
        assert loaded.training.clip_method == config.training.clip_method

    def test_missing_yaml_raises(self, tmp_path):
        from seqforge.config import SeqForgeConfig
        with pytest.raises(FileNotFoundError):
            SeqForgeConfig.from_yaml(tmp_path / "missing.yaml")

    def test_to_options(self):
        """to_options should expose hyphenated keys plus the usage."""
        from seqforge.config import SeqForgeConfig
        config = SeqForgeConfig.for_smoke_test()
        config.training.usage = "scoring"
        opts = config.to_options()
        assert opts.get_str("type") == "transformer"
        assert opts.get_int_list("dim-vocabs") == [50, 50, 50, 50]
        assert opts.get("usage") == "scoring"


# =============================================================================
# Options Tests
# =============================================================================

class TestOptions:
    """Tests for the options store and SubModelConfig."""

    def test_overlay_does_not_mutate_parent(self):
        from seqforge.options import Options
        parent = Options({"type": "transformer", "index": 0})
        child = parent.with_overrides(type="bert-encoder", index=2)
        assert child.get_str("type") == "bert-encoder"
        assert child.get_int("index") == 2
        assert parent.get_str("type") == "transformer"
        assert parent.get_int("index") == 0

    def test_underscore_keys_normalised(self):
        from seqforge.options import Options
        opts = Options({"dim_vocabs": [10, 20]})
        assert "dim-vocabs" in opts
        assert opts.has("dim_vocabs")
        assert opts.with_overrides(dim_vocabs=[5])["dim-vocabs"] == [5]

    def test_typed_accessors(self):
        from seqforge.options import Options
        opts = Options({"dim-emb": 8, "type": "s2s", "tied-embeddings": True})
        assert opts.get_int("dim-emb") == 8
        assert opts.get_float("dim-emb") == 8.0
        assert opts.get_bool("tied-embeddings") is True
        assert opts.get_int("missing", 3) == 3
        with pytest.raises(KeyError):
            opts.get_int("missing")
        with pytest.raises(TypeError):
            opts.get_int("type")
        with pytest.raises(TypeError):
            opts.get_int_list("type")

    def test_from_yaml_uses_model_section(self, tmp_path):
        from seqforge.options import Options
        path = tmp_path / "opts.yaml"
        path.write_text("model:\n  type: bert\n  dim_vocabs: [30, 30]\ntraining:\n  seed: 1\n")
        opts = Options.from_yaml(path)
        assert opts.get_str("type") == "bert"
        assert opts.get_int_list("dim-vocabs") == [30, 30]
        assert "seed" not in opts

    def test_sub_model_config_from_options(self):
        """Known keys become fields, unknown keys land in extras."""
        from seqforge.options import Options, SubModelConfig
        opts = Options({**OPTS, "type": "s2s", "index": 1, "char-stride": 3})
        config = SubModelConfig.from_options(opts)
        assert config.type == "s2s"
        assert config.index == 1
        assert config.dim_vocabs == (20, 20, 20, 20, 20)
        assert config.dim_emb == 8
        assert config.extras["char-stride"] == 3
        assert config.vocab_size() == 20

    def test_sub_model_config_validation(self):
        from seqforge.options import Options, SubModelConfig
        with pytest.raises(ValueError, match="index"):
            SubModelConfig.from_options(Options({**OPTS, "type": "s2s", "index": -1}))
        with pytest.raises(ValueError, match="dim-vocabs"):
            SubModelConfig.from_options(Options({"type": "s2s", "dim-vocabs": []}))
        with pytest.raises(ValueError, match="type"):
            SubModelConfig.from_options(Options(OPTS))

    def test_vocab_size_out_of_range(self):
        from seqforge.options import SubModelConfig
        config = SubModelConfig(type="s2s", index=3, dim_vocabs=(10, 10))
        with pytest.raises(ValueError, match="stream 3"):
            config.vocab_size()

    def test_prefixed_names(self):
        from seqforge.options import SubModelConfig
        assert SubModelConfig(type="s2s", prefix="encoder").name("Wemb") == "encoder_Wemb"
        assert SubModelConfig(type="s2s").name("Wemb") == "Wemb"


# =============================================================================
# Descriptor Tests
# =============================================================================

class TestDescriptor:
    """Tests for model-type token parsing."""

    def test_literal_bases(self):
        from seqforge.model.descriptor import LITERAL_BASES, LITERAL_FAMILY, parse_model_type
        for token in LITERAL_BASES:
            parsed = parse_model_type(token)
            assert parsed.base_type == token
            assert parsed.family == LITERAL_FAMILY
            assert parsed.aux == ()
            assert not parsed.is_composite

    def test_composite_with_streams(self):
        from seqforge.model.descriptor import AuxDescriptor, parse_model_type
        parsed = parse_model_type("transformer12-bert0-gpt2")
        assert parsed.family == "transformer"
        assert parsed.encoder_stream == 1
        assert parsed.decoder_stream == 2
        assert parsed.aux == (AuxDescriptor("bert", 0), AuxDescriptor("gpt", 2))

    def test_composite_without_streams(self):
        from seqforge.model.descriptor import AuxDescriptor, parse_model_type
        parsed = parse_model_type("transformer-gpt-bert")
        assert parsed.encoder_stream is None
        assert parsed.decoder_stream is None
        assert parsed.aux == (AuxDescriptor("gpt"), AuxDescriptor("bert"))

    def test_encoder_digit_only(self):
        from seqforge.model.descriptor import parse_model_type
        parsed = parse_model_type("transformer3-gpt")
        assert parsed.encoder_stream == 3
        assert parsed.decoder_stream is None

    def test_alias_takes_precedence(self):
        """transformer-bert-gpt means transformer12-bert0, not bert@2 + gpt@3."""
        from seqforge.model.descriptor import AuxDescriptor, parse_model_type
        parsed = parse_model_type("transformer-bert-gpt")
        assert parsed.token == "transformer12-bert0"
        assert parsed.encoder_stream == 1
        assert parsed.decoder_stream == 2
        assert parsed.aux == (AuxDescriptor("bert", 0),)

    def test_alias_disabled(self):
        from seqforge.model.descriptor import AuxDescriptor, parse_model_type
        parsed = parse_model_type("transformer-bert-gpt", resolve_aliases=False)
        assert parsed.aux == (AuxDescriptor("bert"), AuxDescriptor("gpt"))
        assert parsed.encoder_stream is None

    def test_smtransformer(self):
        from seqforge.model.descriptor import AuxDescriptor, parse_model_type
        parsed = parse_model_type("smtransformer-bert-gpt5")
        assert parsed.family == "smtransformer"
        assert parsed.aux == (AuxDescriptor("bert"), AuxDescriptor("gpt", 5))

    def test_unknown_model_type(self):
        from seqforge.exceptions import UnknownModelType
        from seqforge.model.descriptor import parse_model_type
        for token in ("rnn", "Transformer", "transformers", "bert-gpt2"):
            with pytest.raises(UnknownModelType) as info:
                parse_model_type(token)
            assert info.value.token == token

    def test_unknown_subtype(self):
        from seqforge.exceptions import UnknownModelSubtype
        from seqforge.model.descriptor import parse_model_type
        with pytest.raises(UnknownModelSubtype) as info:
            parse_model_type("transformer-xyz")
        assert info.value.subtype == "xyz"
        assert info.value.token == "transformer-xyz"

    def test_malformed_tokens(self):
        from seqforge.exceptions import MalformedDescriptor
        from seqforge.model.descriptor import parse_model_type
        for token in (
            "",
            "transformer123-bert",
            "transformer1",
            "transformer-bert-",
            "transformer--bert",
            "transformer-bert12",
            "transformer1x-bert",
            "smtransformer1-bert",
            "smtransformer",
        ):
            with pytest.raises(MalformedDescriptor):
                parse_model_type(token)

    @pytest.mark.parametrize("token", ["transformers-bert", "transformer123-bert", "transformer-bert-"])
    def test_parse_errors_are_logged(self, token, caplog):
        """Every rejected token leaves an ERROR record naming it."""
        from seqforge.exceptions import ConstructionError
        from seqforge.model.descriptor import parse_model_type
        with caplog.at_level(logging.ERROR, logger="seqforge.model.descriptor"):
            with pytest.raises(ConstructionError):
                parse_model_type(token)
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert errors
        assert token in errors[0].getMessage()

    def test_errors_are_value_errors(self):
        """Construction errors can be caught as ValueError."""
        from seqforge.exceptions import ConstructionError
        from seqforge.model.descriptor import parse_model_type
        for token in ("nope", "transformer-xyz", "transformer123-bert"):
            with pytest.raises(ConstructionError):
                parse_model_type(token)
            with pytest.raises(ValueError):
                parse_model_type(token)

    def test_sub_model_descriptor_options(self):
        from seqforge.model.descriptor import Role, SubModelDescriptor
        desc = SubModelDescriptor(
            Role.CLASSIFIER, "bert-masked-lm", "masked-lm", 2, {"label-smoothing": 0.0}
        )
        assert desc.options() == {
            "type": "bert-masked-lm",
            "prefix": "masked-lm",
            "index": 2,
            "label-smoothing": 0.0,
        }


# =============================================================================
# Stream Allocation Tests
# =============================================================================

class TestStreams:
    """Tests for stream index defaults."""

    def test_transformer_defaults(self):
        from seqforge.model.descriptor import parse_model_type
        from seqforge.model.streams import allocate_streams
        streams = allocate_streams(parse_model_type("transformer-bert-gpt", resolve_aliases=False))
        assert streams.encoders == (0,)
        assert streams.decoder == 1
        assert streams.aux == (2, 3)

    def test_explicit_digits_win(self):
        from seqforge.model.descriptor import parse_model_type
        from seqforge.model.streams import allocate_streams
        streams = allocate_streams(parse_model_type("transformer12-bert0-gpt"))
        assert streams.encoders == (1,)
        assert streams.decoder == 2
        assert streams.aux == (0, 3)

    def test_shared_indices_allowed(self):
        from seqforge.model.descriptor import parse_model_type
        from seqforge.model.streams import allocate_streams
        streams = allocate_streams(parse_model_type("transformer-gpt1"))
        assert streams.decoder == 1
        assert streams.aux == (1,)

    def test_smtransformer_defaults(self):
        from seqforge.model.descriptor import parse_model_type
        from seqforge.model.streams import allocate_streams
        streams = allocate_streams(parse_model_type("smtransformer-bert-gpt"))
        assert streams.encoders == (0, 1)
        assert streams.decoder == 2
        assert streams.aux == (3, 4)

    def test_literal_gets_plain_defaults(self):
        from seqforge.model.descriptor import parse_model_type
        from seqforge.model.streams import allocate_streams
        streams = allocate_streams(parse_model_type("transformer"))
        assert streams.encoders == (0,)
        assert streams.decoder == 1
        assert streams.aux == ()

    def test_fill_lm_vocabs(self):
        from seqforge.model.streams import fill_lm_vocabs
        assert fill_lm_vocabs([800, 900], 2) == [800, 800, 800]
        assert fill_lm_vocabs([800], 0) == [800]
        with pytest.raises(ValueError):
            fill_lm_vocabs([], 0)
        with pytest.raises(ValueError):
            fill_lm_vocabs([800], -1)


# =============================================================================
# Building Block Tests
# =============================================================================

class TestGraphAndBatch:
    """Tests for the parameter registry and batch containers."""

    def test_get_or_create_shares_blocks(self):
        import torch.nn as nn
        from seqforge.model.graph import ExpressionGraph
        graph = ExpressionGraph()
        a = graph.get_or_create("encoder_Wemb", lambda: nn.Embedding(10, 4), (10, 4))
        b = graph.get_or_create("encoder_Wemb", lambda: nn.Embedding(10, 4), (10, 4))
        c = graph.get_or_create("encoder2_Wemb", lambda: nn.Embedding(10, 4), (10, 4))
        assert a is b
        assert a is not c
        assert graph.names() == ["encoder_Wemb", "encoder2_Wemb"]

    def test_signature_mismatch_raises(self):
        import torch.nn as nn
        from seqforge.model.graph import ExpressionGraph
        graph = ExpressionGraph()
        graph.get_or_create("decoder_Wemb", lambda: nn.Embedding(10, 4), (10, 4))
        with pytest.raises(ValueError, match="incompatible"):
            graph.get_or_create("decoder_Wemb", lambda: nn.Embedding(12, 4), (12, 4))

    def test_sub_batch_default_mask(self):
        from seqforge.model.batch import SubBatch
        sub = SubBatch(ids=torch.tensor([[5, 6, 0]]))
        assert sub.mask.tolist() == [[1, 1, 0]]
        assert sub.labels.tolist() == [5]

    def test_sub_batch_rejects_1d(self):
        from seqforge.model.batch import SubBatch
        with pytest.raises(ValueError, match="2-D"):
            SubBatch(ids=torch.tensor([1, 2, 3]))

    def test_missing_stream(self):
        batch = make_batch(2)
        with pytest.raises(IndexError, match="Stream 3"):
            batch[3]

    def test_usage_parse(self):
        from seqforge.model.base import Usage
        assert Usage.parse("Scoring") is Usage.SCORING
        assert Usage.parse(Usage.TRAINING) is Usage.TRAINING
        with pytest.raises(ValueError):
            Usage.parse("inference")


class TestCosts:
    """Tests for rational losses."""

    def test_sum_multi_keeps_first_count(self):
        from seqforge.model.costs import RationalLoss, SumMultiRationalLoss
        multi = SumMultiRationalLoss()
        multi.push_back(RationalLoss(torch.tensor(6.0), torch.tensor(3.0)))
        multi.push_back(RationalLoss(torch.tensor(4.0), torch.tensor(10.0)))
        total = multi.accumulate()
        assert total.loss.item() == 10.0
        assert total.count.item() == 3.0
        assert math.isclose(total.mean().item(), 10.0 / 3.0, rel_tol=1e-6)

    def test_empty_accumulate_raises(self):
        from seqforge.model.costs import SumMultiRationalLoss
        with pytest.raises(ValueError):
            SumMultiRationalLoss().accumulate()

    def test_cross_entropy_respects_mask(self):
        from seqforge.model.costs import cross_entropy
        logits = torch.zeros(1, 3, 4)
        targets = torch.tensor([[1, 2, 0]])
        mask = torch.tensor([[1, 1, 0]])
        result = cross_entropy(logits, targets, mask)
        assert result.count.item() == 2
        assert math.isclose(result.loss.item(), 2 * math.log(4), rel_tol=1e-5)

    def test_rational_loss_add(self):
        from seqforge.model.costs import RationalLoss
        total = RationalLoss(torch.tensor(1.0), torch.tensor(2.0)) + RationalLoss(
            torch.tensor(3.0), torch.tensor(4.0)
        )
        assert total.loss.item() == 4.0
        assert total.count.item() == 6.0


# =============================================================================
# Factory Tests
# =============================================================================

class TestRecipes:
    """Each recipe produces the expected sub-model roles and streams."""

    def test_s2s(self):
        from seqforge.model.decoders import DecoderS2S
        from seqforge.model.encoder_decoder import EncoderDecoder
        from seqforge.model.encoders import EncoderS2S
        from seqforge.model.factory import build_model
        model = build_model("s2s", "training", OPTS)
        assert type(model) is EncoderDecoder
        assert [type(e) for e in model.encoders] == [EncoderS2S]
        assert [e.index for e in model.encoders] == [0]
        assert isinstance(model.decoder, DecoderS2S)
        assert model.decoder.index == 1
        assert model.decoder.config.dim_context == 2 * OPTS["dim-rnn"]
        assert model.original_type == "s2s"

    def test_amun_pins_depths(self, caplog):
        from seqforge.model.encoder_decoder import Amun
        from seqforge.model.factory import build_model
        with caplog.at_level(logging.WARNING):
            model = build_model("amun", "training", {**OPTS, "dec-depth": 2})
        assert type(model) is Amun
        assert model.decoder.config.dec_depth == 1
        assert model.encoders[0].config.enc_depth == 1
        assert "dec-depth=1" in caplog.text

    def test_nematus(self):
        from seqforge.model.encoder_decoder import Nematus
        from seqforge.model.factory import build_model
        model = build_model("nematus", "training", {**OPTS, "enc-depth": 3, "dec-depth": 2})
        assert type(model) is Nematus
        assert model.encoders[0].config.enc_depth == 1
        assert model.decoder.config.dec_depth == 2

    def test_transformer_s2s(self):
        from seqforge.model.decoders import DecoderS2S
        from seqforge.model.encoders import TransformerEncoder
        from seqforge.model.factory import build_model
        model = build_model("transformer_s2s", "training", OPTS)
        assert isinstance(model.encoders[0], TransformerEncoder)
        assert isinstance(model.decoder, DecoderS2S)
        assert model.decoder.config.dim_context == OPTS["dim-emb"]

    def test_char_s2s(self):
        from seqforge.model.encoders import CharS2SEncoder
        from seqforge.model.factory import build_model
        model = build_model("char-s2s", "training", {**OPTS, **CHAR_OPTS})
        assert isinstance(model.encoders[0], CharS2SEncoder)
        assert model.decoder.index == 1

    def test_multi_s2s(self):
        """Two encoders on streams 0 and 1, decoder on stream 2, separate weights."""
        from seqforge.model.factory import build_model
        model = build_model("multi-s2s", "training", OPTS)
        assert [e.index for e in model.encoders] == [0, 1]
        assert [e.prefix for e in model.encoders] == ["encoder1", "encoder2"]
        assert model.decoder.index == 2
        assert model.encoders[0].embeddings is not model.encoders[1].embeddings

    def test_shared_multi_s2s(self):
        """Both encoders use prefix 'encoder' and therefore the same weights."""
        from seqforge.model.factory import build_model
        model = build_model("shared-multi-s2s", "training", OPTS)
        assert [e.prefix for e in model.encoders] == ["encoder", "encoder"]
        assert model.encoders[0].embeddings is model.encoders[1].embeddings
        assert model.encoders[0].bi_rnn is model.encoders[1].bi_rnn

    def test_multi_transformer(self):
        """Two separate transformer encoders on streams 0 and 1, decoder on stream 2."""
        from seqforge.model.decoders import TransformerDecoder
        from seqforge.model.encoders import TransformerEncoder
        from seqforge.model.factory import build_model
        model = build_model("multi-transformer", "training", OPTS)
        assert [type(e) for e in model.encoders] == [TransformerEncoder, TransformerEncoder]
        assert [e.prefix for e in model.encoders] == ["encoder1", "encoder2"]
        assert [e.index for e in model.encoders] == [0, 1]
        assert isinstance(model.decoder, TransformerDecoder)
        assert model.decoder.index == 2
        assert model.encoders[0].layers is not model.encoders[1].layers
        assert model.encoders[0].embeddings is not model.encoders[1].embeddings

    def test_shared_multi_transformer(self):
        from seqforge.model.factory import build_model
        model = build_model("shared-multi-transformer", "training", OPTS)
        assert model.encoders[0].layers is model.encoders[1].layers
        assert model.decoder.index == 2

    def test_shared_prefix_vocab_mismatch(self):
        from seqforge.model.factory import build_model
        with pytest.raises(ValueError, match="incompatible"):
            build_model("shared-multi-s2s", "training", {**OPTS, "dim-vocabs": [20, 30, 20]})

    def test_lm_fills_vocabs(self):
        from seqforge.model.factory import build_model
        model = build_model("lm", "training", {**OPTS, "dim-vocabs": [40, 7], "index": 2})
        assert len(model.encoders) == 0
        assert model.decoder.index == 2
        assert model.decoder.config.dim_vocabs == (40, 40, 40)
        assert model.decoder.vocab_size == 40
        assert model.decoder.config.dim_context == 0

    def test_lm_transformer(self):
        from seqforge.model.decoders import TransformerDecoder
        from seqforge.model.factory import build_model
        model = build_model("lm-transformer", "training", OPTS)
        assert isinstance(model.decoder, TransformerDecoder)
        assert model.decoder.index == 0

    def test_bert(self):
        from seqforge.model.classifiers import BertClassifier, BertMaskedLM
        from seqforge.model.encoder_classifier import BertEncoderClassifier
        from seqforge.model.encoders import BertEncoder
        from seqforge.model.factory import build_model
        model = build_model("bert", "training", OPTS)
        assert type(model) is BertEncoderClassifier
        assert isinstance(model.encoders[0], BertEncoder)
        assert model.encoders[0].index == 0
        heads = list(model.classifiers)
        assert [type(h) for h in heads] == [BertMaskedLM, BertClassifier]
        assert [(h.prefix, h.index) for h in heads] == [("masked-lm", 0), ("next-sentence", 1)]

    def test_bert_classifier(self):
        from seqforge.model.classifiers import BertClassifier
        from seqforge.model.factory import build_model
        model = build_model("bert-classifier", "training", OPTS)
        assert [type(h) for h in model.classifiers] == [BertClassifier]
        assert model.classifiers[0].index == 1

    def test_composite_training_builds_heads(self):
        from seqforge.model.encoder_classifier import EncoderClassifier
        from seqforge.model.encoder_decoder import EncoderDecoder
        from seqforge.model.factory import build_model
        from seqforge.model.multi_model import MultiModel
        model = build_model("transformer12-bert0-gpt3", "training", OPTS)
        assert type(model) is MultiModel
        primary, bert, gpt = model.models
        assert isinstance(primary, EncoderDecoder)
        assert [e.index for e in primary.encoders] == [1]
        assert primary.decoder.index == 2
        assert isinstance(bert, EncoderClassifier)
        assert bert.encoders[0].index == 0
        assert bert.classifiers[0].index == 0
        assert bert.classifiers[0].config.label_smoothing == 0.0
        assert len(gpt.encoders) == 0
        assert gpt.decoder.index == 3

    def test_heads_share_parameters(self):
        """BERT heads reuse the encoder stack, GPT heads the decoder stack."""
        from seqforge.model.factory import build_model
        model = build_model("transformer-bert-gpt", "training", OPTS, graph=None)
        primary, bert = model.models
        assert bert.encoders[0].layers is primary.encoders[0].layers
        assert bert.encoders[0].embeddings is primary.encoders[0].embeddings

        model = build_model("transformer-gpt", "training", OPTS)
        primary, gpt = model.models
        assert gpt.decoder.layers is primary.decoder.layers

    def test_alias_streams(self):
        from seqforge.model.factory import build_model
        model = build_model("transformer-bert-gpt", "training", OPTS)
        primary, bert = model.models
        assert primary.encoders[0].index == 1
        assert primary.decoder.index == 2
        assert bert.encoders[0].index == 0
        assert model.original_type == "transformer12-bert0"

    def test_smtransformer(self):
        from seqforge.model.factory import build_model
        model = build_model("smtransformer-bert-gpt", "training", OPTS)
        primary, bert, gpt = model.models
        assert [e.index for e in primary.encoders] == [0, 1]
        assert primary.encoders[0].layers is primary.encoders[1].layers
        assert primary.decoder.index == 2
        assert bert.encoders[0].index == 3
        assert gpt.decoder.index == 4

    def test_original_type_everywhere(self):
        from seqforge.model.factory import build_model
        model = build_model("transformer12-bert0-gpt3", "training", OPTS)
        assert model.original_type == "transformer12-bert0-gpt3"
        assert all(m.original_type == "transformer12-bert0-gpt3" for m in model.models)

    def test_mnist(self):
        from seqforge.model.factory import build_model
        from seqforge.model.mnist import MnistFeedForwardNet, MnistLeNet
        ffnn = build_model("mnist-ffnn", "training", {"layer-dims": [16]})
        lenet = build_model("mnist-lenet", "scoring", {})
        assert isinstance(ffnn, MnistFeedForwardNet)
        assert isinstance(lenet, MnistLeNet)


class TestUsagePruning:
    """Non-training usages never build auxiliary heads."""

    def test_bert_gpt_translation_is_gpt_only(self):
        from seqforge.model.decoders import TransformerDecoder
        from seqforge.model.encoder_decoder import EncoderDecoder
        from seqforge.model.factory import build_model
        model = build_model("bert-gpt", "translation", OPTS)
        assert type(model) is EncoderDecoder
        assert len(model.encoders) == 0
        assert isinstance(model.decoder, TransformerDecoder)
        assert model.decoder.index == 1

    def test_bert_gpt_training(self):
        from seqforge.model.encoder_classifier import EncoderClassifier
        from seqforge.model.encoder_decoder import EncoderDecoder
        from seqforge.model.factory import build_model
        model = build_model("bert-gpt", "training", OPTS)
        bert, gpt = model.models
        assert isinstance(bert, EncoderClassifier)
        assert bert.encoders[0].index == 0
        assert isinstance(gpt, EncoderDecoder)
        assert gpt.decoder.index == 1

    def test_composite_scoring_returns_primary(self):
        from seqforge.model.encoder_decoder import EncoderDecoder
        from seqforge.model.factory import build_model
        from seqforge.model.graph import ExpressionGraph
        graph = ExpressionGraph()
        model = build_model("transformer12-bert0-gpt3", "scoring", OPTS, graph)
        assert type(model) is EncoderDecoder
        assert [e.index for e in model.encoders] == [1]
        assert model.decoder.index == 2
        assert not any("masked-lm" in name for name in graph.names())

    def test_usage_recorded(self):
        from seqforge.model.base import Usage
        from seqforge.model.factory import build_model
        assert build_model("transformer", "scoring", OPTS).usage is Usage.SCORING
        assert build_model("transformer", Usage.TRANSLATION, OPTS).usage is Usage.TRANSLATION


class TestFactories:
    """Tests for the builder values and error paths."""

    def test_unknown_component_types(self):
        from seqforge.exceptions import (
            UnknownClassifierType,
            UnknownDecoderType,
            UnknownEncoderType,
        )
        from seqforge.model.factory import ClassifierFactory, DecoderFactory, EncoderFactory
        from seqforge.model.graph import ExpressionGraph
        from seqforge.options import Options
        parent = Options(OPTS)
        with pytest.raises(UnknownEncoderType):
            EncoderFactory({"type": "lstm"}).construct(ExpressionGraph(), parent)
        with pytest.raises(UnknownDecoderType) as info:
            DecoderFactory({"type": "bert-encoder"}).construct(ExpressionGraph(), parent)
        assert info.value.type_name == "bert-encoder"
        with pytest.raises(UnknownClassifierType):
            ClassifierFactory({"type": "s2s"}).construct(ExpressionGraph(), parent)

    def test_builders_are_immutable(self):
        from seqforge.model.factory import DecoderFactory, EncoderDecoderFactory, EncoderFactory
        empty = EncoderDecoderFactory()
        one = empty.push_back(EncoderFactory({"type": "s2s"}))
        two = one.push_back(DecoderFactory({"type": "s2s"}))
        assert len(empty.encoders) == 0
        assert len(one.encoders) == 1 and len(one.decoders) == 0
        assert len(two.decoders) == 1

        base = EncoderFactory({"type": "s2s"})
        shifted = base.with_options(index=3)
        assert "index" not in base.overrides
        assert shifted.overrides["index"] == 3

    def test_push_back_rejects_wrong_role(self):
        from seqforge.model.factory import (
            ClassifierFactory,
            EncoderClassifierFactory,
            EncoderDecoderFactory,
        )
        with pytest.raises(TypeError):
            EncoderDecoderFactory().push_back(ClassifierFactory({"type": "bert-classifier"}))
        with pytest.raises(TypeError):
            EncoderClassifierFactory().push_back("encoder")

    def test_manual_composition(self):
        """Factories compose into models without going through a token."""
        from seqforge.model.descriptor import Role
        from seqforge.model.factory import EncoderDecoderFactory, sub_model
        from seqforge.model.graph import ExpressionGraph
        from seqforge.options import Options
        factory = (
            EncoderDecoderFactory(Options({**OPTS, "type": "transformer"}))
            .push_back(sub_model(Role.ENCODER, "transformer", "src", 0))
            .push_back(sub_model(Role.DECODER, "transformer", "trg", 1))
        )
        graph = ExpressionGraph()
        model = factory.construct(graph)
        assert graph.has("src_layers") and graph.has("trg_layers")
        assert model.decoder.config.dim_context == OPTS["dim-emb"]

    def test_unknown_model_type(self):
        from seqforge.exceptions import UnknownModelType
        from seqforge.model.factory import build_model
        with pytest.raises(UnknownModelType):
            build_model("rnn", "training", OPTS)

    def test_build_model_or_exit(self, caplog):
        from seqforge.model.factory import build_model_or_exit
        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(SystemExit) as info:
                build_model_or_exit("transformer-xyz", "training", OPTS)
        assert info.value.code == 1
        assert "xyz" in caplog.text

    def test_from_options(self):
        from seqforge.model.base import Usage
        from seqforge.model.factory import from_options
        model = from_options({**OPTS, "type": "transformer-gpt", "usage": "scoring"})
        assert model.usage is Usage.SCORING
        assert len(model.encoders) == 1
        model = from_options({**OPTS, "type": "transformer-gpt"}, "training")
        assert len(model.models) == 2

    def test_options_not_mutated(self):
        from seqforge.model.factory import build_model
        from seqforge.options import Options
        opts = Options(OPTS)
        build_model("transformer12-bert0", "training", opts)
        assert "usage" not in opts
        assert "original-type" not in opts


# =============================================================================
# Forward / Loss Tests
# =============================================================================

class TestForwardAndLoss:
    """Every recipe family runs forward and backward on a tiny batch."""

    @pytest.mark.parametrize("token", [
        "s2s",
        "amun",
        "nematus",
        "transformer",
        "transformer_s2s",
        "char-s2s",
        "multi-s2s",
        "shared-multi-transformer",
        "lm",
        "lm-transformer",
        "bert-gpt",
        "transformer-bert-gpt",
        "transformer12-bert0-gpt3",
        "smtransformer-bert-gpt",
    ])
    def test_loss_backward(self, token):
        from seqforge.model.factory import build_model
        model = build_model(token, "training", {**OPTS, **CHAR_OPTS})
        loss = model.loss(make_batch())
        assert loss.count.item() > 0
        value = loss.mean()
        assert torch.isfinite(value)
        value.backward()
        assert any(p.grad is not None for p in model.parameters())

    def test_bert_loss(self):
        """Masked LM on stream 0, next-sentence labels on stream 1."""
        from seqforge.model.batch import CorpusBatch, SubBatch
        from seqforge.model.factory import build_model
        model = build_model("bert", "training", OPTS)
        batch = CorpusBatch([make_stream(0), SubBatch(ids=torch.tensor([[1], [0]]))])
        masked_logits, sentence_logits = model(batch)
        assert masked_logits.shape == (2, 6, 20)
        assert sentence_logits.shape == (2, 2)
        loss = model.loss(batch)
        # Count comes from the masked-LM head: one masked token per row
        assert loss.count.item() == 2
        loss.mean().backward()

    def test_multi_model_count_is_primary(self):
        from seqforge.model.factory import build_model
        batch = make_batch()
        model = build_model("transformer-gpt", "training", OPTS)
        loss = model.loss(batch)
        assert loss.count.item() == batch[1].mask.sum().item()

    def test_scoring_loss_has_no_smoothing(self):
        from seqforge.model.costs import cross_entropy
        from seqforge.model.factory import build_model
        batch = make_batch()
        model = build_model("transformer", "scoring", OPTS)
        model.eval()
        logits = model(batch)
        expected = cross_entropy(logits, batch[1].ids, batch[1].mask)
        assert torch.allclose(model.loss(batch).loss, expected.loss)

        smoothed = cross_entropy(logits, batch[1].ids, batch[1].mask, 0.1)
        model.usage = type(model.usage).TRAINING
        assert torch.allclose(model.loss(batch).loss, smoothed.loss)

    def test_score_shapes(self):
        from seqforge.model.factory import build_model
        batch = make_batch()
        scores = build_model("s2s", "scoring", OPTS).score(batch)
        assert scores.shape == (2,)
        assert (scores <= 0).all()

    def test_greedy_search(self):
        from seqforge.model.factory import build_model
        model = build_model("transformer", "translation", OPTS)
        out = model.greedy_search(make_batch(), max_length=4)
        assert out.shape[0] == 2
        assert 1 <= out.shape[1] <= 4
        assert out.dtype == torch.long

    def test_step_returns_log_probs(self):
        from seqforge.model.batch import EOS_ID
        from seqforge.model.factory import build_model
        model = build_model("s2s", "translation", OPTS)
        states = model.start_state(make_batch())
        prefix = torch.full((2, 1), EOS_ID, dtype=torch.long)
        log_probs = model.step(states, prefix)
        assert log_probs.shape == (2, 20)
        assert torch.allclose(log_probs.exp().sum(dim=-1), torch.ones(2), atol=1e-5)

    def test_mnist_loss_and_score(self):
        from seqforge.model.batch import CorpusBatch, SubBatch
        from seqforge.model.factory import build_model
        batch = CorpusBatch([
            SubBatch(ids=torch.rand(2, 784)),
            SubBatch(ids=torch.tensor([[3], [7]])),
        ])
        for token in ("mnist-ffnn", "mnist-lenet"):
            model = build_model(token, "scoring", {"layer-dims": [16]})
            assert model(batch).shape == (2, 10)
            assert model.score(batch).shape == (2, 10)
            assert model.loss(batch).count.item() == 2


# =============================================================================
# Clipper Tests
# =============================================================================

class TestClippers:
    """Tests for elementwise and norm gradient clipping."""

    def test_norm_rescales_large_tensor(self):
        from seqforge.training.clippers import Norm, clip
        t = torch.tensor([3.0, 4.0])
        clip(Norm(1.0), t)
        assert math.isclose(t.norm().item(), 1.0, rel_tol=1e-6)
        assert torch.allclose(t, torch.tensor([0.6, 0.8]))

    def test_norm_leaves_small_tensor(self):
        from seqforge.training.clippers import Norm
        t = torch.tensor([0.3, 0.4])
        Norm(1.0).clip(t)
        assert torch.equal(t, torch.tensor([0.3, 0.4]))

    def test_elementwise_clamps(self):
        from seqforge.training.clippers import Elementwise, clip
        t = torch.tensor([-5.0, 0.5, 5.0])
        clip(Elementwise(1.0), t)
        assert t.tolist() == [-1.0, 0.5, 1.0]
        clip(Elementwise(1.0), t)
        assert t.tolist() == [-1.0, 0.5, 1.0]

    def test_defaults(self):
        from seqforge.training.clippers import Elementwise, Norm
        assert Elementwise().c == 10.0
        assert Norm().c == 1.0

    def test_make_clipper(self):
        from seqforge.training.clippers import Elementwise, Norm, make_clipper
        assert make_clipper("norm", 2.0) == Norm(2.0)
        assert make_clipper("elementwise") == Elementwise(10.0)
        assert make_clipper("none") is None
        assert make_clipper("norm", 0) is None
        with pytest.raises(ValueError, match="Unknown clipper"):
            make_clipper("global")
        with pytest.raises(ValueError, match="Unknown clipper"):
            make_clipper("bogus", 0)

    def test_non_positive_threshold_rejected(self):
        from seqforge.training.clippers import Elementwise, Norm
        with pytest.raises(ValueError):
            Norm(-1.0)
        with pytest.raises(ValueError):
            Elementwise(0.0)

    def test_clippers_are_immutable(self):
        import dataclasses
        from seqforge.training.clippers import Norm
        with pytest.raises(dataclasses.FrozenInstanceError):
            Norm(1.0).c = 2.0

    def test_clip_gradients(self):
        from seqforge.training.clippers import Elementwise, clip_gradients
        a = torch.nn.Parameter(torch.zeros(3))
        b = torch.nn.Parameter(torch.zeros(2))
        a.grad = torch.tensor([-3.0, 0.25, 3.0])
        clip_gradients(Elementwise(0.5), [a, b])
        assert a.grad.tolist() == [-0.5, 0.25, 0.5]
        assert b.grad is None
        clip_gradients(None, [a])


# =============================================================================
# Trainer Tests
# =============================================================================

class TestTrainer:
    """Tests for the minimal training loop."""

    def test_train_step_updates_parameters(self):
        from seqforge.config import SeqForgeConfig
        from seqforge.model.factory import from_options
        from seqforge.training.trainer import Trainer
        config = SeqForgeConfig.for_smoke_test("transformer")
        model = from_options(config.to_options())
        trainer = Trainer(model, config)
        before = [p.detach().clone() for p in model.parameters()]

        loss = trainer.train_step(make_batch())
        assert math.isfinite(loss)
        assert trainer.global_step == 1
        assert any(not torch.equal(b, p) for b, p in zip(before, model.parameters()))

    def test_train_step_applies_clipper(self):
        from seqforge.config import SeqForgeConfig
        from seqforge.model.factory import from_options
        from seqforge.training.clippers import Elementwise
        from seqforge.training.trainer import Trainer
        config = SeqForgeConfig.for_smoke_test("transformer12-bert0")
        config.training.clip_method = "elementwise"
        config.training.clip_norm = 1e-4
        model = from_options(config.to_options())
        trainer = Trainer(model, config)
        assert trainer.clipper == Elementwise(1e-4)

        trainer.train_step(make_batch(4))
        grads = [p.grad for p in model.parameters() if p.grad is not None]
        assert grads
        assert all(g.abs().max().item() <= 1e-4 + 1e-12 for g in grads)

    def test_train_over_batches(self):
        from seqforge.config import SeqForgeConfig
        from seqforge.model.factory import from_options
        from seqforge.training.trainer import Trainer
        config = SeqForgeConfig.for_smoke_test("s2s")
        trainer = Trainer(from_options(config.to_options()), config, total_steps=3)
        losses = trainer.train([make_batch(2)] * 3)
        assert len(losses) == 3
        assert math.isfinite(trainer.evaluate(make_batch(2)))

    def test_set_seed(self):
        from seqforge.training.trainer import set_seed
        set_seed(7)
        a = torch.rand(3)
        set_seed(7)
        b = torch.rand(3)
        assert torch.equal(a, b)
