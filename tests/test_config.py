"""
Tests for KokoroConfig / IstftNetConfig and the error hierarchy.
"""

import json

import pytest

from kokoro_synth.config import IstftNetConfig, KokoroConfig, load_config
from kokoro_synth.errors import (
    ConfigurationMismatch, InputTooLong, InvalidInput, NumericalInvariantViolation, SynthesisError,
)

# Trimmed copy of the published Kokoro-82M config.json layout.
KOKORO_CONFIG = {
    "istftnet": {
        "upsample_kernel_sizes": [20, 12],
        "upsample_rates": [10, 6],
        "gen_istft_hop_size": 5,
        "gen_istft_n_fft": 20,
        "resblock_dilation_sizes": [[1, 3, 5], [1, 3, 5], [1, 3, 5]],
        "resblock_kernel_sizes": [3, 7, 11],
        "upsample_initial_channel": 512,
    },
    "dim_in": 64,
    "dropout": 0.2,
    "hidden_dim": 512,
    "max_conv_dim": 512,
    "max_dur": 50,
    "multispeaker": True,
    "n_layer": 3,
    "n_mels": 80,
    "n_token": 178,
    "style_dim": 128,
    "text_encoder_kernel_size": 5,
    "plbert": {
        "hidden_size": 768,
        "num_attention_heads": 12,
        "intermediate_size": 2048,
        "max_position_embeddings": 512,
        "num_hidden_layers": 12,
        "dropout": 0.1,
    },
    "vocab": {";": 1, ":": 2},
}


class TestKokoroConfig:
    """Config parsing."""

    def test_defaults_match_kokoro(self):
        config = KokoroConfig()
        assert config.samples_per_frame == 600
        assert config.frame_rate == 40
        assert config.istftnet.upsample_scale == 300

    def test_from_kokoro_layout(self):
        config = KokoroConfig.from_dict(KOKORO_CONFIG)
        assert config.hidden_dim == 512
        assert config.style_dim == 128
        assert config.context_length == 512
        assert config.istftnet.upsample_rates == (10, 6)
        assert config.istftnet.resblock_dilation_sizes == ((1, 3, 5),) * 3
        assert config == KokoroConfig()

    def test_context_length_from_plbert(self):
        d = dict(KOKORO_CONFIG, plbert={"max_position_embeddings": 128})
        assert KokoroConfig.from_dict(d).context_length == 128

    def test_load_from_path(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps(KOKORO_CONFIG), encoding='utf-8')
        assert load_config(str(path)) == KokoroConfig()

    def test_load_passes_config_through(self):
        config = KokoroConfig(hidden_dim=32)
        assert load_config(config) is config

    def test_odd_hidden_dim_rejected(self):
        with pytest.raises(ValueError):
            KokoroConfig(hidden_dim=15)

    def test_mismatched_upsample_lists_rejected(self):
        with pytest.raises(ValueError):
            IstftNetConfig(upsample_rates=(10, 6), upsample_kernel_sizes=(20,))

    def test_frozen(self):
        config = KokoroConfig()
        with pytest.raises(AttributeError):
            config.hidden_dim = 8


class TestErrors:
    """Error hierarchy."""

    def test_hierarchy(self):
        assert issubclass(InputTooLong, InvalidInput)
        assert issubclass(InvalidInput, ValueError)
        for cls in (InvalidInput, ConfigurationMismatch, NumericalInvariantViolation):
            assert issubclass(cls, SynthesisError)

    def test_configuration_mismatch_lists_everything(self):
        err = ConfigurationMismatch(['missing a', 'b: shape'])
        assert err.mismatches == ['missing a', 'b: shape']
        assert 'missing a' in str(err) and 'b: shape' in str(err)

    def test_input_too_long_message(self):
        err = InputTooLong(600, 512)
        assert '600' in str(err) and '512' in str(err)
