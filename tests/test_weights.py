"""
Tests for checkpoint sanitation, checkpoint I/O and voice selection.
"""

import numpy as np
import pytest
import torch

from kokoro_synth.convert_checkpoint import convert, main
from kokoro_synth.errors import InvalidInput
from kokoro_synth.weights import (
    flatten_checkpoint, load_voice, load_weights, sanitize_weights, save_checkpoint, select_style,
)


class TestSanitize:
    """Key normalization."""

    def test_strips_module_prefix(self):
        weights = {'predictor.module.lstm.weight_ih_l0': torch.zeros(1)}
        assert list(sanitize_weights(weights)) == ['predictor.lstm.weight_ih_l0']

    def test_drops_position_ids(self):
        weights = {'bert.embeddings.position_ids': torch.arange(3), 'decoder.N_conv.bias': torch.zeros(1)}
        assert list(sanitize_weights(weights)) == ['decoder.N_conv.bias']

    def test_renames_parametrized_weight_norm(self):
        weights = {
            'decoder.encode.conv1.parametrizations.weight.original0': torch.ones(2, 1, 1),
            'decoder.encode.conv1.parametrizations.weight.original1': torch.ones(2, 3, 3),
        }
        assert set(sanitize_weights(weights)) == {'decoder.encode.conv1.weight_g', 'decoder.encode.conv1.weight_v'}

    def test_flatten_nested_checkpoint(self):
        nested = {'decoder': {'module.F0_conv.bias': torch.zeros(1)}, 'text_encoder': {'lstm.weight_ih_l0': torch.zeros(1)}}
        flat = sanitize_weights(flatten_checkpoint(nested))
        assert set(flat) == {'decoder.F0_conv.bias', 'text_encoder.lstm.weight_ih_l0'}


class TestCheckpointFiles:
    """save_checkpoint / load_weights."""

    @pytest.mark.parametrize("suffix", [".pth", ".safetensors"])
    def test_round_trip(self, tmp_path, suffix):
        weights = {
            'predictor.F0_proj.weight': torch.randn(1, 4, 1),
            'decoder.generator.ups.0.weight_g': torch.randn(4, 1, 1),
        }
        path = tmp_path / f"model{suffix}"
        save_checkpoint(weights, path)
        loaded = load_weights(path)
        assert set(loaded) == set(weights)
        for key, value in weights.items():
            assert torch.equal(loaded[key], value)

    def test_pth_layout_is_module_keyed(self, tmp_path):
        path = tmp_path / 'model.pth'
        save_checkpoint({'decoder.N_conv.bias': torch.zeros(1), 'other.x': torch.zeros(1)}, path)
        raw = torch.load(path, weights_only=True)
        assert list(raw) == ['bert', 'bert_encoder', 'predictor', 'text_encoder', 'decoder']
        assert list(raw['decoder']) == ['N_conv.bias']


class TestVoices:
    """Voice pack selection."""

    def test_select_by_phoneme_count(self):
        pack = torch.randn(510, 1, 256)
        style = select_style(pack, 12)
        assert style.shape == (1, 256)
        assert torch.equal(style, pack[11])

    def test_numpy_pack(self):
        pack = np.random.default_rng(0).standard_normal((510, 1, 256)).astype(np.float32)
        assert torch.equal(select_style(pack, 1), torch.from_numpy(pack[0]))

    @pytest.mark.parametrize("count", [0, 511])
    def test_out_of_range(self, count):
        with pytest.raises(InvalidInput):
            select_style(torch.randn(510, 1, 256), count)

    def test_bad_shape(self):
        with pytest.raises(InvalidInput):
            select_style(torch.randn(510, 2, 256), 3)

    @pytest.mark.parametrize("suffix", [".pt", ".npy"])
    def test_load_voice(self, tmp_path, suffix):
        pack = torch.randn(10, 1, 16)
        path = tmp_path / f"af_test{suffix}"
        if suffix == ".npy":
            np.save(path, pack.numpy())
        else:
            torch.save(pack, path)
        assert torch.equal(load_voice(path), pack)


class TestConvertCheckpoint:
    """Command-line layout conversion."""

    def test_pth_to_safetensors(self, tmp_path):
        src = tmp_path / 'kokoro.pth'
        dst = tmp_path / 'kokoro.safetensors'
        save_checkpoint({
            'bert.embeddings.word_embeddings.weight': torch.randn(3, 2),
            'decoder.N_conv.bias': torch.randn(1),
        }, src)
        assert main([str(src), str(dst)]) == 0
        assert set(load_weights(dst)) == {'bert.embeddings.word_embeddings.weight', 'decoder.N_conv.bias'}

    def test_core_only(self, tmp_path):
        src = tmp_path / 'kokoro.safetensors'
        dst = tmp_path / 'core.pth'
        save_checkpoint({
            'bert.embeddings.word_embeddings.weight': torch.randn(3, 2),
            'predictor.F0_proj.bias': torch.randn(1),
        }, src)
        kept = convert(src, dst, core_only=True)
        assert set(kept) == {'predictor.F0_proj.bias'}
        assert set(load_weights(dst)) == {'predictor.F0_proj.bias'}
