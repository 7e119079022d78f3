"""
Tests for the iSTFTNet vocoder components.

Tests cover:
- AdaIN1d normalization (including single-step inputs)
- AdainResBlk1d shapes with and without upsampling
- SineGen / SourceModuleHnNSF voicing and reproducibility
- Generator and Decoder output lengths
"""

import pytest
import torch

from kokoro_synth.istftnet import (
    AdaIN1d, AdaINResBlock1, AdainResBlk1d, Decoder, Generator, SineGen, SourceModuleHnNSF,
)

STYLE_DIM = 8


@pytest.fixture
def style():
    torch.manual_seed(3)
    return torch.randn(1, STYLE_DIM)


class TestAdaIN1d:
    """Adaptive instance normalization."""

    @torch.no_grad()
    def test_zero_style_projection_is_instance_norm(self, style):
        norm = AdaIN1d(STYLE_DIM, 4)
        norm.fc.weight.zero_()
        norm.fc.bias.zero_()
        x = torch.randn(2, 4, 50) * 3 + 1
        y = norm(x, style.expand(2, -1))
        torch.testing.assert_close(y.mean(dim=-1), torch.zeros(2, 4), atol=1e-5, rtol=0)
        torch.testing.assert_close(y.std(dim=-1, unbiased=False), torch.ones(2, 4), atol=1e-3, rtol=0)

    @torch.no_grad()
    def test_style_scale_and_shift(self, style):
        norm = AdaIN1d(STYLE_DIM, 2)
        norm.fc.weight.zero_()
        norm.fc.bias.copy_(torch.tensor([1.0, 1.0, 0.5, -0.5]))
        x = torch.randn(1, 2, 30)
        y = norm(x, style)
        normalized = y - torch.tensor([0.5, -0.5]).view(1, 2, 1)
        torch.testing.assert_close(normalized.std(dim=-1, unbiased=False), torch.full((1, 2), 2.0), atol=1e-3, rtol=0)
        assert y.shape == x.shape

    @torch.no_grad()
    def test_single_time_step(self, style):
        norm = AdaIN1d(STYLE_DIM, 4)
        y = norm(torch.randn(1, 4, 1), style)
        assert y.shape == (1, 4, 1)
        assert torch.isfinite(y).all()


class TestAdainResBlk1d:
    """Style-conditioned residual block."""

    @torch.no_grad()
    def test_plain_block_keeps_length(self, style):
        block = AdainResBlk1d(6, 4, STYLE_DIM)
        y = block(torch.randn(1, 6, 13), style)
        assert y.shape == (1, 4, 13)
        assert hasattr(block, 'conv1x1')

    def test_default_activation_per_block(self):
        a = AdainResBlk1d(6, 4, STYLE_DIM)
        b = AdainResBlk1d(6, 4, STYLE_DIM)
        assert isinstance(a.actv, torch.nn.LeakyReLU)
        assert a.actv.negative_slope == 0.2
        assert a.actv is not b.actv

    @torch.no_grad()
    def test_upsampling_block_doubles_length(self, style):
        block = AdainResBlk1d(6, 3, STYLE_DIM, upsample=True)
        for frames in (1, 2, 13):
            y = block(torch.randn(1, 6, frames), style)
            assert y.shape == (1, 3, 2 * frames)

    def test_checkpoint_keys(self):
        block = AdainResBlk1d(6, 3, STYLE_DIM, upsample=True)
        keys = set(block.state_dict())
        assert {'conv1.weight_g', 'conv1.weight_v', 'conv1.bias', 'norm1.fc.weight', 'norm2.fc.bias',
                'conv1x1.weight_g', 'conv1x1.weight_v', 'pool.weight_g', 'pool.weight_v', 'pool.bias'} <= keys
        assert 'conv1x1.bias' not in keys
        assert block.pool.weight_v.shape == (6, 1, 3)

    def test_identity_shortcut_without_projection(self):
        block = AdainResBlk1d(4, 4, STYLE_DIM)
        assert not block.learned_sc
        assert not hasattr(block, 'conv1x1')


class TestAdaINResBlock1:
    """Snake-activated multi-dilation block."""

    @torch.no_grad()
    def test_shape_and_keys(self, style):
        block = AdaINResBlock1(4, 7, (1, 3, 5), STYLE_DIM)
        y = block(torch.randn(1, 4, 40), style)
        assert y.shape == (1, 4, 40)
        assert 'alpha1.0' in block.state_dict()
        assert 'convs1.2.weight_v' in block.state_dict()


class TestHarmonicSource:
    """SineGen and SourceModuleHnNSF."""

    @torch.no_grad()
    def test_unvoiced_is_noise_only(self):
        gen = SineGen(24000, 300, harmonic_num=8, sine_amp=0.1, noise_std=0.003, voiced_threshold=10)
        f0 = torch.zeros(1, 3000, 1)
        sines, uv, noise = gen(f0, generator=torch.Generator().manual_seed(0))
        assert sines.shape == (1, 3000, 9)
        assert torch.all(uv == 0)
        torch.testing.assert_close(sines, noise)
        assert abs(noise.std().item() - 0.1 / 3) < 0.005

    @torch.no_grad()
    def test_voiced_fundamental(self):
        gen = SineGen(24000, 300, harmonic_num=0, sine_amp=0.1, noise_std=0.0, voiced_threshold=10)
        f0 = torch.full((1, 3000, 1), 200.0)
        sines, uv, _ = gen(f0)
        assert torch.all(uv == 1)
        assert sines.abs().max() <= 0.1 + 1e-6
        # 25 periods, two crossings each, minus the clamped ends of the phase ramp.
        crossings = (torch.sign(sines[0, 1:, 0]) != torch.sign(sines[0, :-1, 0])).sum().item()
        assert 40 <= crossings <= 52

    @torch.no_grad()
    def test_generator_makes_source_reproducible(self):
        source = SourceModuleHnNSF(24000, 300, harmonic_num=8, voiced_threshod=10)
        f0 = torch.full((1, 1200, 1), 150.0)
        first = source(f0, generator=torch.Generator().manual_seed(7))
        second = source(f0, generator=torch.Generator().manual_seed(7))
        for a, b in zip(first, second):
            assert torch.equal(a, b)
        assert first[0].shape == (1, 1200, 1)
        assert first[0].abs().max() <= 1.0


class TestGenerator:
    """Generator and Decoder output lengths."""

    @torch.no_grad()
    def test_generator_length(self, style):
        torch.manual_seed(0)
        gen = Generator(
            STYLE_DIM, [3, 7, 11], [10, 6], 16, [[1, 3, 5]] * 3, [20, 12], 20, 5,
        )
        steps = 6
        audio = gen(torch.randn(1, 16, steps), style, torch.full((1, steps), 120.0))
        assert audio.shape == (1, 1, steps * 300)
        assert torch.isfinite(audio).all()

    @torch.no_grad()
    def test_decoder_length(self, style, tiny_config):
        torch.manual_seed(0)
        decoder = Decoder.from_config(tiny_config)
        frames = 4
        asr = torch.randn(1, tiny_config.hidden_dim, frames)
        f0 = torch.full((1, 2 * frames), 180.0)
        n = torch.randn(1, 2 * frames)
        audio = decoder(asr, f0, n, style, generator=torch.Generator().manual_seed(0))
        assert audio.shape == (1, 1, frames * tiny_config.samples_per_frame)

    def test_decoder_checkpoint_keys(self, tiny_config):
        keys = set(Decoder.from_config(tiny_config).state_dict())
        for key in (
            'encode.conv1.weight_v', 'decode.3.pool.weight_g', 'F0_conv.weight_g', 'N_conv.bias',
            'asr_res.0.weight_v', 'generator.m_source.l_linear.weight', 'generator.ups.1.weight_v',
            'generator.noise_convs.0.weight', 'generator.noise_res.1.alpha2.2', 'generator.resblocks.5.adain1.0.fc.weight',
            'generator.conv_post.weight_g',
        ):
            assert key in keys, key
        assert not any('window' in k for k in keys)
