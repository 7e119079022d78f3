# iSTFTNet Vocoder for the Kokoro Synthesis Core
#
# This module turns frame-rate acoustic features into audio. It contains the
# decoder that fuses text features with the predicted pitch (F0) and voicing
# (N) curves, and the harmonic-plus-noise generator that upsamples the result
# to sample rate and finishes with an inverse STFT.
#
# Architecture Components:
# - AdaIN1d: instance normalization with style-predicted scale/shift
# - AdainResBlk1d: style-conditioned residual block, optionally upsampling x2
# - AdaINResBlock1: snake-activated multi-dilation residual block (generator)
# - SineGen / SourceModuleHnNSF: harmonic excitation from the F0 curve
# - Generator: transposed-conv upsampling with source injection, iSTFT output
# - Decoder: encode/decode stack that feeds the Generator
#
# Signal Lengths (default config, F = frames):
# - asr: F, F0/N curves: 2F, decode output: 2F
# - harmonic source: 2F * 300 samples, its STFT: 2F * 60 + 1 frames
# - audio: 2F * 300 = 600F samples
#
# Cross-file dependencies:
# - Used by: modules.py (ProsodyPredictor uses AdainResBlk1d), model.py (Decoder)
# - Imports from: layers.py (WeightNormConv1d), custom_stft.py (CustomSTFT)
# - Based on: StyleTTS2 / iSTFTNet vocoder with Kokoro's generator settings

from .custom_stft import CustomSTFT
from .layers import WeightNormConv1d
from typing import Optional
import math
import torch
import torch.nn as nn
import torch.nn.functional as F

LRELU_SLOPE = 0.1


def get_padding(kernel_size, dilation=1):
    return int((kernel_size * dilation - dilation) / 2)


class AdaIN1d(nn.Module):
    # Adaptive instance normalization.
    #
    # Normalizes every channel over the time axis (no affine parameters, no
    # running statistics), then applies a style-dependent scale and shift:
    #   gamma, beta = chunk(fc(s), 2)
    #   out = (1 + gamma) * instance_norm(x) + beta
    #
    # The statistics are computed directly rather than through
    # F.instance_norm, which rejects inputs with a single time step.
    #
    # Used by:
    # - AdainResBlk1d (norm1, norm2), AdaINResBlock1 (adain1, adain2)
    def __init__(self, style_dim, num_features, eps=1e-5):
        super().__init__()
        self.num_features = num_features
        self.eps = eps
        self.fc = nn.Linear(style_dim, num_features * 2)

    def forward(self, x, s):
        h = self.fc(s)
        h = h.view(h.size(0), h.size(1), 1)
        gamma, beta = torch.chunk(h, chunks=2, dim=1)
        mean = x.mean(dim=-1, keepdim=True)
        var = x.var(dim=-1, keepdim=True, unbiased=False)
        x = (x - mean) * torch.rsqrt(var + self.eps)
        return (1 + gamma) * x + beta


class UpSample1d(nn.Module):
    def __init__(self, enabled: bool):
        super().__init__()
        self.enabled = enabled

    def forward(self, x):
        if not self.enabled:
            return x
        return F.interpolate(x, scale_factor=2, mode='nearest')


class AdainResBlk1d(nn.Module):
    # Style-conditioned residual block, the conditioning primitive shared by the
    # prosody predictor and the decoder.
    #
    #   out = (residual(x, s) + shortcut(x)) / sqrt(2)
    #
    # residual: norm1 -> LeakyReLU(0.2) -> pool -> conv1 -> norm2 -> LeakyReLU(0.2) -> conv2
    # shortcut: nearest x2 (when upsampling) -> conv1x1 (only when dim_in != dim_out)
    #
    # With upsample=True the pool is a depthwise weight-normalized transposed
    # conv (k3, stride 2, padding 1), which yields 2T - 1 samples; one sample
    # of left padding brings it to exactly 2T so both paths line up.
    #
    # Parameters:
    # - dim_in / dim_out: channel widths
    # - style_dim: width of the style half fed to norm1/norm2
    # - upsample: double the time axis
    #
    # Used by:
    # - ProsodyPredictor.F0 / ProsodyPredictor.N (modules.py)
    # - Decoder.encode / Decoder.decode
    def __init__(self, dim_in, dim_out, style_dim=64, actv=None, upsample=False):
        super().__init__()
        self.actv = nn.LeakyReLU(0.2) if actv is None else actv
        self.upsample_type = 'nearest' if upsample else 'none'
        self.upsample = UpSample1d(upsample)
        self.learned_sc = dim_in != dim_out
        self.conv1 = WeightNormConv1d(dim_in, dim_out, 3, 1, 1)
        self.conv2 = WeightNormConv1d(dim_out, dim_out, 3, 1, 1)
        self.norm1 = AdaIN1d(style_dim, dim_in)
        self.norm2 = AdaIN1d(style_dim, dim_out)
        if self.learned_sc:
            self.conv1x1 = WeightNormConv1d(dim_in, dim_out, 1, 1, 0, bias=False)
        if upsample:
            self.pool = WeightNormConv1d(dim_in, dim_in, 3, stride=2, padding=1, groups=dim_in, transpose=True)
        else:
            self.pool = nn.Identity()

    def _shortcut(self, x):
        x = self.upsample(x)
        if self.learned_sc:
            x = self.conv1x1(x)
        return x

    def _residual(self, x, s):
        x = self.norm1(x, s)
        x = self.actv(x)
        if self.upsample_type != 'none':
            x = F.pad(self.pool(x), (1, 0))
        x = self.conv1(x)
        x = self.norm2(x, s)
        x = self.actv(x)
        x = self.conv2(x)
        return x

    def forward(self, x, s):
        out = self._residual(x, s)
        return (out + self._shortcut(x)) / math.sqrt(2)


class AdaINResBlock1(nn.Module):
    # HiFi-GAN style residual block with AdaIN and snake activation.
    #
    # For each dilation d in `dilation` (three of them):
    #   xt = snake(adain1(x), alpha1) -> conv(k, dilation=d)
    #   xt = snake(adain2(xt), alpha2) -> conv(k, dilation=1)
    #   x = x + xt
    # with snake(x, a) = x + sin(a * x)^2 / a.
    #
    # Used by:
    # - Generator.resblocks (K per upsampling stage, averaged)
    # - Generator.noise_res (one per stage, on the harmonic branch)
    def __init__(self, channels, kernel_size=3, dilation=(1, 3, 5), style_dim=64):
        super().__init__()
        self.convs1 = nn.ModuleList([
            WeightNormConv1d(channels, channels, kernel_size, 1, dilation=d, padding=get_padding(kernel_size, d))
            for d in dilation
        ])
        self.convs2 = nn.ModuleList([
            WeightNormConv1d(channels, channels, kernel_size, 1, dilation=1, padding=get_padding(kernel_size, 1))
            for _ in dilation
        ])
        self.adain1 = nn.ModuleList([AdaIN1d(style_dim, channels) for _ in dilation])
        self.adain2 = nn.ModuleList([AdaIN1d(style_dim, channels) for _ in dilation])
        self.alpha1 = nn.ParameterList([nn.Parameter(torch.ones(1, channels, 1)) for _ in dilation])
        self.alpha2 = nn.ParameterList([nn.Parameter(torch.ones(1, channels, 1)) for _ in dilation])

    def forward(self, x, s):
        for c1, c2, n1, n2, a1, a2 in zip(self.convs1, self.convs2, self.adain1, self.adain2, self.alpha1, self.alpha2):
            xt = n1(x, s)
            xt = xt + (1 / a1) * (torch.sin(a1 * xt) ** 2)  # Snake1D
            xt = c1(xt)
            xt = n2(xt, s)
            xt = xt + (1 / a2) * (torch.sin(a2 * xt) ** 2)  # Snake1D
            xt = c2(xt)
            x = xt + x
        return x


class SineGen(nn.Module):
    # Harmonic sine generator driven by a sample-rate F0 curve.
    #
    # Parameters:
    # - samp_rate: audio sample rate in Hz
    # - upsample_scale: samples per F0 step (prod(upsample_rates) * hop)
    # - harmonic_num: overtones above the fundamental (8 -> 9 sines)
    # - sine_amp: sine amplitude; sine_amp / 3 is the unvoiced noise std
    # - noise_std: noise std in voiced regions
    # - voiced_threshold: F0 (Hz) above which a sample counts as voiced
    #
    # Phase is integrated at the F0 step rate rather than per sample: the
    # per-sample phase increments are linearly downsampled by upsample_scale,
    # cumulatively summed, then scaled back up and linearly interpolated to
    # sample rate. Interpolation targets are explicit sizes so no length is
    # lost to float rounding of 1 / upsample_scale.
    #
    # Randomness (initial harmonic phases, additive noise) comes from the
    # optional torch.Generator so synthesis can be made reproducible.
    def __init__(self, samp_rate, upsample_scale, harmonic_num=0, sine_amp=0.1, noise_std=0.003, voiced_threshold=0):
        super().__init__()
        self.sine_amp = sine_amp
        self.noise_std = noise_std
        self.harmonic_num = harmonic_num
        self.dim = self.harmonic_num + 1
        self.sampling_rate = samp_rate
        self.voiced_threshold = voiced_threshold
        self.upsample_scale = upsample_scale

    def _f02uv(self, f0):
        return (f0 > self.voiced_threshold).type(torch.float32)

    def _f02sine(self, f0_values, generator=None):
        # f0_values: (batch, samples, dim), fundamental and overtones.
        # The integer part of f / sr is dropped; it does not change the phase.
        rad_values = (f0_values / self.sampling_rate) % 1
        # Random initial phase for every overtone, none for the fundamental.
        rand_ini = torch.rand(
            f0_values.shape[0], f0_values.shape[2],
            generator=generator, device=f0_values.device, dtype=f0_values.dtype,
        )
        rand_ini[:, 0] = 0
        rad_values[:, 0, :] = rad_values[:, 0, :] + rand_ini

        samples = rad_values.shape[1]
        steps = max(samples // self.upsample_scale, 1)
        rad_values = F.interpolate(rad_values.transpose(1, 2), size=steps, mode="linear").transpose(1, 2)
        phase = torch.cumsum(rad_values, dim=1) * 2 * math.pi
        phase = F.interpolate(phase.transpose(1, 2) * self.upsample_scale, size=samples, mode="linear").transpose(1, 2)
        return torch.sin(phase)

    def forward(self, f0, generator=None):
        # f0: (batch, samples, 1), zero where unvoiced.
        # Returns sine_waves (batch, samples, dim), uv and noise (batch, samples, 1/dim).
        harmonics = torch.arange(1, self.harmonic_num + 2, device=f0.device, dtype=f0.dtype)
        fn = f0 * harmonics.view(1, 1, -1)
        sine_waves = self._f02sine(fn, generator=generator) * self.sine_amp
        uv = self._f02uv(f0).to(f0.dtype)
        # Unvoiced noise std sine_amp / 3 keeps its peaks near sine_amp.
        noise_amp = uv * self.noise_std + (1 - uv) * self.sine_amp / 3
        noise = noise_amp * torch.randn(
            sine_waves.shape, generator=generator, device=sine_waves.device, dtype=sine_waves.dtype,
        )
        sine_waves = sine_waves * uv + noise
        return sine_waves, uv, noise


class SourceModuleHnNSF(nn.Module):
    # Harmonic-plus-noise source: merges the SineGen harmonics into a single
    # excitation with tanh(Linear(harmonic_num + 1 -> 1)) and draws a separate
    # noise channel with std sine_amp / 3.
    def __init__(self, sampling_rate, upsample_scale, harmonic_num=0, sine_amp=0.1, add_noise_std=0.003,
                 voiced_threshod=0):
        super().__init__()
        self.sine_amp = sine_amp
        self.noise_std = add_noise_std
        self.l_sin_gen = SineGen(sampling_rate, upsample_scale, harmonic_num, sine_amp, add_noise_std, voiced_threshod)
        self.l_linear = nn.Linear(harmonic_num + 1, 1)
        self.l_tanh = nn.Tanh()

    def forward(self, x, generator=None):
        # x: (batch, samples, 1) upsampled F0
        sine_wavs, uv, _ = self.l_sin_gen(x, generator=generator)
        sine_merge = self.l_tanh(self.l_linear(sine_wavs))
        noise = torch.randn(uv.shape, generator=generator, device=uv.device, dtype=uv.dtype) * self.sine_amp / 3
        return sine_merge, noise, uv


class Generator(nn.Module):
    # iSTFTNet generator with a harmonic source branch.
    #
    # Pipeline:
    # 1. Upsample F0 to sample rate (nearest, x upsample_scale), run the source
    # 2. STFT of the harmonic source -> har = [magnitude, phase] (n_fft + 2 channels)
    # 3. For each upsampling stage i:
    #    x = ups[i](leaky_relu(x, 0.1)), reflection-padded (1, 0) on the last stage
    #    x = x + noise_res[i](noise_convs[i](har))
    #    x = mean_j resblocks[i * K + j](x)
    # 4. leaky_relu(0.01) -> conv_post -> exp(magnitude), sin(phase) -> inverse STFT
    #
    # The noise convs stride the har frames down to each stage's rate: stage i
    # uses kernel 2 * prod(rates[i+1:]) and that stride, the last stage a 1x1.
    def __init__(
        self,
        style_dim,
        resblock_kernel_sizes,
        upsample_rates,
        upsample_initial_channel,
        resblock_dilation_sizes,
        upsample_kernel_sizes,
        gen_istft_n_fft,
        gen_istft_hop_size,
        sampling_rate=24000,
        harmonic_num=8,
        voiced_threshold=10,
        sine_amp=0.1,
        noise_std=0.003,
    ):
        super().__init__()
        self.num_kernels = len(resblock_kernel_sizes)
        self.num_upsamples = len(upsample_rates)
        self.upsample_scale = math.prod(upsample_rates) * gen_istft_hop_size
        self.m_source = SourceModuleHnNSF(
            sampling_rate=sampling_rate,
            upsample_scale=self.upsample_scale,
            harmonic_num=harmonic_num,
            sine_amp=sine_amp,
            add_noise_std=noise_std,
            voiced_threshod=voiced_threshold,
        )
        self.f0_upsamp = nn.Upsample(scale_factor=self.upsample_scale)
        self.noise_convs = nn.ModuleList()
        self.noise_res = nn.ModuleList()
        self.ups = nn.ModuleList()
        for i, (u, k) in enumerate(zip(upsample_rates, upsample_kernel_sizes)):
            self.ups.append(WeightNormConv1d(
                upsample_initial_channel // (2 ** i), upsample_initial_channel // (2 ** (i + 1)),
                k, u, padding=(k - u) // 2, transpose=True,
            ))
        self.resblocks = nn.ModuleList()
        for i in range(len(self.ups)):
            ch = upsample_initial_channel // (2 ** (i + 1))
            for k, d in zip(resblock_kernel_sizes, resblock_dilation_sizes):
                self.resblocks.append(AdaINResBlock1(ch, k, d, style_dim))
            if i + 1 < len(upsample_rates):
                stride_f0 = math.prod(upsample_rates[i + 1:])
                self.noise_convs.append(nn.Conv1d(
                    gen_istft_n_fft + 2, ch, kernel_size=stride_f0 * 2, stride=stride_f0, padding=(stride_f0 + 1) // 2,
                ))
                self.noise_res.append(AdaINResBlock1(ch, 7, [1, 3, 5], style_dim))
            else:
                self.noise_convs.append(nn.Conv1d(gen_istft_n_fft + 2, ch, kernel_size=1))
                self.noise_res.append(AdaINResBlock1(ch, 11, [1, 3, 5], style_dim))
        self.post_n_fft = gen_istft_n_fft
        self.conv_post = WeightNormConv1d(ch, self.post_n_fft + 2, 7, 1, padding=3)
        self.reflection_pad = nn.ReflectionPad1d((1, 0))
        self.stft = CustomSTFT(
            filter_length=gen_istft_n_fft,
            hop_length=gen_istft_hop_size,
            win_length=gen_istft_n_fft,
        )

    def harmonic_source(self, f0, generator=None):
        # f0: (batch, steps) -> har (batch, n_fft + 2, stft_frames)
        f0 = self.f0_upsamp(f0[:, None]).transpose(1, 2)  # bs,n,t
        har_source, noi_source, uv = self.m_source(f0, generator=generator)
        har_source = har_source.transpose(1, 2).squeeze(1)
        har_spec, har_phase = self.stft.transform(har_source)
        return torch.cat([har_spec, har_phase], dim=1)

    def forward(self, x, s, f0, generator=None):
        har = self.harmonic_source(f0, generator=generator)
        for i in range(self.num_upsamples):
            x = F.leaky_relu(x, negative_slope=LRELU_SLOPE)
            x_source = self.noise_convs[i](har)
            x_source = self.noise_res[i](x_source, s)
            x = self.ups[i](x)
            if i == self.num_upsamples - 1:
                x = self.reflection_pad(x)
            x = x + x_source
            xs = None
            for j in range(self.num_kernels):
                if xs is None:
                    xs = self.resblocks[i * self.num_kernels + j](x, s)
                else:
                    xs += self.resblocks[i * self.num_kernels + j](x, s)
            x = xs / self.num_kernels
        x = F.leaky_relu(x)
        x = self.conv_post(x)
        spec = torch.exp(x[:, :self.post_n_fft // 2 + 1, :])
        phase = torch.sin(x[:, self.post_n_fft // 2 + 1:, :])
        return self.stft.inverse(spec, phase)


class Decoder(nn.Module):
    # Fuses aligned text features with the F0/N curves and runs the Generator.
    #
    # Flow:
    # 1. F0_conv / N_conv (k3, stride 2) bring the 2F-long curves down to F
    # 2. encode: [asr, F0, N] -> decoder_dim
    # 3. decode: four AdainResBlk1d; [x, asr_res(asr), F0, N] is re-injected
    #    before every block up to and including the first upsampling one
    # 4. generator: audio from the upsampled features, style and raw F0 curve
    #
    # Parameters:
    # - dim_in: text feature width (hidden_dim)
    # - style_dim: acoustic style width
    # - dim / asr_res_dim: decoder width and re-injected text width (1024 / 64)
    # - remaining arguments: Generator settings from IstftNetConfig
    #
    # Used by:
    # - model.py: KModel.decoder, checkpoint prefix "decoder."
    def __init__(
        self,
        dim_in,
        style_dim,
        resblock_kernel_sizes,
        upsample_rates,
        upsample_initial_channel,
        resblock_dilation_sizes,
        upsample_kernel_sizes,
        gen_istft_n_fft,
        gen_istft_hop_size,
        dim=1024,
        asr_res_dim=64,
        sampling_rate=24000,
        harmonic_num=8,
        voiced_threshold=10,
        sine_amp=0.1,
        noise_std=0.003,
    ):
        super().__init__()
        self.encode = AdainResBlk1d(dim_in + 2, dim, style_dim)
        self.decode = nn.ModuleList()
        self.decode.append(AdainResBlk1d(dim + 2 + asr_res_dim, dim, style_dim))
        self.decode.append(AdainResBlk1d(dim + 2 + asr_res_dim, dim, style_dim))
        self.decode.append(AdainResBlk1d(dim + 2 + asr_res_dim, dim, style_dim))
        self.decode.append(AdainResBlk1d(dim + 2 + asr_res_dim, upsample_initial_channel, style_dim, upsample=True))
        self.F0_conv = WeightNormConv1d(1, 1, kernel_size=3, stride=2, groups=1, padding=1)
        self.N_conv = WeightNormConv1d(1, 1, kernel_size=3, stride=2, groups=1, padding=1)
        self.asr_res = nn.Sequential(WeightNormConv1d(dim_in, asr_res_dim, kernel_size=1))
        self.generator = Generator(
            style_dim,
            resblock_kernel_sizes,
            upsample_rates,
            upsample_initial_channel,
            resblock_dilation_sizes,
            upsample_kernel_sizes,
            gen_istft_n_fft,
            gen_istft_hop_size,
            sampling_rate=sampling_rate,
            harmonic_num=harmonic_num,
            voiced_threshold=voiced_threshold,
            sine_amp=sine_amp,
            noise_std=noise_std,
        )

    @classmethod
    def from_config(cls, config) -> 'Decoder':
        ic = config.istftnet
        return cls(
            dim_in=config.hidden_dim,
            style_dim=config.style_dim,
            resblock_kernel_sizes=ic.resblock_kernel_sizes,
            upsample_rates=ic.upsample_rates,
            upsample_initial_channel=ic.upsample_initial_channel,
            resblock_dilation_sizes=ic.resblock_dilation_sizes,
            upsample_kernel_sizes=ic.upsample_kernel_sizes,
            gen_istft_n_fft=ic.gen_istft_n_fft,
            gen_istft_hop_size=ic.gen_istft_hop_size,
            dim=config.decoder_dim,
            asr_res_dim=config.asr_res_dim,
            sampling_rate=config.sample_rate,
            harmonic_num=config.harmonic_num,
            voiced_threshold=config.voiced_threshold,
            sine_amp=config.sine_amp,
            noise_std=config.noise_std,
        )

    def forward(self, asr, F0_curve, N, s, generator: Optional[torch.Generator] = None):
        # asr: (batch, dim_in, F), F0_curve / N: (batch, 2F), s: (batch, style_dim)
        # Returns audio (batch, 1, 2F * upsample_scale).
        F0 = self.F0_conv(F0_curve.unsqueeze(1))
        N = self.N_conv(N.unsqueeze(1))
        x = torch.cat([asr, F0, N], axis=1)
        x = self.encode(x, s)
        asr_res = self.asr_res(asr)
        res = True
        for block in self.decode:
            if res:
                x = torch.cat([x, asr_res, F0, N], axis=1)
            x = block(x, s)
            if block.upsample_type != "none":
                res = False
        return self.generator(x, s, F0_curve, generator=generator)
