# STFT / iSTFT for the iSTFTNet vocoder.
#
# This module implements the short-time Fourier transform pair used twice by
# the generator: once forward, to turn the harmonic excitation into the
# magnitude/phase features consumed by the noise branches, and once inverse,
# to turn the network's final magnitude/phase prediction into audio.
#
# Key Features:
# - Centered framing with reflect padding (n_fft // 2 on each side)
# - Periodic Hann window, zero-padded to n_fft when win_length < n_fft
# - One batched rfft / irfft over all frames
# - Phase unwrapping across frames before reconstruction
# - Overlap-add into an explicitly sized accumulator, normalized by the
#   accumulated squared window
#
# Mathematical Foundation:
# - Analysis:  X[m, k] = Σ_n x[n + mH] w[n] e^(-j2πkn/N)
# - Synthesis: y[t] = Σ_m w[t - mH] frame_m[t - mH] / Σ_m w²[t - mH]
#   which returns x exactly wherever the squared windows overlap.
#
# Concurrency:
# - Frames are independent; rfft/irfft process all of them in one call on
#   torch's intra-op thread pool. The normalization reads the accumulators
#   only after every frame has been added.
#
# Cross-file dependencies:
# - Used by: istftnet.py (Generator: transform on the harmonic source,
#   inverse on conv_post output)

import math
import torch
import torch.nn as nn
import torch.nn.functional as F

# Window-energy floor below which samples are left unnormalized (librosa's tiny for float32).
WINDOW_SUM_FLOOR = 1.1754944e-38


def unwrap(phase: torch.Tensor, dim: int = -1) -> torch.Tensor:
    # Remove 2π jumps along `dim`, same semantics as numpy.unwrap
    # (period 2π, discontinuity threshold π).
    #
    # Each successive difference is folded into [-π, π); differences already
    # smaller than π are left alone. The corrections are cumulatively summed
    # and added back, so the first sample along `dim` is unchanged.
    period = 2 * math.pi
    discont = period / 2
    dd = torch.diff(phase, dim=dim)
    ddmod = torch.remainder(dd + math.pi, period) - math.pi
    # Map -π to +π when the original step was positive, as numpy does.
    ddmod = torch.where((ddmod == -math.pi) & (dd > 0), torch.full_like(ddmod, math.pi), ddmod)
    correction = ddmod - dd
    correction = torch.where(dd.abs() < discont, torch.zeros_like(correction), correction)
    head = phase.narrow(dim, 0, 1)
    tail = phase.narrow(dim, 1, phase.shape[dim] - 1) + torch.cumsum(correction, dim=dim)
    return torch.cat([head, tail], dim=dim)


class CustomSTFT(nn.Module):
    # STFT analysis / synthesis pair with magnitude-phase interface.
    #
    # Parameters:
    # - filter_length: FFT size n_fft (20 in the Kokoro generator)
    # - hop_length: frame advance (5 in the Kokoro generator)
    # - win_length: Hann window length, <= filter_length
    # - window: only 'hann' is supported
    # - center: pad n_fft // 2 on both sides before framing
    # - pad_mode: 'reflect' or 'constant'
    #
    # Shapes:
    # - transform: (batch, samples) -> magnitude, phase (batch, n_fft//2+1, frames)
    # - inverse: magnitude, phase -> (batch, 1, (frames - 1) * hop_length)
    #
    # The module only holds the window buffer; nothing is cached between
    # calls, so one instance can serve concurrent syntheses.
    def __init__(
        self,
        filter_length=800,
        hop_length=200,
        win_length=800,
        window="hann",
        center=True,
        pad_mode="reflect",
    ):
        super().__init__()
        assert window == 'hann', window
        if win_length > filter_length:
            raise ValueError(f"win_length ({win_length}) cannot exceed filter_length ({filter_length})")
        if pad_mode not in ('reflect', 'constant'):
            raise ValueError(f"Invalid pad mode {pad_mode}")
        self.filter_length = filter_length
        self.hop_length = hop_length
        self.win_length = win_length
        self.n_fft = filter_length
        self.center = center
        self.pad_mode = pad_mode
        self.freq_bins = self.n_fft // 2 + 1

        window_tensor = torch.hann_window(win_length, periodic=True, dtype=torch.float32)
        if win_length < self.n_fft:
            left = (self.n_fft - win_length) // 2
            window_tensor = F.pad(window_tensor, (left, self.n_fft - win_length - left))
        self.register_buffer("window", window_tensor, persistent=False)

    def frame(self, waveform: torch.Tensor) -> torch.Tensor:
        # (batch, samples) -> (batch, frames, n_fft), after optional center padding.
        if self.center:
            pad_len = self.n_fft // 2
            if self.pad_mode == 'reflect' and waveform.shape[-1] <= pad_len:
                raise ValueError(
                    f"Input is too short for reflect padding: {waveform.shape[-1]} samples, need more than {pad_len}"
                )
            # F.pad reflect needs a channel axis on 2-D input.
            waveform = F.pad(waveform.unsqueeze(1), (pad_len, pad_len), mode=self.pad_mode).squeeze(1)
        if waveform.shape[-1] < self.n_fft:
            raise ValueError(
                f"Input is too short for an STFT: {waveform.shape[-1]} samples after padding, n_fft={self.n_fft}"
            )
        return waveform.unfold(-1, self.n_fft, self.hop_length)

    def transform(self, waveform: torch.Tensor):
        # Forward STFT.
        #
        # Parameters:
        # - waveform: (batch, samples) or (samples,)
        #
        # Returns:
        # - magnitude: |X|, (batch, freq_bins, frames)
        # - phase: atan2(imag, real), (batch, freq_bins, frames)
        if waveform.dim() == 1:
            waveform = waveform.unsqueeze(0)
        frames = self.frame(waveform) * self.window
        spec = torch.fft.rfft(frames, n=self.n_fft, dim=-1).transpose(1, 2)
        magnitude = spec.abs()
        phase = torch.atan2(spec.imag, spec.real)
        return magnitude, phase

    def overlap_add(self, frames: torch.Tensor) -> torch.Tensor:
        # Overlap-add windowed frames and normalize by the window energy.
        #
        # frames: (batch, n_frames, n_fft), already multiplied by the window.
        # Returns the full-length signal (batch, (n_frames - 1) * hop + n_fft),
        # before any center trimming.
        batch, n_frames, n_fft = frames.shape
        length = (n_frames - 1) * self.hop_length + n_fft
        starts = torch.arange(n_frames, device=frames.device) * self.hop_length
        index = (starts[:, None] + torch.arange(n_fft, device=frames.device)[None, :]).reshape(-1)

        signal = frames.new_zeros(batch, length)
        signal.index_add_(1, index, frames.reshape(batch, -1))

        win_sq = (self.window ** 2).to(frames.dtype)
        window_sum = frames.new_zeros(length)
        window_sum.index_add_(0, index, win_sq.repeat(n_frames))

        # Every frame is in both accumulators at this point.
        nonzero = window_sum > WINDOW_SUM_FLOOR
        return torch.where(nonzero, signal / torch.where(nonzero, window_sum, torch.ones_like(window_sum)), signal)

    def inverse(self, magnitude: torch.Tensor, phase: torch.Tensor, length=None):
        # Inverse STFT.
        #
        # Parameters:
        # - magnitude: (batch, freq_bins, frames)
        # - phase: (batch, freq_bins, frames), may be wrapped
        # - length: optional target length for the final trim
        #
        # Returns:
        # - waveform: (batch, 1, samples), samples = (frames - 1) * hop_length
        #   when center=True and length is None
        #
        # Pipeline:
        # 1. Unwrap phase along the frame axis
        # 2. Rebuild the complex spectrum and irfft every frame
        # 3. Window the frames and overlap-add them with window-energy normalization
        # 4. Trim the n_fft // 2 center padding (and optionally to `length`)
        if magnitude.shape != phase.shape:
            raise ValueError(f"magnitude {tuple(magnitude.shape)} and phase {tuple(phase.shape)} differ")
        if magnitude.shape[1] != self.freq_bins:
            raise ValueError(f"Expected {self.freq_bins} frequency bins, got {magnitude.shape[1]}")
        phase = unwrap(phase, dim=-1)
        spec = torch.polar(magnitude, phase).transpose(1, 2)
        frames = torch.fft.irfft(spec, n=self.n_fft, dim=-1) * self.window
        waveform = self.overlap_add(frames)

        if self.center:
            pad_len = self.n_fft // 2
            waveform = waveform[..., pad_len:waveform.shape[-1] - pad_len]
        if length is not None:
            waveform = waveform[..., :length]
        return waveform.unsqueeze(1)

    def forward(self, x: torch.Tensor):
        # Analysis-synthesis round trip, used to validate the pair.
        mag, phase = self.transform(x)
        return self.inverse(mag, phase, length=x.shape[-1])
