# Inference primitives shared by every stage of the synthesis core.
#
# This module holds the two building blocks that the rest of the network is
# assembled from:
# - LSTM: bidirectional recurrent encoder with explicit gate arithmetic
# - WeightNormConv1d: 1-D (transposed) convolution whose kernel is rebuilt
#   from a magnitude/direction pair on every call
#
# Both keep the parameter names of their torch.nn counterparts
# (weight_ih_l0, weight_hh_l0_reverse, weight_g, weight_v, ...) so Kokoro
# checkpoints load into them unchanged.
#
# Cross-file dependencies:
# - Used by: modules.py (TextEncoder, DurationEncoder, ProsodyPredictor),
#   istftnet.py (AdainResBlk1d, AdaINResBlock1, Decoder, Generator)

from typing import Optional, Sequence, Tuple, Union
import math
import torch
import torch.nn as nn
import torch.nn.functional as F


def norm_except_dim(v: torch.Tensor, dim: Optional[int] = 0) -> torch.Tensor:
    # L2 norm of `v` over every axis except `dim`, with the reduced axes kept
    # so the result broadcasts against `v`. dim=None reduces over all axes.
    if dim is None:
        return torch.linalg.vector_norm(v)
    if dim < 0:
        dim += v.dim()
    axes = [a for a in range(v.dim()) if a != dim]
    return torch.linalg.vector_norm(v, dim=axes, keepdim=True)


def weight_norm(v: torch.Tensor, g: torch.Tensor, dim: Optional[int] = 0) -> torch.Tensor:
    # w = g * v / ||v||
    return v * (g / norm_except_dim(v, dim))


class WeightNormConv1d(nn.Module):
    # Weight-normalized Conv1d / ConvTranspose1d.
    #
    # The kernel is stored as a direction `weight_v` and a per-channel scale
    # `weight_g` and reconstructed as g * v / ||v|| at call time, exactly like
    # torch.nn.utils.weight_norm does for the Kokoro checkpoints.
    #
    # Layouts:
    # - transpose=False: weight_v (out, in/groups, k), F.conv1d
    # - transpose=True:  weight_v (in, out/groups, k), F.conv_transpose1d
    # In both cases weight_g has shape (weight_v.shape[0], 1, 1) when dim=0.
    # The stored layout is assumed canonical; axis fixes belong to the loader.
    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int,
        stride: int = 1,
        padding: int = 0,
        dilation: int = 1,
        groups: int = 1,
        bias: bool = True,
        transpose: bool = False,
        output_padding: int = 0,
        dim: Optional[int] = 0,
    ):
        super().__init__()
        if in_channels % groups or out_channels % groups:
            raise ValueError(f"channels ({in_channels}, {out_channels}) must be divisible by groups={groups}")
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_size = kernel_size
        self.stride = stride
        self.padding = padding
        self.dilation = dilation
        self.groups = groups
        self.transpose = transpose
        self.output_padding = output_padding
        self.dim = dim
        if transpose:
            v_shape = (in_channels, out_channels // groups, kernel_size)
        else:
            v_shape = (out_channels, in_channels // groups, kernel_size)
        if dim is None:
            g_shape = ()
        else:
            g_shape = [1] * len(v_shape)
            g_shape[dim] = v_shape[dim]
        self.weight_v = nn.Parameter(torch.empty(v_shape))
        self.weight_g = nn.Parameter(torch.empty(g_shape))
        self.bias = nn.Parameter(torch.empty(out_channels)) if bias else None
        self.reset_parameters()

    def reset_parameters(self):
        # Same initialisation as nn.Conv1d, then g = ||v|| so the effective
        # kernel starts out equal to v.
        nn.init.kaiming_uniform_(self.weight_v, a=math.sqrt(5))
        with torch.no_grad():
            self.weight_g.copy_(norm_except_dim(self.weight_v, self.dim))
        if self.bias is not None:
            fan_in = self.weight_v.shape[1] * self.kernel_size
            bound = 1 / math.sqrt(fan_in)
            nn.init.uniform_(self.bias, -bound, bound)

    @property
    def weight(self) -> torch.Tensor:
        return weight_norm(self.weight_v, self.weight_g, self.dim)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.transpose:
            return F.conv_transpose1d(
                x, self.weight, self.bias, stride=self.stride, padding=self.padding,
                output_padding=self.output_padding, groups=self.groups, dilation=self.dilation,
            )
        return F.conv1d(
            x, self.weight, self.bias, stride=self.stride, padding=self.padding,
            dilation=self.dilation, groups=self.groups,
        )

    def extra_repr(self):
        kind = 'transposed' if self.transpose else 'conv'
        return (f"{self.in_channels}, {self.out_channels}, kernel_size={self.kernel_size}, "
                f"stride={self.stride}, padding={self.padding}, dilation={self.dilation}, "
                f"groups={self.groups}, {kind}")


HiddenState = Tuple[torch.Tensor, torch.Tensor]


class LSTM(nn.Module):
    # Single-layer bidirectional LSTM with explicit gate arithmetic.
    #
    # Drop-in for nn.LSTM(input_size, hidden_size, 1, batch_first=True,
    # bidirectional=True) at inference time: same parameter names, same gate
    # order (i, f, g, o), same (output, (h_n, c_n)) return value. Unlike
    # nn.LSTM it accepts per-item `lengths`, which replaces the
    # pack_padded_sequence / pad_packed_sequence round trip: each sequence is
    # run over its valid prefix only and padded positions come out as zeros.
    #
    # Per step:
    #   i, f, o = sigmoid(.), g = tanh(.)
    #   c = f * c + i * g
    #   h = o * tanh(c)
    #
    # Shapes:
    # - x: (batch, time, input_size), or (time, input_size) unbatched
    # - output: (batch, time, 2 * hidden_size)
    # - h_n, c_n: (2, batch, hidden_size), forward direction first
    def __init__(self, input_size: int, hidden_size: int, bias: bool = True):
        super().__init__()
        if input_size <= 0 or hidden_size <= 0:
            raise ValueError(f"input_size and hidden_size must be positive, got {input_size}, {hidden_size}")
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.has_bias = bias
        gate_size = 4 * hidden_size
        for suffix in ('', '_reverse'):
            self.register_parameter(f'weight_ih_l0{suffix}', nn.Parameter(torch.empty(gate_size, input_size)))
            self.register_parameter(f'weight_hh_l0{suffix}', nn.Parameter(torch.empty(gate_size, hidden_size)))
            if bias:
                self.register_parameter(f'bias_ih_l0{suffix}', nn.Parameter(torch.empty(gate_size)))
                self.register_parameter(f'bias_hh_l0{suffix}', nn.Parameter(torch.empty(gate_size)))
        self.reset_parameters()

    def reset_parameters(self):
        bound = 1.0 / math.sqrt(self.hidden_size)
        for p in self.parameters():
            nn.init.uniform_(p, -bound, bound)

    def _direction_params(self, reverse: bool):
        suffix = '_reverse' if reverse else ''
        w_ih = getattr(self, f'weight_ih_l0{suffix}')
        w_hh = getattr(self, f'weight_hh_l0{suffix}')
        b = None
        if self.has_bias:
            b = getattr(self, f'bias_ih_l0{suffix}') + getattr(self, f'bias_hh_l0{suffix}')
        return w_ih, w_hh, b

    def _run_direction(
        self,
        x: torch.Tensor,
        h: torch.Tensor,
        c: torch.Tensor,
        reverse: bool,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        w_ih, w_hh, b = self._direction_params(reverse)
        steps = x.shape[1]
        # Input projections for every step at once; only the recurrent part is sequential.
        x_proj = F.linear(x, w_ih, b)
        out = x.new_zeros(x.shape[0], steps, self.hidden_size)
        order = range(steps - 1, -1, -1) if reverse else range(steps)
        for t in order:
            gates = x_proj[:, t] + F.linear(h, w_hh)
            i, f, g, o = gates.chunk(4, dim=-1)
            i = torch.sigmoid(i)
            f = torch.sigmoid(f)
            g = torch.tanh(g)
            o = torch.sigmoid(o)
            c = f * c + i * g
            h = o * torch.tanh(c)
            out[:, t] = h
        return out, h, c

    def _run(self, x: torch.Tensor, hx: Optional[HiddenState]):
        batch = x.shape[0]
        if hx is None:
            zeros = x.new_zeros(batch, self.hidden_size)
            h0 = (zeros, zeros)
            c0 = (zeros, zeros)
        else:
            h0, c0 = hx
            h0, c0 = (h0[0], h0[1]), (c0[0], c0[1])
        fwd, h_f, c_f = self._run_direction(x, h0[0], c0[0], reverse=False)
        bwd, h_b, c_b = self._run_direction(x, h0[1], c0[1], reverse=True)
        output = torch.cat([fwd, bwd], dim=-1)
        return output, (torch.stack([h_f, h_b]), torch.stack([c_f, c_b]))

    def forward(
        self,
        x: torch.Tensor,
        hx: Optional[HiddenState] = None,
        lengths: Optional[Union[torch.Tensor, Sequence[int]]] = None,
    ) -> Tuple[torch.Tensor, HiddenState]:
        if x.shape[-1] != self.input_size:
            raise ValueError(f"LSTM expects {self.input_size} input features, got {x.shape[-1]}")
        unbatched = x.dim() == 2
        if unbatched:
            x = x.unsqueeze(0)
            if hx is not None:
                hx = (hx[0].unsqueeze(1), hx[1].unsqueeze(1))
        if lengths is None:
            output, (h_n, c_n) = self._run(x, hx)
        else:
            lengths = [int(n) for n in lengths]
            if len(lengths) != x.shape[0]:
                raise ValueError(f"Got {len(lengths)} lengths for a batch of {x.shape[0]}")
            output = x.new_zeros(x.shape[0], x.shape[1], 2 * self.hidden_size)
            hs, cs = [], []
            for b, n in enumerate(lengths):
                item_hx = None if hx is None else (hx[0][:, b:b + 1], hx[1][:, b:b + 1])
                out_b, (h_b, c_b) = self._run(x[b:b + 1, :n], item_hx)
                output[b, :n] = out_b[0]
                hs.append(h_b)
                cs.append(c_b)
            h_n, c_n = torch.cat(hs, dim=1), torch.cat(cs, dim=1)
        if unbatched:
            return output.squeeze(0), (h_n.squeeze(1), c_n.squeeze(1))
        return output, (h_n, c_n)

    def extra_repr(self):
        return f"{self.input_size}, {self.hidden_size}, bidirectional=True"
