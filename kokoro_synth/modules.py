    # Neural Network Components for the Kokoro Synthesis Core
    #
    # This module implements the phoneme-rate half of the network: everything
    # between the external phoneme encoder's embeddings and the decoder.
    #
    # Architecture Components:
    # - TextEncoder: CNN + bidirectional LSTM over token ids (acoustic text features)
    # - DurationEncoder: alternating LSTM / AdaLayerNorm stages over embeddings
    # - ProsodyPredictor: duration head, plus F0 and voicing (N) curve prediction
    # - AdaLayerNorm: layer normalization with style-predicted scale/shift
    # - LayerNorm / LinearNorm: channel-wise norm and Xavier-initialised linear
    #
    # Masking Convention:
    # - Padding masks are (batch, tokens) with True marking padded positions.
    # - Padding is trailing; every recurrent stage runs over the valid prefix
    #   only and every masked stage leaves padded positions at exactly zero.
    #
    # Cross-file dependencies:
    # - Used by: model.py (KModel.predictor, KModel.text_encoder)
    # - Imports from: istftnet.py (AdainResBlk1d), layers.py (LSTM, WeightNormConv1d),
    #   alignment.py (duration rounding)
    # - Based on: StyleTTS2 architecture with Kokoro-specific modifications

# Based on StyleTTS2: https://github.com/yl4579/StyleTTS2/blob/main/models.py
from .alignment import round_half_away_from_zero
from .errors import NumericalInvariantViolation
from .istftnet import AdainResBlk1d
from .layers import LSTM, WeightNormConv1d
from enum import Enum
from typing import Optional
import torch
import torch.nn as nn
import torch.nn.functional as F


class LinearNorm(nn.Module):
    # Xavier-initialized linear layer with configurable activation gain.
    #
    # Parameters:
    # - in_dim: Input feature dimension
    # - out_dim: Output feature dimension
    # - bias: Enable bias term (default: True)
    # - w_init_gain: Xavier initialization gain ('linear', 'relu', 'tanh', etc.)
    #
    # Used by:
    # - ProsodyPredictor: duration projection (checkpoint key duration_proj.linear_layer)
    #
    def __init__(self, in_dim, out_dim, bias=True, w_init_gain='linear'):
        super(LinearNorm, self).__init__()
        self.linear_layer = nn.Linear(in_dim, out_dim, bias=bias)
        nn.init.xavier_uniform_(self.linear_layer.weight, gain=nn.init.calculate_gain(w_init_gain))

    def forward(self, x):
        return self.linear_layer(x)


class LayerNorm(nn.Module):
    # Layer normalization over the channel axis of (batch, channels, time) data.
    #
    # Learnable Parameters:
    # - gamma: Scale parameter, initialized to ones
    # - beta: Shift parameter, initialized to zeros
    #
    # Used by:
    # - TextEncoder: normalization inside every CNN stage
    #
    def __init__(self, channels, eps=1e-5):
        super().__init__()
        self.channels = channels
        self.eps = eps
        self.gamma = nn.Parameter(torch.ones(channels))
        self.beta = nn.Parameter(torch.zeros(channels))

    def forward(self, x):
        x = x.transpose(1, -1)
        x = F.layer_norm(x, (self.channels,), self.gamma, self.beta, self.eps)
        return x.transpose(1, -1)


class TextEncoder(nn.Module):
    # Acoustic text encoder over phoneme token ids.
    #
    # Architecture Pipeline:
    # 1. Embedding: token ids -> (batch, channels, tokens)
    # 2. CNN Stack: `depth` x [WeightNormConv1d -> LayerNorm -> LeakyReLU(0.2)],
    #    re-masked after every stage
    # 3. LSTM: bidirectional, run over each item's valid prefix
    # 4. Masking: padded positions are zero in the output
    #
    # Parameters:
    # - channels: Hidden dimension throughout the encoder
    # - kernel_size: Convolution kernel size
    # - depth: Number of convolutional stages
    # - n_symbols: Vocabulary size for the embedding
    # - actv: Activation function (default: LeakyReLU(0.2))
    #
    # Used by:
    # - model.py: KModel._text_features() when token ids are supplied
    #
    def __init__(self, channels, kernel_size, depth, n_symbols, actv=None):
        super().__init__()
        if actv is None:
            actv = nn.LeakyReLU(0.2)
        self.embedding = nn.Embedding(n_symbols, channels)
        padding = (kernel_size - 1) // 2
        self.cnn = nn.ModuleList()
        for _ in range(depth):
            self.cnn.append(nn.Sequential(
                WeightNormConv1d(channels, channels, kernel_size=kernel_size, padding=padding),
                LayerNorm(channels),
                actv,
            ))
        self.lstm = LSTM(channels, channels // 2)

    def forward(self, x, input_lengths, m):
    # Parameters:
    # - x: Phoneme token IDs, shape (batch, max_length)
    # - input_lengths: Valid lengths, shape (batch,)
    # - m: Padding mask, shape (batch, max_length), True for padding
    #
    # Returns:
    # - torch.Tensor: Encoded features, shape (batch, channels, max_length)
        x = self.embedding(x)  # [B, T, emb]
        x = x.transpose(1, 2)  # [B, emb, T]
        m = m.unsqueeze(1)
        x = x.masked_fill(m, 0.0)
        for c in self.cnn:
            x = c(x)
            x = x.masked_fill(m, 0.0)
        x = x.transpose(1, 2)  # [B, T, chn]
        x, _ = self.lstm(x, lengths=input_lengths)
        x = x.transpose(-1, -2)
        return x.masked_fill(m, 0.0)


class AdaLayerNorm(nn.Module):
    # Adaptive Layer Normalization with style conditioning.
    #
    # Mathematical Operation:
    # 1. Layer normalization over channels, no learned affine
    # 2. Style-dependent parameters: gamma, beta = chunk(Linear(style), 2)
    # 3. Adaptive scaling: output = (1 + gamma) * x_norm + beta
    #
    # Parameters:
    # - style_dim: Dimension of input style vector
    # - channels: Number of channels to normalize
    # - eps: Numerical stability epsilon
    #
    # Tensor Layout:
    # - x: (batch, time, channels), s: (batch, style_dim)
    #
    # Used by:
    # - DurationEncoder: the NORM stages
    #
    def __init__(self, style_dim, channels, eps=1e-5):
        super().__init__()
        self.channels = channels
        self.eps = eps
        self.fc = nn.Linear(style_dim, channels * 2)

    def forward(self, x, s):
        h = self.fc(s).unsqueeze(1)
        gamma, beta = torch.chunk(h, chunks=2, dim=-1)
        x = F.layer_norm(x, (self.channels,), eps=self.eps)
        return (1 + gamma) * x + beta


class StageKind(Enum):
    RECURRENT = 'recurrent'
    NORM = 'norm'


class DurationEncoder(nn.Module):
    # Stack of alternating LSTM and AdaLayerNorm stages over phoneme embeddings.
    #
    # The stages live in one ModuleList (`lstms`, matching the checkpoint
    # layout lstms.0, lstms.1, ...) and carry a parallel list of StageKind
    # tags fixed at construction; forward dispatches on the tag.
    #
    # Style Integration:
    # - The prosodic style is broadcast over tokens and concatenated to the
    #   input, and again after every NORM stage
    # - Padded positions are re-masked to zero after every NORM stage; the
    #   RECURRENT stages already emit zeros there
    #
    # Parameters:
    # - sty_dim: Style vector dimension
    # - d_model: Hidden dimension throughout the encoder
    # - nlayers: Number of LSTM/AdaLayerNorm pairs
    #
    # Used by:
    # - ProsodyPredictor.text_encoder (checkpoint prefix predictor.text_encoder)
    #
    def __init__(self, sty_dim, d_model, nlayers):
        super().__init__()
        self.lstms = nn.ModuleList()
        self.stage_kinds = []
        for _ in range(nlayers):
            self.lstms.append(LSTM(d_model + sty_dim, d_model // 2))
            self.stage_kinds.append(StageKind.RECURRENT)
            self.lstms.append(AdaLayerNorm(sty_dim, d_model))
            self.stage_kinds.append(StageKind.NORM)
        self.d_model = d_model
        self.sty_dim = sty_dim

    def forward(self, x, style, text_lengths, m):
    # Parameters:
    # - x: Phoneme embeddings, shape (batch, d_model, tokens)
    # - style: Prosodic style, shape (batch, sty_dim)
    # - text_lengths: Valid lengths, shape (batch,)
    # - m: Padding mask, shape (batch, tokens), True for padding
    #
    # Returns:
    # - torch.Tensor: (batch, tokens, d_model + sty_dim)
        masks = m.unsqueeze(-1)
        x = x.transpose(1, 2)
        s = style.unsqueeze(1).expand(-1, x.shape[1], -1)
        x = torch.cat([x, s], dim=-1).masked_fill(masks, 0.0)
        for kind, block in zip(self.stage_kinds, self.lstms):
            match kind:
                case StageKind.RECURRENT:
                    x, _ = block(x, lengths=text_lengths)
                case StageKind.NORM:
                    x = block(x, style)
                    x = torch.cat([x, s], dim=-1).masked_fill(masks, 0.0)
        return x


class ProsodyPredictor(nn.Module):
    # Duration, F0 and voicing prediction.
    #
    # Architecture Branches:
    # 1. Duration: DurationEncoder -> LSTM -> duration_proj (max_dur logits)
    # 2. F0: shared LSTM -> 3 AdainResBlk1d (the middle one upsamples x2) -> 1x1 conv
    # 3. N: same layout as F0 with its own weights
    #
    # Parameters:
    # - style_dim: Prosodic style width (128)
    # - d_hid: Hidden dimension throughout the network
    # - nlayers: Number of layers in the duration encoder
    # - max_dur: Number of duration bins
    #
    # Network Flow:
    # 1. embeddings + style -> text_encoder -> d (tokens, d_hid + style_dim)
    # 2. d -> predict_durations -> integer frames per token
    # 3. d aligned to frames -> F0Ntrain -> F0, N curves at twice the frame rate
    #
    # Used by:
    # - model.py: KModel.predictor
    #
    def __init__(self, style_dim, d_hid, nlayers, max_dur=50):
        super().__init__()
        self.text_encoder = DurationEncoder(sty_dim=style_dim, d_model=d_hid, nlayers=nlayers)
        self.lstm = LSTM(d_hid + style_dim, d_hid // 2)
        self.duration_proj = LinearNorm(d_hid, max_dur)
        self.shared = LSTM(d_hid + style_dim, d_hid // 2)
        self.F0 = nn.ModuleList()
        self.F0.append(AdainResBlk1d(d_hid, d_hid, style_dim))
        self.F0.append(AdainResBlk1d(d_hid, d_hid // 2, style_dim, upsample=True))
        self.F0.append(AdainResBlk1d(d_hid // 2, d_hid // 2, style_dim))
        self.N = nn.ModuleList()
        self.N.append(AdainResBlk1d(d_hid, d_hid, style_dim))
        self.N.append(AdainResBlk1d(d_hid, d_hid // 2, style_dim, upsample=True))
        self.N.append(AdainResBlk1d(d_hid // 2, d_hid // 2, style_dim))
        self.F0_proj = nn.Conv1d(d_hid // 2, 1, 1, 1, 0)
        self.N_proj = nn.Conv1d(d_hid // 2, 1, 1, 1, 0)

    def predict_durations(self, d, text_lengths, speed=1.0):
    # Integer frame count per token.
    #
    # Parameters:
    # - d: DurationEncoder output, shape (batch, tokens, d_hid + style_dim)
    # - text_lengths: Valid lengths, shape (batch,)
    # - speed: Positive speech-rate multiplier (validated by the caller)
    #
    # Returns:
    # - torch.LongTensor: (batch, tokens), every entry >= 1
    #
    # Each of the max_dur sigmoid outputs contributes up to one frame; the sum
    # is divided by speed, rounded half away from zero and clamped to >= 1.
        x, _ = self.lstm(d, lengths=text_lengths)
        duration = torch.sigmoid(self.duration_proj(x)).sum(dim=-1) / speed
        if not torch.isfinite(duration).all():
            raise NumericalInvariantViolation(f"predicted durations are not finite: {duration.tolist()}")
        return round_half_away_from_zero(duration).clamp(min=1).long()

    def _run_branch(self, blocks, proj, x, s, frame_mask):
        m = frame_mask
        for block in blocks:
            x = block(x, s)
            if m is not None:
                if m.shape[-1] != x.shape[-1]:
                    # Frame count doubled by the upsampling block.
                    m = m.repeat_interleave(x.shape[-1] // m.shape[-1], dim=-1)
                x = x.masked_fill(m.unsqueeze(1), 0.0)
        x = proj(x)
        if m is not None:
            x = x.masked_fill(m.unsqueeze(1), 0.0)
        return x.squeeze(1)

    def F0Ntrain(self, x, s, frame_mask: Optional[torch.Tensor] = None):
    # Predict F0 (pitch) and N (voicing/noise) curves from aligned features.
    #
    # Parameters:
    # - x: Duration-aligned features, shape (batch, d_hid + style_dim, frames)
    # - s: Prosodic style, shape (batch, style_dim)
    # - frame_mask: Optional (batch, frames), True for padded frames
    #
    # Returns:
    # - F0: shape (batch, 2 * frames)
    # - N: shape (batch, 2 * frames)
    #
    # The frame mask is widened to 2 * frames after the upsampling block;
    # masked positions are zero after every block and in both curves.
        lengths = None
        if frame_mask is not None:
            lengths = (~frame_mask).sum(dim=-1)
        x, _ = self.shared(x.transpose(-1, -2), lengths=lengths)
        x = x.transpose(-1, -2)
        F0 = self._run_branch(self.F0, self.F0_proj, x, s, frame_mask)
        N = self._run_branch(self.N, self.N_proj, x, s, frame_mask)
        return F0, N
