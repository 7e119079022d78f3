# Core Model Implementation for the Kokoro Synthesis Core
#
# This module contains the KModel class that wires the phoneme-rate
# predictor and the iSTFTNet decoder into a single synthesis engine. It takes
# per-token embeddings from an external phoneme encoder plus a voice style
# vector and returns 24-kHz audio with the predicted per-token durations.
#
# Key Components:
# - KModel: engine construction, weight loading, synthesis entry points
# - Output: dataclass with audio and predicted durations
#
# Failure Modes (errors.py):
# - InvalidInput / InputTooLong: request rejected before any tensor work
# - ConfigurationMismatch: weights do not fit the configured architecture
# - NumericalInvariantViolation: broken alignment or non-finite audio
#
# Cross-file dependencies:
# - Imports from: modules.py (ProsodyPredictor, TextEncoder), istftnet.py (Decoder),
#   alignment.py, config.py, weights.py
# - Used by: applications driving synthesis, tests/

from .alignment import build_alignment, validate_alignment
from .config import DEFAULT_REPO_ID, KokoroConfig, load_config
from .errors import ConfigurationMismatch, InputTooLong, InvalidInput, NumericalInvariantViolation
from .istftnet import Decoder
from .modules import ProsodyPredictor, TextEncoder
from .weights import load_weights, sanitize_weights
from dataclasses import dataclass
from huggingface_hub import hf_hub_download
from loguru import logger
from pathlib import Path
from typing import Dict, Mapping, Optional, Union
import math
import numbers
import torch

# Top-level modules of a Kokoro checkpoint that belong to this engine;
# 'bert' and 'bert_encoder' belong to the external phoneme encoder.
CORE_MODULES = ('predictor', 'text_encoder', 'decoder')


class KModel(torch.nn.Module):
    # Neural synthesis engine: embeddings + style -> durations -> F0/N -> audio.
    #
    # Architecture Overview:
    # 1. Embeddings + prosodic style -> DurationEncoder -> integer durations
    # 2. Durations -> alignment matrix -> frame-rate features
    # 3. Frame-rate features -> F0 / N curves (twice the frame rate)
    # 4. Text features @ alignment + F0 + N + acoustic style -> Decoder -> audio
    #
    # The style vector ref_s (1, 2 * style_dim) is split in two:
    # ref_s[:, :style_dim] conditions the decoder, ref_s[:, style_dim:] the
    # duration and prosody predictors.
    #
    # After construction every parameter is frozen and the module is in eval
    # mode. Synthesis keeps no state on the instance, so one KModel can serve
    # concurrent calls on different inputs.
    #
    # Performance Notes:
    # - Token count is capped at config.context_length (512, boundaries included)
    # - Each frame is 600 samples at the default config (40 fps at 24 kHz)

    # Checkpoint file per Hugging Face repository.
    MODEL_NAMES = {
        'hexgrad/Kokoro-82M': 'kokoro-v1_0.pth',
        'hexgrad/Kokoro-82M-v1.1-zh': 'kokoro-v1_1-zh.pth',
    }

    def __init__(
        self,
        config: Union[KokoroConfig, Dict, str, None] = None,
        weights: Union[Mapping[str, torch.Tensor], str, Path, None] = None,
        repo_id: Optional[str] = None,
    ):
    # Parameters:
    # - config: KokoroConfig, config.json dict or path, or None to download
    #   config.json from `repo_id`
    # - weights: flat state dict or checkpoint path; None leaves the randomly
    #   initialised parameters in place
    # - repo_id: Hugging Face repository used when config is None
        super().__init__()
        self.config = load_config(config, repo_id=repo_id)
        c = self.config
        self.context_length = c.context_length
        self.predictor = ProsodyPredictor(
            style_dim=c.style_dim, d_hid=c.hidden_dim, nlayers=c.n_layer, max_dur=c.max_dur,
        )
        self.text_encoder = TextEncoder(
            channels=c.hidden_dim, kernel_size=c.text_encoder_kernel_size, depth=c.n_layer, n_symbols=c.n_token,
        )
        self.decoder = Decoder.from_config(c)
        if weights is not None:
            self.load_weights(weights)
        else:
            logger.debug("No weights provided, keeping random initialisation")
        self.requires_grad_(False)
        self.eval()

    @classmethod
    def from_pretrained(
        cls,
        repo_id: Optional[str] = None,
        config: Union[KokoroConfig, Dict, str, None] = None,
        model: Optional[str] = None,
    ) -> 'KModel':
    # Build an engine from the Hugging Face Hub (or local files).
    #
    # config.json and the checkpoint are fetched with hf_hub_download unless
    # `config` / `model` point at local copies.
        if repo_id is None:
            repo_id = DEFAULT_REPO_ID
            logger.warning(f"Defaulting repo_id to {repo_id}. Pass repo_id='{repo_id}' to suppress this warning.")
        config = load_config(config, repo_id=repo_id)
        if not model:
            if repo_id not in cls.MODEL_NAMES:
                raise ValueError(f"No known checkpoint for {repo_id}; pass model= explicitly")
            model = hf_hub_download(repo_id=repo_id, filename=cls.MODEL_NAMES[repo_id])
        return cls(config, load_weights(model))

    @property
    def device(self):
        return self.decoder.F0_conv.weight_v.device

    @property
    def dtype(self):
        # Inputs are cast to the parameter dtype (numpy hands out float64).
        return self.decoder.F0_conv.weight_v.dtype

    def load_weights(self, weights: Union[Mapping[str, torch.Tensor], str, Path]) -> None:
    # Load a flat checkpoint into predictor, text_encoder and decoder.
    #
    # Every expected parameter must be present with the expected shape;
    # otherwise ConfigurationMismatch lists all offending keys at once.
    # Keys outside the synthesis core (phoneme encoder) and leftovers the
    # architecture has no slot for are skipped with a debug record.
        if isinstance(weights, (str, Path)):
            weights = load_weights(weights)
        else:
            weights = sanitize_weights(weights)
        state = {k: v for k, v in weights.items() if k.split('.')[0] in CORE_MODULES}
        skipped = sorted({k.split('.')[0] for k in weights if k not in state})
        if skipped:
            logger.debug(f"Skipping checkpoint modules outside the synthesis core: {skipped}")

        expected = self.state_dict()
        mismatches = []
        for key, param in expected.items():
            if key not in state:
                mismatches.append(f"missing {key}, expected shape {tuple(param.shape)}")
            elif tuple(state[key].shape) != tuple(param.shape):
                mismatches.append(
                    f"{key}: checkpoint shape {tuple(state[key].shape)}, model shape {tuple(param.shape)}"
                )
        if mismatches:
            raise ConfigurationMismatch(mismatches)
        unused = sorted(k for k in state if k not in expected)
        if unused:
            logger.debug(f"Ignoring {len(unused)} checkpoint keys with no matching parameter, e.g. {unused[0]}")
            state = {k: v for k, v in state.items() if k in expected}
        self.load_state_dict(state, strict=True)
        logger.debug(f"Loaded {len(state)} tensors into the synthesis core")

    @dataclass
    class Output:
    # Fields:
    # - audio: waveform, shape (samples,), at config.sample_rate
    # - pred_dur: frames per valid token, shape (tokens,), boundaries included
        audio: torch.FloatTensor
        pred_dur: Optional[torch.LongTensor] = None

    def _validate_request(self, embeddings, ref_s, speed, text_mask, input_ids):
        # Shape and value checks only; raises before any model computation.
        if not isinstance(embeddings, torch.Tensor):
            raise InvalidInput(f"embeddings must be a tensor, got {type(embeddings).__name__}")
        if not embeddings.is_floating_point():
            raise InvalidInput(f"embeddings must be floating point, got {embeddings.dtype}")
        if embeddings.dim() == 2:
            embeddings = embeddings.unsqueeze(0)
        if embeddings.dim() != 3 or embeddings.shape[0] != 1:
            raise InvalidInput(f"embeddings must be (tokens, hidden) or (1, tokens, hidden), got {tuple(embeddings.shape)}")
        tokens = embeddings.shape[1]
        if tokens > self.context_length:
            raise InputTooLong(tokens, self.context_length)
        if tokens == 0:
            raise InvalidInput("embeddings contain no tokens")
        if embeddings.shape[-1] != self.config.hidden_dim:
            raise InvalidInput(f"embeddings have width {embeddings.shape[-1]}, expected {self.config.hidden_dim}")

        if not isinstance(ref_s, torch.Tensor):
            raise InvalidInput(f"ref_s must be a tensor, got {type(ref_s).__name__}")
        if not ref_s.is_floating_point():
            raise InvalidInput(f"ref_s must be floating point, got {ref_s.dtype}")
        if ref_s.dim() == 1:
            ref_s = ref_s.unsqueeze(0)
        if ref_s.shape != (1, 2 * self.config.style_dim):
            raise InvalidInput(f"ref_s must have shape (1, {2 * self.config.style_dim}), got {tuple(ref_s.shape)}")

        if isinstance(speed, bool) or not isinstance(speed, numbers.Real) or not math.isfinite(speed) or speed <= 0:
            raise InvalidInput(f"speed must be a positive finite number, got {speed!r}")

        if text_mask is None:
            text_mask = torch.zeros((1, tokens), dtype=torch.bool)
        else:
            text_mask = torch.as_tensor(text_mask)
            if text_mask.dim() == 1:
                text_mask = text_mask.unsqueeze(0)
            if text_mask.shape != (1, tokens):
                raise InvalidInput(f"text_mask must have shape (1, {tokens}), got {tuple(text_mask.shape)}")
            text_mask = text_mask.to(torch.bool)
        valid = int((~text_mask).sum())
        if valid == 0:
            raise InvalidInput("text_mask marks every token as padding")
        prefix_mask = torch.arange(tokens, device=text_mask.device).unsqueeze(0) >= valid
        if not torch.equal(text_mask, prefix_mask):
            raise InvalidInput("text_mask padding must be trailing (valid tokens first)")

        if input_ids is not None:
            input_ids = torch.as_tensor(input_ids)
            if input_ids.dim() == 1:
                input_ids = input_ids.unsqueeze(0)
            if input_ids.shape != (1, tokens):
                raise InvalidInput(f"input_ids must have shape (1, {tokens}), got {tuple(input_ids.shape)}")
            if input_ids.is_floating_point():
                raise InvalidInput("input_ids must be integers")
            if ((input_ids < 0) | (input_ids >= self.config.n_token)).any():
                raise InvalidInput(f"input_ids must lie in [0, {self.config.n_token})")
        return embeddings, ref_s, float(speed), text_mask, valid, input_ids

    def _text_features(self, embeddings, input_ids, input_lengths, text_mask):
        # (1, hidden, tokens): TextEncoder over token ids when available,
        # otherwise the phoneme embeddings themselves.
        if input_ids is not None:
            return self.text_encoder(input_ids.long(), input_lengths, text_mask)
        return embeddings.transpose(-1, -2).masked_fill(text_mask.unsqueeze(1), 0.0)

    @torch.no_grad()
    def forward_with_embeddings(
        self,
        embeddings: torch.FloatTensor,
        ref_s: torch.FloatTensor,
        speed: float = 1.0,
        text_mask: Optional[torch.BoolTensor] = None,
        input_ids: Optional[torch.LongTensor] = None,
        generator: Optional[torch.Generator] = None,
    ) -> tuple[torch.FloatTensor, torch.LongTensor]:
    # Core synthesis pathway.
    #
    # Parameters:
    # - embeddings: phoneme encoder output, (tokens, hidden) or (1, tokens, hidden)
    # - ref_s: style vector, (1, 2 * style_dim) [acoustic half, prosodic half]
    # - speed: speech rate multiplier (> 1 is faster)
    # - text_mask: (1, tokens), True for trailing padded positions
    # - input_ids: optional (1, tokens) token ids for the TextEncoder
    # - generator: optional torch.Generator for the source's random draws
    #
    # Returns:
    # - audio: (frames * samples_per_frame,) float waveform
    # - pred_dur: (valid tokens,) frames per token
        embeddings, ref_s, speed, text_mask, valid, input_ids = self._validate_request(
            embeddings, ref_s, speed, text_mask, input_ids,
        )
        device, dtype = self.device, self.dtype
        embeddings = embeddings.to(device=device, dtype=dtype)
        ref_s = ref_s.to(device=device, dtype=dtype)
        text_mask = text_mask.to(device)
        if input_ids is not None:
            input_ids = input_ids.to(device)
        tokens = embeddings.shape[1]
        style_dim = self.config.style_dim
        input_lengths = torch.tensor([valid], dtype=torch.long)

        s = ref_s[:, style_dim:]
        d = self.predictor.text_encoder(embeddings.transpose(-1, -2), s, input_lengths, text_mask)
        pred_dur = self.predictor.predict_durations(d, input_lengths, speed)[0, :valid]
        pred_aln_trg = build_alignment(pred_dur, tokens, dtype=d.dtype)
        validate_alignment(pred_aln_trg, pred_dur)
        frames = pred_aln_trg.shape[1]
        logger.debug(f"pred_dur: {pred_dur.tolist()} -> {frames} frames")

        en = d.transpose(-1, -2) @ pred_aln_trg
        F0_pred, N_pred = self.predictor.F0Ntrain(en, s)
        t_en = self._text_features(embeddings, input_ids, input_lengths, text_mask)
        asr = t_en @ pred_aln_trg
        audio = self.decoder(asr, F0_pred, N_pred, ref_s[:, :style_dim], generator=generator).reshape(-1)

        expected = frames * self.config.samples_per_frame
        if audio.shape[0] != expected:
            raise NumericalInvariantViolation(f"decoder produced {audio.shape[0]} samples, expected {expected}")
        if not torch.isfinite(audio).all():
            raise NumericalInvariantViolation("decoder produced non-finite audio samples")
        logger.debug(f"audio: {audio.shape[0]} samples ({audio.shape[0] / self.config.sample_rate:.2f}s)")
        return audio, pred_dur

    def forward(
        self,
        embeddings: torch.FloatTensor,
        ref_s: torch.FloatTensor,
        speed: float = 1.0,
        text_mask: Optional[torch.BoolTensor] = None,
        input_ids: Optional[torch.LongTensor] = None,
        generator: Optional[torch.Generator] = None,
        return_output: bool = True,
    ) -> Union['KModel.Output', torch.FloatTensor]:
    # Public synthesis entry point. Results are moved to the CPU; with
    # return_output=False only the audio tensor is returned.
        audio, pred_dur = self.forward_with_embeddings(
            embeddings, ref_s, speed=speed, text_mask=text_mask, input_ids=input_ids, generator=generator,
        )
        audio = audio.cpu()
        pred_dur = pred_dur.cpu()
        return self.Output(audio=audio, pred_dur=pred_dur) if return_output else audio
