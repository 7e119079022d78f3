# Checkpoint and voice-pack loading for the Kokoro synthesis core.
#
# Kokoro weights ship in two layouts:
# - kokoro-v1_0.pth: a dict keyed by top-level module
#   ('bert', 'bert_encoder', 'predictor', 'text_encoder', 'decoder'), each
#   holding that module's state dict, usually with a DataParallel 'module.'
#   prefix on every key
# - kokoro-v1_0.safetensors: one flat dict with dotted keys
#
# Both are reduced here to a single flat, sanitized dict:
# 'decoder.generator.ups.0.weight_v' -> tensor. Voice packs (voices/*.pt) are
# tensors of shape (510, 1, 256), one style vector per phoneme count.
#
# Cross-file dependencies:
# - Used by: model.py (KModel.from_pretrained, KModel.load_weights)
# - Raises: errors.InvalidInput (voice selection)

from .errors import InvalidInput
from collections import OrderedDict
from loguru import logger
from pathlib import Path
from safetensors.torch import load_file, save_file
from typing import Dict, Mapping, Union
import numpy as np
import torch

MODULE_NAMES = ('bert', 'bert_encoder', 'predictor', 'text_encoder', 'decoder')

# Legacy torch.nn.utils.parametrizations.weight_norm names.
PARAMETRIZATION_RENAMES = {
    'parametrizations.weight.original0': 'weight_g',
    'parametrizations.weight.original1': 'weight_v',
}

PathLike = Union[str, Path]


def flatten_checkpoint(checkpoint: Mapping) -> Dict[str, torch.Tensor]:
    # {'decoder': {'module.encode.conv1.weight_g': t}} -> {'decoder.module.encode.conv1.weight_g': t}
    # Already-flat dicts pass through unchanged.
    flat = OrderedDict()
    for key, value in checkpoint.items():
        if isinstance(value, Mapping):
            for sub_key, tensor in value.items():
                flat[f"{key}.{sub_key}"] = tensor
        else:
            flat[key] = value
    return flat


def sanitize_weights(weights: Mapping[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
    # Normalize checkpoint keys to the module's parameter names:
    # - drop the DataParallel 'module' path segment
    # - drop position_ids buffers (phoneme encoder only)
    # - rename parametrized weight-norm pairs to weight_g / weight_v
    sanitized = OrderedDict()
    for key, value in weights.items():
        if 'position_ids' in key:
            continue
        key = '.'.join(part for part in key.split('.') if part != 'module')
        for old, new in PARAMETRIZATION_RENAMES.items():
            if key.endswith(old):
                key = key[:-len(old)] + new
        sanitized[key] = value
    return sanitized


def load_weights(path: PathLike) -> Dict[str, torch.Tensor]:
    # Read a .safetensors or Kokoro .pth checkpoint into a flat, sanitized dict.
    path = Path(path)
    if path.suffix == '.safetensors':
        weights = load_file(str(path))
    else:
        weights = flatten_checkpoint(torch.load(path, map_location='cpu', weights_only=True))
    weights = sanitize_weights(weights)
    logger.debug(f"Loaded {len(weights)} tensors from {path}")
    return weights


def save_checkpoint(weights: Mapping[str, torch.Tensor], path: PathLike) -> None:
    # Write flat weights either as safetensors or as the module-keyed .pth layout.
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == '.safetensors':
        save_file({k: v.contiguous() for k, v in weights.items()}, str(path))
    else:
        organized = OrderedDict((k, OrderedDict()) for k in MODULE_NAMES)
        for key, value in weights.items():
            module_name = key.split('.')[0]
            if module_name in organized:
                organized[module_name][key[len(module_name) + 1:]] = value
        torch.save(organized, path)
    logger.debug(f"Saved {len(weights)} tensors to {path}")


def load_voice(path: PathLike) -> torch.FloatTensor:
    # Voice pack from .pt (torch.save), .npy or .safetensors (single tensor).
    path = Path(path)
    if path.suffix == '.npy':
        pack = torch.from_numpy(np.load(path))
    elif path.suffix == '.safetensors':
        tensors = load_file(str(path))
        if len(tensors) != 1:
            raise InvalidInput(f"Expected a single voice tensor in {path}, found {sorted(tensors)}")
        pack = next(iter(tensors.values()))
    else:
        pack = torch.load(path, map_location='cpu', weights_only=True)
    return pack.float()


def select_style(pack: Union[torch.Tensor, np.ndarray], num_phonemes: int) -> torch.FloatTensor:
    # Style vector for an utterance of `num_phonemes` phonemes
    # (boundary tokens excluded): pack[num_phonemes - 1], shape (1, 256).
    if isinstance(pack, np.ndarray):
        pack = torch.from_numpy(pack)
    if pack.dim() == 2:
        pack = pack.unsqueeze(1)
    if pack.dim() != 3 or pack.shape[1] != 1:
        raise InvalidInput(f"Voice pack must have shape (entries, 1, width), got {tuple(pack.shape)}")
    if not 1 <= num_phonemes <= pack.shape[0]:
        raise InvalidInput(f"Voice pack covers 1..{pack.shape[0]} phonemes, got {num_phonemes}")
    return pack[num_phonemes - 1].float()
