# Duration-to-frame alignment.
#
# Turns integer per-token durations into the hard alignment matrix that
# expands token-rate features onto the frame timeline:
#
#   features (channels, tokens) @ alignment (tokens, frames) -> (channels, frames)
#
# Column f is one-hot on the token whose cumulative duration range contains
# f; row i holds durations[i] contiguous ones; rows of padded tokens (past
# len(durations)) are all zero.
#
# Cross-file dependencies:
# - Used by: modules.py (ProsodyPredictor.predict_durations), model.py
# - Raises: errors.NumericalInvariantViolation

from .errors import NumericalInvariantViolation
from typing import Optional, Sequence, Union
import torch


def round_half_away_from_zero(x: torch.Tensor) -> torch.Tensor:
    # torch.round rounds halves to even (2.5 -> 2); durations round 2.5 -> 3.
    return torch.sign(x) * torch.floor(x.abs() + 0.5)


def build_alignment(
    durations: Union[torch.Tensor, Sequence[int]],
    num_tokens: Optional[int] = None,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    # Parameters:
    # - durations: 1-D integer frames per valid token, each >= 1
    # - num_tokens: row count of the matrix (>= len(durations)); extra rows
    #   stand for padded tokens and stay zero
    #
    # Returns:
    # - alignment: (num_tokens, sum(durations))
    durations = torch.as_tensor(durations)
    if durations.dim() != 1:
        raise NumericalInvariantViolation(f"durations must be 1-D, got shape {tuple(durations.shape)}")
    if durations.is_floating_point():
        raise NumericalInvariantViolation("durations must be integers")
    if durations.numel() == 0 or (durations < 1).any():
        raise NumericalInvariantViolation(f"every duration must be >= 1, got {durations.tolist()}")
    durations = durations.long()
    n = durations.numel()
    if num_tokens is None:
        num_tokens = n
    if num_tokens < n:
        raise ValueError(f"num_tokens ({num_tokens}) is smaller than the number of durations ({n})")
    indices = torch.repeat_interleave(torch.arange(n, device=durations.device), durations)
    frames = indices.shape[0]
    alignment = torch.zeros((num_tokens, frames), dtype=dtype, device=durations.device)
    alignment[indices, torch.arange(frames, device=durations.device)] = 1
    return alignment


def validate_alignment(alignment: torch.Tensor, durations: torch.Tensor) -> None:
    # Raise NumericalInvariantViolation unless `alignment` is exactly the
    # contiguous one-hot layout of `durations`.
    durations = torch.as_tensor(durations, device=alignment.device)
    if alignment.dim() != 2:
        raise NumericalInvariantViolation(f"alignment must be 2-D, got shape {tuple(alignment.shape)}")
    if (durations < 1).any():
        raise NumericalInvariantViolation(f"every duration must be >= 1, got {durations.tolist()}")
    if alignment.shape[0] < durations.numel():
        raise NumericalInvariantViolation(
            f"alignment has {alignment.shape[0]} rows for {durations.numel()} durations"
        )
    frames = int(durations.sum())
    if alignment.shape[1] != frames:
        raise NumericalInvariantViolation(
            f"alignment has {alignment.shape[1]} frames, durations sum to {frames}"
        )
    if not torch.all(alignment.sum(dim=0) == 1):
        raise NumericalInvariantViolation("every alignment column must select exactly one token")
    expected = build_alignment(durations, alignment.shape[0], dtype=alignment.dtype)
    if not torch.equal(alignment, expected):
        raise NumericalInvariantViolation("alignment rows are not contiguous runs in token order")
