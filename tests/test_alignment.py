"""
Tests for duration rounding and alignment construction.
"""

import pytest
import torch

from kokoro_synth.alignment import build_alignment, round_half_away_from_zero, validate_alignment
from kokoro_synth.errors import NumericalInvariantViolation


class TestRounding:
    """Half-away-from-zero rounding of durations."""

    def test_halves_round_away_from_zero(self):
        x = torch.tensor([0.5, 1.5, 2.5, -0.5, -2.5, 2.49, 3.51])
        expected = torch.tensor([1.0, 2.0, 3.0, -1.0, -3.0, 2.0, 4.0])
        assert torch.equal(round_half_away_from_zero(x), expected)


class TestBuildAlignment:
    """Contiguous one-hot alignment matrix."""

    def test_layout(self):
        aln = build_alignment([2, 1, 3])
        expected = torch.tensor([
            [1, 1, 0, 0, 0, 0],
            [0, 0, 1, 0, 0, 0],
            [0, 0, 0, 1, 1, 1],
        ], dtype=torch.float32)
        assert torch.equal(aln, expected)

    def test_rows_and_columns(self):
        durations = torch.tensor([3, 1, 4, 1, 5])
        aln = build_alignment(durations)
        assert aln.shape == (5, int(durations.sum()))
        assert torch.all(aln.sum(dim=0) == 1)
        assert torch.equal(aln.sum(dim=1).long(), durations)
        for i, row in enumerate(aln):
            ones = torch.nonzero(row).flatten()
            assert ones.numel() == durations[i]
            assert torch.all(torch.diff(ones) == 1)

    def test_padded_rows_are_zero(self):
        aln = build_alignment(torch.tensor([2, 2]), num_tokens=4)
        assert aln.shape == (4, 4)
        assert torch.all(aln[2:] == 0)

    @pytest.mark.parametrize("durations", [[2, 0, 1], [-1], []])
    def test_non_positive_durations_rejected(self, durations):
        with pytest.raises(NumericalInvariantViolation):
            build_alignment(torch.tensor(durations, dtype=torch.long))

    def test_float_durations_rejected(self):
        with pytest.raises(NumericalInvariantViolation):
            build_alignment(torch.tensor([1.0, 2.0]))

    def test_too_few_rows(self):
        with pytest.raises(ValueError):
            build_alignment([1, 1, 1], num_tokens=2)


class TestValidateAlignment:
    """Alignment invariants."""

    def test_valid_alignment_passes(self):
        durations = torch.tensor([2, 3])
        validate_alignment(build_alignment(durations, num_tokens=3), durations)

    def test_frame_count_mismatch(self):
        with pytest.raises(NumericalInvariantViolation):
            validate_alignment(build_alignment([2, 3]), torch.tensor([2, 2]))

    def test_out_of_order_columns(self):
        durations = torch.tensor([2, 3])
        aln = build_alignment(durations)[:, [0, 2, 1, 3, 4]]
        with pytest.raises(NumericalInvariantViolation):
            validate_alignment(aln, durations)

    def test_column_selecting_two_tokens(self):
        durations = torch.tensor([2, 2])
        aln = build_alignment(durations)
        aln[0, 2] = 1
        with pytest.raises(NumericalInvariantViolation):
            validate_alignment(aln, durations)
