"""
Tests for word timestamps from predicted durations.
"""

import pytest
import torch

from kokoro_synth.timestamps import WordToken, predict_timestamps


def _words():
    return [WordToken('Hello', 'həlO', ' '), WordToken('world', 'wɜɹld', '')]


class TestPredictTimestamps:
    """Half-frame timestamp accounting."""

    def test_two_words(self):
        # <bos>=5, Hello: 4 x 2, space: 4, world: 5 x 2, <eos>=3
        pred_dur = torch.tensor([5, 2, 2, 2, 2, 4, 2, 2, 2, 2, 2, 3])
        hello, world = predict_timestamps(_words(), pred_dur)
        assert hello.start_ts == pytest.approx(0.05)
        assert hello.end_ts == pytest.approx(0.3)
        assert world.start_ts == pytest.approx(0.3)
        assert world.end_ts == pytest.approx(0.6)

    def test_short_bos_is_not_negative(self):
        pred_dur = [1, 2, 2, 2, 2, 1]
        (word,) = predict_timestamps([WordToken('Hello', 'həlO', '')], pred_dur)
        assert word.start_ts == 0.0
        assert word.end_ts == pytest.approx(16 / 80)

    def test_frame_rate_scales_times(self):
        pred_dur = torch.tensor([5, 2, 2, 2, 2, 4, 2, 2, 2, 2, 2, 3])
        hello, _ = predict_timestamps(_words(), pred_dur, frame_rate=80)
        assert hello.end_ts == pytest.approx(0.15)

    def test_too_few_durations(self):
        words = predict_timestamps(_words(), [4, 2])
        assert all(w.start_ts is None and w.end_ts is None for w in words)

    def test_words_past_the_end_are_left_unset(self):
        pred_dur = [5, 2, 2, 2, 2, 4, 2, 3]
        hello, world = predict_timestamps(_words(), pred_dur)
        assert hello.end_ts is not None
        assert world.start_ts is None
