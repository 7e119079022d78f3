# Word-level timestamps from predicted durations.
#
# pred_dur holds one frame count per input token, including the leading and
# trailing boundary tokens. Words map onto consecutive runs of phoneme
# tokens; a word followed by whitespace also owns the next (space) token.
#
# Counting is done in half-frames so a space can be split evenly between the
# end of one word and the start of the next: with 40 frames per second the
# divisor is 80 half-frames per second.
#
# Cross-file dependencies:
# - Used by: callers of KModel that need per-word timing (Output.pred_dur)

from dataclasses import dataclass
from typing import List, Optional, Sequence, Union
import torch

# Frames of the leading boundary token that count as leading silence trim.
BOS_OFFSET_FRAMES = 3


@dataclass
class WordToken:
    # One word (or standalone whitespace) of the input text.
    #
    # Fields:
    # - text: the word as written
    # - phonemes: its phoneme string, None/empty for tokens with no phonemes
    # - whitespace: text following the word ('' when none)
    # - start_ts / end_ts: seconds, filled in by predict_timestamps
    text: str
    phonemes: Optional[str] = None
    whitespace: str = ''
    start_ts: Optional[float] = None
    end_ts: Optional[float] = None


def predict_timestamps(
    tokens: List[WordToken],
    pred_dur: Union[torch.Tensor, Sequence[int]],
    frame_rate: float = 40,
) -> List[WordToken]:
    # Fill start_ts / end_ts of `tokens` in place and return them.
    #
    # Tokens whose phonemes run past the end of pred_dur keep None
    # timestamps. With fewer than three durations (<bos>, one phoneme, <eos>)
    # nothing is assigned.
    durations = [float(d) for d in (pred_dur.tolist() if isinstance(pred_dur, torch.Tensor) else pred_dur)]
    if not tokens or len(durations) < 3:
        return tokens
    divisor = 2 * frame_rate

    # Two running counts in half-frames: (left, right).
    left = right = 2 * max(0.0, durations[0] - BOS_OFFSET_FRAMES)
    i = 1
    for t in tokens:
        if i >= len(durations) - 1:
            break
        if not t.phonemes:
            if t.whitespace:
                i += 1
                left = right + durations[i]
                right = left + durations[i]
                i += 1
            continue
        j = i + len(t.phonemes)
        if j >= len(durations):
            break
        t.start_ts = left / divisor
        token_dur = sum(durations[i:j])
        space_dur = durations[j] if t.whitespace else 0.0
        left = right + (2 * token_dur) + space_dur
        t.end_ts = left / divisor
        right = left + space_dur
        i = j + (1 if t.whitespace else 0)
    return tokens
