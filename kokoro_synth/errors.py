# Typed failures raised by the synthesis core.
#
# Three kinds of failure reach the caller:
# - InvalidInput / InputTooLong: the request itself is unusable. Raised before
#   any tensor work so the caller can split or fix the input and retry.
# - ConfigurationMismatch: the loaded weights do not fit the architecture.
#   Raised while the engine is built, never in the middle of a synthesis call.
# - NumericalInvariantViolation: an internal contract broke (non-positive
#   duration, malformed alignment, non-finite audio). The call is aborted and
#   no partial audio is returned.
#
# Cross-file dependencies:
# - Raised by: model.py, modules.py, alignment.py, weights.py
# - Caught by: callers of KModel; tests/


class SynthesisError(Exception):
    """Base class for every failure raised by kokoro_synth."""


class InvalidInput(SynthesisError, ValueError):
    """The synthesis request is malformed (bad mask, style width, speed...)."""


class InputTooLong(InvalidInput):
    def __init__(self, token_count: int, max_tokens: int):
        self.token_count = token_count
        self.max_tokens = max_tokens
        super().__init__(
            f"Input has {token_count} tokens (boundary tokens included), "
            f"the model accepts at most {max_tokens}"
        )


class ConfigurationMismatch(SynthesisError):
    # Collects every offending key instead of stopping at the first one, so a
    # broken checkpoint can be diagnosed in a single run.
    def __init__(self, mismatches):
        self.mismatches = list(mismatches)
        lines = "\n  ".join(self.mismatches)
        super().__init__(f"Weights do not match the model architecture:\n  {lines}")


class NumericalInvariantViolation(SynthesisError, AssertionError):
    """An internal invariant of the synthesis pipeline does not hold."""
