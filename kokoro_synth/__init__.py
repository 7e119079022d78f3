__version__ = '0.1.0'

from loguru import logger
import sys

# Remove default handler
logger.remove()

# Add custom handler with clean format including module and line number
logger.add(
    sys.stderr,
    format="<green>{time:HH:mm:ss}</green> | <cyan>{module:>16}:{line}</cyan> | <level>{level: >8}</level> | <level>{message}</level>",
    colorize=True,
    level="INFO"
)

# Disable before release or as needed
logger.disable("kokoro_synth")

from .config import IstftNetConfig, KokoroConfig, load_config
from .errors import (
    ConfigurationMismatch, InputTooLong, InvalidInput, NumericalInvariantViolation, SynthesisError,
)
from .model import KModel
from .timestamps import WordToken, predict_timestamps
from .weights import load_voice, load_weights, sanitize_weights, select_style

__all__ = [
    'KModel',
    'KokoroConfig',
    'IstftNetConfig',
    'load_config',
    'load_weights',
    'sanitize_weights',
    'load_voice',
    'select_style',
    'WordToken',
    'predict_timestamps',
    'SynthesisError',
    'InvalidInput',
    'InputTooLong',
    'ConfigurationMismatch',
    'NumericalInvariantViolation',
]
