"""
Shared fixtures for kokoro_synth tests.

Every test runs on a tiny, randomly initialised model so nothing is
downloaded and a full synthesis call takes well under a second.
"""

import pytest
import torch

from kokoro_synth.config import IstftNetConfig, KokoroConfig
from kokoro_synth.model import KModel


@pytest.fixture
def tiny_config():
    return KokoroConfig(
        hidden_dim=16,
        style_dim=8,
        n_layer=2,
        max_dur=10,
        n_token=20,
        text_encoder_kernel_size=3,
        context_length=32,
        decoder_dim=32,
        asr_res_dim=8,
        istftnet=IstftNetConfig(upsample_initial_channel=16),
    )


@pytest.fixture
def model(tiny_config):
    torch.manual_seed(0)
    return KModel(tiny_config)


@pytest.fixture
def embeddings(tiny_config):
    torch.manual_seed(1)
    return torch.randn(1, 5, tiny_config.hidden_dim)


@pytest.fixture
def ref_s(tiny_config):
    torch.manual_seed(2)
    return torch.randn(1, 2 * tiny_config.style_dim)
