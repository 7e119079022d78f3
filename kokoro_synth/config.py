# Model configuration for the Kokoro synthesis core.
#
# The configuration mirrors the `config.json` shipped with the Kokoro
# checkpoints. Only the keys the acoustic core needs are kept; the rest
# (vocab, n_mels, plbert attention sizes...) belong to the external phoneme
# encoder and are ignored.
#
# Both dataclasses are frozen: a config is built once, handed to every
# component constructor and never mutated afterwards.
#
# Cross-file dependencies:
# - Used by: model.py (KModel), modules.py, istftnet.py
# - Loaded from: local JSON file, dict, or Hugging Face Hub (hf_hub_download)

from dataclasses import dataclass, field, fields
from huggingface_hub import hf_hub_download
from loguru import logger
from typing import Dict, Optional, Tuple, Union
import json
import math

DEFAULT_REPO_ID = 'hexgrad/Kokoro-82M'


@dataclass(frozen=True)
class IstftNetConfig:
    # Vocoder (iSTFTNet generator) hyperparameters.
    #
    # With the defaults, each frame-rate step of the decoder becomes
    # 2 (decode upsample) * 10 * 6 (transposed convs) * 5 (iSTFT hop) = 600
    # audio samples, i.e. 40 frames per second at 24 kHz.
    upsample_rates: Tuple[int, ...] = (10, 6)
    upsample_kernel_sizes: Tuple[int, ...] = (20, 12)
    upsample_initial_channel: int = 512
    resblock_kernel_sizes: Tuple[int, ...] = (3, 7, 11)
    resblock_dilation_sizes: Tuple[Tuple[int, ...], ...] = ((1, 3, 5), (1, 3, 5), (1, 3, 5))
    gen_istft_n_fft: int = 20
    gen_istft_hop_size: int = 5

    def __post_init__(self):
        if len(self.upsample_rates) != len(self.upsample_kernel_sizes):
            raise ValueError(
                f"upsample_rates {self.upsample_rates} and upsample_kernel_sizes "
                f"{self.upsample_kernel_sizes} must have the same length"
            )
        if len(self.resblock_kernel_sizes) != len(self.resblock_dilation_sizes):
            raise ValueError("resblock_kernel_sizes and resblock_dilation_sizes must have the same length")

    @property
    def upsample_scale(self) -> int:
        # Samples per F0 step: the generator's total upsampling times the iSTFT hop.
        return math.prod(self.upsample_rates) * self.gen_istft_hop_size

    @classmethod
    def from_dict(cls, d: Dict) -> 'IstftNetConfig':
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for k, v in d.items():
            if k not in known:
                continue
            if k == 'resblock_dilation_sizes':
                v = tuple(tuple(x) for x in v)
            elif isinstance(v, list):
                v = tuple(v)
            kwargs[k] = v
        return cls(**kwargs)


@dataclass(frozen=True)
class KokoroConfig:
    # Architecture of the acoustic core.
    #
    # Fields read from config.json:
    # - hidden_dim: width of phoneme features and prosody encoders (512)
    # - style_dim: width of each half of the style vector (128, so ref_s is 256)
    # - n_layer: LSTM/AdaLayerNorm pairs in the duration encoder, CNN depth of
    #   the text encoder (3)
    # - max_dur: number of duration bins summed by the duration head (50)
    # - n_token: phoneme vocabulary size, used by the text encoder embedding
    # - text_encoder_kernel_size: CNN kernel of the text encoder (5)
    # - context_length: token cap including <bos>/<eos>
    #   (plbert.max_position_embeddings, 512)
    #
    # Fields fixed by the reference architecture, kept configurable so small
    # models can be built for tests:
    # - decoder_dim / asr_res_dim: widths of the decoder encode/decode blocks
    # - harmonic_num, voiced_threshold, sine_amp, noise_std: harmonic source
    #   constants, replicated as-is (sine_amp / 3 is the unvoiced noise std)
    hidden_dim: int = 512
    style_dim: int = 128
    n_layer: int = 3
    max_dur: int = 50
    n_token: int = 178
    text_encoder_kernel_size: int = 5
    context_length: int = 512
    sample_rate: int = 24000
    decoder_dim: int = 1024
    asr_res_dim: int = 64
    harmonic_num: int = 8
    voiced_threshold: float = 10.0
    sine_amp: float = 0.1
    noise_std: float = 0.003
    istftnet: IstftNetConfig = field(default_factory=IstftNetConfig)

    def __post_init__(self):
        if self.hidden_dim % 2:
            raise ValueError(f"hidden_dim must be even for the bidirectional LSTMs, got {self.hidden_dim}")
        if self.context_length < 3:
            raise ValueError("context_length must leave room for <bos>, one phoneme and <eos>")

    @property
    def samples_per_frame(self) -> int:
        # The decoder upsamples the frame axis by 2 before the generator.
        return 2 * self.istftnet.upsample_scale

    @property
    def frame_rate(self) -> float:
        return self.sample_rate / self.samples_per_frame

    @classmethod
    def from_dict(cls, d: Dict) -> 'KokoroConfig':
        known = {f.name for f in fields(cls)} - {'istftnet', 'context_length'}
        kwargs = {k: v for k, v in d.items() if k in known}
        if 'istftnet' in d:
            kwargs['istftnet'] = IstftNetConfig.from_dict(d['istftnet'])
        if 'context_length' in d:
            kwargs['context_length'] = d['context_length']
        elif 'max_position_embeddings' in d.get('plbert', {}):
            kwargs['context_length'] = d['plbert']['max_position_embeddings']
        ignored = sorted(set(d) - known - {'istftnet', 'plbert', 'context_length'})
        if ignored:
            logger.debug(f"Ignoring config keys outside the synthesis core: {ignored}")
        return cls(**kwargs)


def load_config(
    config: Union[KokoroConfig, Dict, str, None] = None,
    repo_id: Optional[str] = None,
) -> KokoroConfig:
    # Build a KokoroConfig from a dict, a JSON path, or the Hub.
    #
    # With config=None the config.json of `repo_id` is downloaded with
    # hf_hub_download, defaulting to hexgrad/Kokoro-82M.
    if isinstance(config, KokoroConfig):
        return config
    if not isinstance(config, dict):
        if not config:
            if repo_id is None:
                repo_id = DEFAULT_REPO_ID
                logger.warning(f"Defaulting repo_id to {repo_id}. Pass repo_id='{repo_id}' to suppress this warning.")
            logger.debug("No config provided, downloading from HF")
            config = hf_hub_download(repo_id=repo_id, filename='config.json')
        with open(config, 'r', encoding='utf-8') as r:
            config = json.load(r)
    logger.debug(f"Loaded config with keys: {sorted(config)}")
    return KokoroConfig.from_dict(config)
