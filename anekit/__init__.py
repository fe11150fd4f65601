#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""On-device autoregressive text generation over CoreML model stages."""

from .config import GenerationConfig, load_config
from .errors import (
    AnekitError,
    ConfigError,
    InvalidInputError,
    ModelLoadError,
    NotLoadedError,
    PipelineBusyError,
    PipelineConstructionFailed,
    PredictionFailed,
)
from .generation.manager import LLMModelManager
from .generation.text_generator import GenerationResult, TextGenerator
from .generation.tokenizer import HFTokenizer, build_stop_token_ids
from .runtime.cache_processor import CacheProcessor, CacheState
from .runtime.deferred_model import DeferredModel, LoadState
from .runtime.logit_processor import LogitProcessor
from .runtime.pipeline import ModelPipeline, PipelineObserver, PipelineState, Prediction

__version__ = "0.1.0"
