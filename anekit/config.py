#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""Generation settings, optionally read from a meta.yaml file.

Keys may sit at the top level or under ``model_info.parameters``:

    model_info:
      name: llama-3.2-1b
      parameters:
        model_prefix: Llama-3.2-1B
        cache_processor: cache-processor.mlmodelc
        logit_processor: logit-processor.mlmodelc
        max_new_tokens: 60
        stop_tokens: [128001, 128009]
"""

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import ConfigError
from .runtime.pipeline import DEFAULT_CACHE_PROCESSOR, DEFAULT_LOGIT_PROCESSOR

logger = logging.getLogger(__name__)

# meta.yaml spellings -> GenerationConfig fields
ALIASES = {
    "dir": "model_dir",
    "prefix": "model_prefix",
    "cache_processor": "cache_processor_model_name",
    "logit_processor": "logit_processor_model_name",
    "tokenizer_path": "tokenizer",
    "max_tokens": "max_new_tokens",
}


@dataclass(frozen=True)
class GenerationConfig:
    model_dir: Optional[str] = None
    model_prefix: Optional[str] = None
    cache_processor_model_name: str = DEFAULT_CACHE_PROCESSOR
    logit_processor_model_name: str = DEFAULT_LOGIT_PROCESSOR
    tokenizer: Optional[str] = None
    max_new_tokens: int = 60
    stop_tokens: Optional[List[int]] = None
    compute_unit: str = "cpu_and_ne"

    def __post_init__(self):
        if (
            isinstance(self.max_new_tokens, bool)
            or not isinstance(self.max_new_tokens, int)
            or self.max_new_tokens < 0
        ):
            raise ConfigError(f"max_new_tokens must be a non-negative integer, got {self.max_new_tokens!r}")
        if self.stop_tokens is not None:
            if not isinstance(self.stop_tokens, (list, tuple)) or not all(
                isinstance(t, int) for t in self.stop_tokens
            ):
                raise ConfigError(f"stop_tokens must be a list of integers, got {self.stop_tokens!r}")
            object.__setattr__(self, "stop_tokens", list(self.stop_tokens))

    @property
    def tokenizer_name(self) -> Optional[str]:
        return self.tokenizer or self.model_dir

    def merged(self, **overrides) -> "GenerationConfig":
        """Copy with every override that is not None applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None) -> "GenerationConfig":
        params = data.get("model_info", {}).get("parameters") if isinstance(data.get("model_info"), dict) else None
        values = dict(data)
        if isinstance(params, dict):
            values.update(params)

        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in values.items():
            key = ALIASES.get(key, key)
            if key in known:
                kwargs[key] = value

        model_dir = kwargs.get("model_dir")
        if model_dir is not None and base_dir is not None and not Path(model_dir).is_absolute():
            kwargs["model_dir"] = str(base_dir / model_dir)
        return cls(**kwargs)


def load_config(path) -> GenerationConfig:
    """Read a GenerationConfig from a YAML file.

    A relative ``model_dir`` is resolved against the file's directory, and
    defaults to that directory when missing.
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    config = GenerationConfig.from_dict(data, base_dir=path.parent)
    if config.model_dir is None:
        config = replace(config, model_dir=str(path.parent))
    logger.debug("Loaded config from %s: %s", path, config)
    return config
