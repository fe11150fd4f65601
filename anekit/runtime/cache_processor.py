#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""KV cache state and the stage that advances it.

The cache layout belongs to the main network's architecture. The pipeline
only relies on this naming contract:

* the main network takes the cache tensors as inputs under their own names
  (for example ``k_cache_0``, ``v_cache_0``);
* every main network output that is not a logits tensor is an activation
  for the cache processor (for example ``new_k_cache_0``);
* the cache processor takes the previous cache tensors plus the activations
  and returns the next cache tensors under the names the main network reads.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping

import numpy as np

from ..errors import PredictionFailed
from .deferred_model import DeferredModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheState:
    """Per-layer key/value tensors plus the number of tokens they cover."""

    tensors: Dict[str, np.ndarray] = field(default_factory=dict)
    length: int = 0

    @classmethod
    def empty(cls):
        return cls()

    @property
    def is_empty(self):
        return self.length == 0


class CacheProcessor:
    """Merge the newest step's activations into the KV cache."""

    def __init__(self, model: DeferredModel):
        self.model = model

    def load(self):
        return self.model.load()

    def unload(self):
        self.model.unload()

    def update(
        self,
        previous: CacheState,
        activations: Mapping[str, np.ndarray],
        num_new_tokens: int,
    ) -> CacheState:
        inputs = dict(previous.tensors)
        inputs.update(activations)

        outputs = self.model.predict(inputs)
        if not outputs:
            raise PredictionFailed("Cache processor returned no cache tensors")

        state = CacheState(tensors=outputs, length=previous.length + num_new_tokens)
        logger.debug("Cache advanced %d -> %d tokens", previous.length, state.length)
        return state
