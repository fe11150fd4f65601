#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

import logging
from typing import Dict, Optional, Sequence

import numpy as np

from ..errors import PredictionFailed
from .deferred_model import DeferredModel

logger = logging.getLogger(__name__)

ARGMAX_OUTPUT = "argmax"


def logits_input_names(count):
    """Input names for ``count`` logits tensors: ``logits`` or ``logits_0..N-1``."""
    if count == 1:
        return ["logits"]
    return [f"logits_{i}" for i in range(count)]


class LogitProcessor:
    """Pick the next token from the main network's logits.

    Selection is greedy arg-max, computed by a small dedicated model stage.
    When the LM head is split across several outputs, each part is passed as
    its own named input so the stage can stitch the vocabulary back together.
    """

    def __init__(self, model: DeferredModel):
        self.model = model

    def load(self):
        return self.model.load()

    def unload(self):
        self.model.unload()

    def _inputs(self, logits: Sequence[np.ndarray]) -> Dict[str, np.ndarray]:
        if not logits:
            raise PredictionFailed("No logits to select a token from")
        return dict(zip(logits_input_names(len(logits)), logits))

    def select_token(self, logits: Sequence[np.ndarray], index: Optional[int] = None) -> int:
        """Return the highest scoring token at ``index`` (default: last position)."""
        outputs = self.model.predict(self._inputs(logits))

        if ARGMAX_OUTPUT not in outputs:
            raise PredictionFailed(
                f"Logit processor returned no '{ARGMAX_OUTPUT}' output "
                f"(got: {', '.join(outputs) or 'nothing'})"
            )
        argmax = np.asarray(outputs[ARGMAX_OUTPUT])
        if argmax.ndim != 2 or argmax.shape[1] == 0:
            raise PredictionFailed(f"Unexpected argmax shape {argmax.shape}, expected [batch, seq]")

        seq_len = argmax.shape[1]
        position = seq_len - 1 if index is None else index
        if not -seq_len <= position < seq_len:
            raise PredictionFailed(f"Position {position} out of range for {seq_len} positions")

        token = int(argmax[0, position])
        logger.debug("Selected token %d at position %d", token, position)
        return token
