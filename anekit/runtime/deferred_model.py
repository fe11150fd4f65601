#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""Lazy load/unload wrapper around a single CoreML model artifact.

A ``DeferredModel`` knows where its artifact lives but only instantiates it
when ``load()`` is called. Keeping stages unloaded until they are needed is
the main lever for bounding peak memory when several stages share a device.

Usage:
    model = DeferredModel("models/logit-processor.mlmodelc")
    model.load()
    outputs = model.predict({"logits": logits})
    model.unload()
"""

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional

import coremltools as ct
import numpy as np

from ..errors import ModelLoadError, NotLoadedError, PredictionFailed

logger = logging.getLogger(__name__)

MODEL_SUFFIXES = (".mlmodelc", ".mlpackage")

COMPUTE_UNITS = {
    "all": "ALL",
    "cpu_only": "CPU_ONLY",
    "cpu": "CPU_ONLY",
    "cpu_and_gpu": "CPU_AND_GPU",
    "cpu_and_ne": "CPU_AND_NE",
    "ane": "CPU_AND_NE",
}

Loader = Callable[[str, Any, Optional[str]], Any]


class LoadState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"


def parse_compute_unit(name):
    """Map a compute unit name (``cpu_only``, ``cpu_and_ne``...) to ``ct.ComputeUnit``."""
    if name is None:
        return ct.ComputeUnit.CPU_AND_NE
    if isinstance(name, ct.ComputeUnit):
        return name
    key = str(name).strip().lower().replace("-", "_")
    if key not in COMPUTE_UNITS:
        raise ValueError(
            f"Unknown compute unit '{name}'. "
            f"Expected one of: {', '.join(sorted(COMPUTE_UNITS))}"
        )
    return ct.ComputeUnit[COMPUTE_UNITS[key]]


def resolve_model_path(path):
    """Return the existing artifact path for ``path``, trying both model suffixes."""
    path = Path(path)
    if path.exists():
        return path

    candidates = [path]
    for suffix in MODEL_SUFFIXES:
        candidates.append(path.with_suffix(suffix))
        candidates.append(Path(str(path) + suffix))

    for candidate in candidates:
        if candidate.exists():
            return candidate

    tried = "\n".join(f"  {c}" for c in dict.fromkeys(candidates))
    raise FileNotFoundError(f"Model not found: {path}. Tried:\n{tried}")


def load_coreml_model(path, compute_unit=None, function_name=None):
    """Load a CoreML model, handling both .mlmodelc and .mlpackage formats."""
    path = Path(path)
    compute_unit = parse_compute_unit(compute_unit)

    if path.suffix == ".mlmodelc":
        if function_name:
            return ct.models.CompiledMLModel(str(path), compute_unit, function_name=function_name)
        return ct.models.CompiledMLModel(str(path), compute_unit)

    if function_name:
        return ct.models.MLModel(str(path), compute_units=compute_unit, function_name=function_name)
    return ct.models.MLModel(str(path), compute_units=compute_unit)


class DeferredModel:
    """A model artifact that is loaded on demand.

    ``load`` and ``unload`` are serialized on a per-handle lock, so concurrent
    callers of ``load`` observe exactly one load of the backing artifact.
    """

    def __init__(
        self,
        path,
        compute_unit=None,
        function_name: Optional[str] = None,
        loader: Optional[Loader] = None,
        name: Optional[str] = None,
    ):
        self.path = Path(path)
        self.compute_unit = compute_unit
        self.function_name = function_name
        self.name = name or self.path.stem
        self._loader = loader or load_coreml_model
        self._lock = threading.Lock()
        self._model = None
        self._state = LoadState.UNLOADED
        self.load_duration: Optional[float] = None

    def __repr__(self):
        return f"DeferredModel(name={self.name!r}, state={self._state.value})"

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state is LoadState.LOADED

    @property
    def model(self):
        """The backing artifact, or ``None`` while unloaded."""
        return self._model

    def load(self) -> bool:
        """Instantiate the backing artifact if needed.

        Returns True if this call performed the load, False if the model was
        already loaded.
        """
        with self._lock:
            if self._state is LoadState.LOADED:
                return False

            self._state = LoadState.LOADING
            start = time.perf_counter()
            try:
                model = self._loader(str(self.path), self.compute_unit, self.function_name)
            except Exception as e:
                self._model = None
                self._state = LoadState.UNLOADED
                logger.error("Failed to load %s from %s: %s", self.name, self.path, e)
                raise ModelLoadError(f"Failed to load model '{self.name}' from {self.path}: {e}") from e

            self._model = model
            self._state = LoadState.LOADED
            self.load_duration = time.perf_counter() - start
            logger.debug("Loaded %s in %.2f s", self.name, self.load_duration)
            return True

    def unload(self):
        """Release the backing artifact. Safe to call when not loaded."""
        with self._lock:
            if self._model is not None:
                logger.debug("Unloading %s", self.name)
            self._model = None
            self._state = LoadState.UNLOADED

    @contextmanager
    def loaded(self):
        """Keep the model loaded for the duration of the block.

        The model is unloaded on exit only if this block loaded it.
        """
        did_load = self.load()
        try:
            yield self
        finally:
            if did_load:
                self.unload()

    @property
    def input_names(self) -> Optional[FrozenSet[str]]:
        """Input names declared by the artifact, when it exposes its spec."""
        model = self._model
        if model is None or not hasattr(model, "get_spec"):
            return None
        try:
            return frozenset(inp.name for inp in model.get_spec().description.input)
        except AttributeError:
            return None

    def predict(self, inputs: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Run one forward pass with named input tensors."""
        model = self._model
        if model is None or self._state is not LoadState.LOADED:
            raise NotLoadedError(f"Model '{self.name}' is not loaded")

        try:
            outputs = model.predict(dict(inputs))
        except Exception as e:
            raise PredictionFailed(f"Prediction failed in '{self.name}': {e}") from e

        if outputs is None:
            raise PredictionFailed(f"Model '{self.name}' returned no outputs")
        return dict(outputs)
