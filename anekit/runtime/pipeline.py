#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""Token-by-token decode loop over three cooperating model stages.

Stages:
    main network     input_ids + position_ids + KV cache -> logits + activations
    cache processor  previous KV cache + activations -> next KV cache
    logit processor  logits -> next token (greedy arg-max)

``ModelPipeline.predict`` returns a ``PredictionStream``: an async iterator
that runs one decode step per ``__anext__`` in a worker thread, so a
consumer that stops pulling stops the computation with it.

Usage:
    pipeline = ModelPipeline.from_folder("models/llama-3.2-1b")
    pipeline.load()
    async for prediction in pipeline.predict(tokens, max_new_tokens=32):
        print(prediction.new_token)
"""

import asyncio
import logging
import re
import threading
import time
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import (
    InvalidInputError,
    NotLoadedError,
    PipelineBusyError,
    PipelineConstructionFailed,
    PredictionFailed,
)
from .cache_processor import CacheProcessor, CacheState
from .deferred_model import MODEL_SUFFIXES, DeferredModel, resolve_model_path
from .logit_processor import LogitProcessor

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PROCESSOR = "cache-processor.mlmodelc"
DEFAULT_LOGIT_PROCESSOR = "logit-processor.mlmodelc"

LOGITS_OUTPUT = re.compile(r"^logits(?:_(\d+))?$")


@dataclass(frozen=True)
class Prediction:
    """Result of one decode step.

    ``all_tokens`` is a snapshot of the prompt plus every token generated so
    far. ``latency`` covers the forward pass, cache update and selection, in
    seconds. ``prompt_latency`` is the first step's forward pass duration and
    is None on every later step.
    """

    new_token: int
    all_tokens: Tuple[int, ...]
    latency: float
    prompt_latency: Optional[float] = None


class PipelineState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


class PipelineObserver:
    """Hooks for side effects around the decode loop. All no-ops by default."""

    def on_load(self, duration: float):
        pass

    def on_step(self, step: int, prediction: Prediction):
        pass

    def on_finish(self, steps: int, reason: str):
        pass


class LoggingObserver(PipelineObserver):
    def on_load(self, duration):
        logger.info("Pipeline loaded in %.2f s", duration)

    def on_step(self, step, prediction):
        if prediction.prompt_latency is not None:
            logger.debug(
                "Prompt of %d tokens processed in %.1f ms",
                len(prediction.all_tokens) - 1,
                prediction.prompt_latency * 1000,
            )
        logger.debug(
            "Step %d: token %d (%.1f ms)", step, prediction.new_token, prediction.latency * 1000
        )

    def on_finish(self, steps, reason):
        logger.debug("Decode finished after %d steps (%s)", steps, reason)


def split_outputs(outputs: Dict[str, np.ndarray]) -> Tuple[List[np.ndarray], Dict[str, np.ndarray]]:
    """Separate logits tensors (ordered by head index) from cache activations."""
    heads = []
    activations = {}
    for name, value in outputs.items():
        match = LOGITS_OUTPUT.match(name)
        if match:
            heads.append((int(match.group(1) or 0), value))
        else:
            activations[name] = value
    heads.sort(key=lambda item: item[0])
    return [value for _, value in heads], activations


def _find_main_model(folder: Path, model_prefix: Optional[str], exclude: Sequence[Path]) -> Path:
    excluded = {p.resolve() for p in exclude}
    by_stem = {}
    for path in sorted(folder.iterdir()):
        if path.suffix not in MODEL_SUFFIXES or path.resolve() in excluded:
            continue
        if model_prefix and not path.name.startswith(model_prefix):
            continue
        # Prefer the compiled artifact when both formats are present.
        if path.stem not in by_stem or path.suffix == ".mlmodelc":
            by_stem[path.stem] = path

    if not by_stem:
        what = f"with prefix '{model_prefix}' " if model_prefix else ""
        raise PipelineConstructionFailed(f"No main model {what}found in {folder}")
    if len(by_stem) > 1:
        names = ", ".join(p.name for p in by_stem.values())
        raise PipelineConstructionFailed(
            f"Several main model candidates in {folder} ({names}); pass a model prefix"
        )
    return next(iter(by_stem.values()))


class ModelPipeline:
    """Owns the three decode stages and their lifecycle.

    Only one generation request may be in flight per pipeline instance.
    """

    def __init__(
        self,
        main_model: DeferredModel,
        cache_processor: CacheProcessor,
        logit_processor: LogitProcessor,
        observer: Optional[PipelineObserver] = None,
    ):
        self.main_model = main_model
        self.cache_processor = cache_processor
        self.logit_processor = logit_processor
        self.observer = observer or LoggingObserver()
        self._lock = threading.Lock()
        self._loading = False
        self._active = None

    @classmethod
    def from_folder(
        cls,
        folder,
        model_prefix: Optional[str] = None,
        cache_processor_model_name: str = DEFAULT_CACHE_PROCESSOR,
        logit_processor_model_name: str = DEFAULT_LOGIT_PROCESSOR,
        compute_unit=None,
        loader=None,
        observer: Optional[PipelineObserver] = None,
    ):
        """Build an unloaded pipeline from the artifacts in ``folder``."""
        folder = Path(folder).expanduser()
        if not folder.is_dir():
            raise PipelineConstructionFailed(f"Model directory not found: {folder}")

        try:
            cache_path = resolve_model_path(folder / cache_processor_model_name)
            logit_path = resolve_model_path(folder / logit_processor_model_name)
        except FileNotFoundError as e:
            raise PipelineConstructionFailed(str(e)) from e

        main_path = _find_main_model(folder, model_prefix, exclude=[cache_path, logit_path])
        logger.info("Main model: %s", main_path.name)
        logger.info("Cache processor: %s", cache_path.name)
        logger.info("Logit processor: %s", logit_path.name)

        def stage(path):
            return DeferredModel(path, compute_unit=compute_unit, loader=loader)

        return cls(
            stage(main_path),
            CacheProcessor(stage(cache_path)),
            LogitProcessor(stage(logit_path)),
            observer=observer,
        )

    @property
    def stages(self) -> List[DeferredModel]:
        return [self.main_model, self.cache_processor.model, self.logit_processor.model]

    @property
    def state(self) -> PipelineState:
        if self._loading:
            return PipelineState.LOADING
        if all(stage.is_loaded for stage in self.stages):
            return PipelineState.READY
        return PipelineState.UNLOADED

    @property
    def busy(self) -> bool:
        stream = self._active() if self._active is not None else None
        # A cancelled stream stays busy until its worker thread has returned.
        return stream is not None and (not stream.finished or stream.in_flight)

    def _check_idle(self):
        if self.busy:
            raise PipelineBusyError("A generation request is already in flight on this pipeline")

    def load(self) -> bool:
        """Load all stages. Returns True if any stage was loaded by this call."""
        with self._lock:
            if self.state is PipelineState.READY:
                return False
            self._check_idle()

            self._loading = True
            start = time.perf_counter()
            loaded_now = []
            try:
                for stage in self.stages:
                    if stage.load():
                        loaded_now.append(stage)
            except Exception:
                for stage in loaded_now:
                    stage.unload()
                raise
            finally:
                self._loading = False

        self.observer.on_load(time.perf_counter() - start)
        return True

    def unload(self):
        with self._lock:
            self._check_idle()
            for stage in self.stages:
                stage.unload()

    @contextmanager
    def loaded(self):
        """Keep the pipeline loaded for the block; unload on exit if this block loaded it."""
        did_load = self.load()
        try:
            yield self
        finally:
            if did_load:
                self.unload()

    def predict(
        self,
        tokens: Sequence[int],
        max_new_tokens: int,
        observer: Optional[PipelineObserver] = None,
    ) -> "PredictionStream":
        """Lazily generate up to ``max_new_tokens`` predictions after ``tokens``."""
        if len(tokens) == 0:
            raise InvalidInputError("Cannot predict from an empty token sequence")
        if max_new_tokens < 0:
            raise InvalidInputError(f"max_new_tokens must be >= 0, got {max_new_tokens}")
        try:
            history = [int(t) for t in tokens]
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Tokens must be integers: {e}") from e

        with self._lock:
            self._check_idle()
            if self.state is not PipelineState.READY:
                raise NotLoadedError("Pipeline is not loaded; call load() first")
            stream = PredictionStream(self, history, max_new_tokens, observer or self.observer)
            self._active = weakref.ref(stream)
        return stream

    def _step(
        self,
        history: List[int],
        cache: CacheState,
        cancelled: Optional[threading.Event] = None,
    ) -> Optional[Tuple[int, CacheState, float, float]]:
        """Run one decode step over the tokens the cache has not seen yet.

        ``cancelled`` is checked before each stage; once it is set no further
        stage runs and None is returned.
        """

        def stop():
            return cancelled is not None and cancelled.is_set()

        if stop():
            return None

        pending = history[cache.length:]
        count = len(pending)

        inputs = {
            "input_ids": np.array([pending], dtype=np.int32),
            "position_ids": np.arange(cache.length, cache.length + count, dtype=np.int32),
        }
        inputs.update(cache.tensors)

        start = time.perf_counter()
        outputs = self.main_model.predict(inputs)
        forward = time.perf_counter() - start

        logits, activations = split_outputs(outputs)
        if not logits:
            raise PredictionFailed(
                f"Main model returned no logits (got: {', '.join(outputs) or 'nothing'})"
            )
        if stop():
            return None

        cache = self.cache_processor.update(cache, activations, count)
        if stop():
            return None
        token = self.logit_processor.select_token(logits)
        return token, cache, forward, time.perf_counter() - start


class PredictionStream:
    """Forward-only async iterator of ``Prediction`` values.

    Each ``__anext__`` runs exactly one decode step. ``cancel()`` stops the
    stream before the next stage starts; no stage is invoked afterwards. A
    step that was already running when the stream was cancelled keeps the
    pipeline busy until its worker thread returns.
    """

    def __init__(self, pipeline: ModelPipeline, tokens: List[int], max_new_tokens: int, observer):
        self._pipeline = pipeline
        self._tokens = tokens
        self._cache = CacheState.empty()
        self._observer = observer
        self._cancelled = threading.Event()
        self._idle = threading.Event()
        self._idle.set()
        self.prompt_length = len(tokens)
        self.max_new_tokens = max_new_tokens
        self.steps = 0
        self.finished = False
        self.finish_reason: Optional[str] = None

    def __aiter__(self):
        return self

    @property
    def in_flight(self) -> bool:
        """True while a decode step is running in a worker thread."""
        return not self._idle.is_set()

    def _run_step(self, history, cache):
        try:
            return self._pipeline._step(history, cache, self._cancelled)
        finally:
            self._idle.set()

    async def __anext__(self) -> Prediction:
        if self.finished:
            raise StopAsyncIteration
        if self._cancelled.is_set():
            self._finish("cancelled")
            raise StopAsyncIteration
        if self.steps >= self.max_new_tokens:
            self._finish("max_new_tokens")
            raise StopAsyncIteration

        self._idle.clear()
        try:
            result = await asyncio.to_thread(self._run_step, list(self._tokens), self._cache)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; stop it at the next stage boundary.
            self._cancelled.set()
            self._finish("cancelled")
            raise
        except Exception:
            self._finish("error")
            raise

        if result is None or self._cancelled.is_set():
            self._finish("cancelled")
            raise StopAsyncIteration

        token, cache, forward, latency = result
        self._cache = cache
        self._tokens.append(token)
        prediction = Prediction(
            new_token=token,
            all_tokens=tuple(self._tokens),
            latency=latency,
            prompt_latency=forward if self.steps == 0 else None,
        )
        self.steps += 1
        self._observer.on_step(self.steps, prediction)
        return prediction

    def cancel(self):
        """Stop producing predictions. Already emitted predictions stay valid."""
        self._cancelled.set()
        if not self.finished:
            self._finish("cancelled")

    async def aclose(self):
        self.cancel()

    def _finish(self, reason):
        if self.finished:
            return
        self.finished = True
        self.finish_reason = reason
        self._cache = CacheState.empty()
        self._observer.on_finish(self.steps, reason)
