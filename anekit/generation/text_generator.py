#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""Turn a ``ModelPipeline`` prediction stream into text.

``TextGenerator`` drains predictions, stops on stop tokens produced after
the prompt, and decodes only the generated suffix. Text is derived by
decoding the whole suffix and diffing against the previous decode, which
keeps word-initial spaces that per-token decoding would lose.

Errors: a failing stage ends the request with the stage's exception. Any
text already produced is attached to it as ``partial_text``; streaming
callers have also already received those chunks.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterable, List, Optional, Sequence, Tuple, Union

from ..errors import AnekitError
from ..runtime.pipeline import ModelPipeline, Prediction
from ..utils.stats import LatencyReport
from .tokenizer import Tokenizer

logger = logging.getLogger(__name__)

Prompt = Union[str, Sequence[int]]


class IncrementalDecoder:
    """Emit only the text that was not emitted before."""

    def __init__(self, tokenizer: Tokenizer, prompt_length: int):
        self.tokenizer = tokenizer
        self.prompt_length = prompt_length
        self.text = ""

    def feed(self, all_tokens: Sequence[int]) -> str:
        if len(all_tokens) <= self.prompt_length:
            return ""
        current = self.tokenizer.decode(list(all_tokens[self.prompt_length:]))
        if len(current) <= len(self.text):
            return ""
        delta = current[len(self.text):]
        self.text = current
        return delta


@dataclass
class GenerationResult:
    text: str = ""
    tokens: Tuple[int, ...] = ()
    predictions: List[Prediction] = field(default_factory=list)
    stop_reason: str = "cancelled"
    load_duration: Optional[float] = None

    @property
    def report(self) -> LatencyReport:
        return LatencyReport.from_predictions(self.predictions, self.load_duration)


class TextGenerator:
    """Generate text with a ``ModelPipeline`` and a tokenizer."""

    def __init__(self, pipeline: ModelPipeline, tokenizer: Tokenizer, stop_tokens: Iterable[int] = ()):
        self.pipeline = pipeline
        self.tokenizer = tokenizer
        self.stop_tokens = frozenset(int(t) for t in stop_tokens)

    def _prompt_tokens(self, prompt: Prompt) -> List[int]:
        if isinstance(prompt, str):
            return list(self.tokenizer.encode(prompt))
        return list(prompt)

    async def _drain(
        self,
        prompt: Prompt,
        max_new_tokens: int,
        result: GenerationResult,
        stop_tokens: Optional[Iterable[int]] = None,
    ) -> AsyncIterator[str]:
        stop = self.stop_tokens if stop_tokens is None else frozenset(stop_tokens)
        tokens = self._prompt_tokens(prompt)

        start = time.perf_counter()
        await asyncio.to_thread(self.pipeline.load)
        result.load_duration = time.perf_counter() - start

        prompt_stops = [t for t in tokens if t in stop]
        if prompt_stops:
            logger.info("Prompt contains stop tokens %s; they do not end generation", prompt_stops)

        predictions = self.pipeline.predict(tokens, max_new_tokens)
        decoder = IncrementalDecoder(self.tokenizer, len(tokens))
        try:
            async for prediction in predictions:
                past_prompt = len(prediction.all_tokens) > len(tokens)
                if past_prompt and prediction.new_token in stop:
                    logger.info("Stop token %d encountered", prediction.new_token)
                    result.stop_reason = "stop_token"
                    break

                result.predictions.append(prediction)
                result.tokens = prediction.all_tokens[len(tokens):]
                delta = decoder.feed(prediction.all_tokens)
                if delta:
                    yield delta
            else:
                result.stop_reason = "max_new_tokens"
        except AnekitError as e:
            logger.error("Error during token prediction: %s", e)
            e.partial_text = decoder.text
            raise
        finally:
            predictions.cancel()
            result.text = decoder.text

        if result.tokens:
            result.text = self.tokenizer.decode(list(result.tokens))
        logger.info("Generation complete: %d tokens generated (%s)", len(result.tokens), result.stop_reason)

    def stream(
        self,
        prompt: Prompt,
        max_new_tokens: int,
        stop_tokens: Optional[Iterable[int]] = None,
        result: Optional[GenerationResult] = None,
    ) -> AsyncIterator[str]:
        """Async iterator of text chunks. Closing it early stops generation.

        Pass a ``GenerationResult`` to collect predictions and timings.
        """
        if result is None:
            result = GenerationResult()
        return self._drain(prompt, max_new_tokens, result, stop_tokens)

    async def generate(
        self, prompt: Prompt, max_new_tokens: int, stop_tokens: Optional[Iterable[int]] = None
    ) -> GenerationResult:
        result = GenerationResult()
        chunks = self._drain(prompt, max_new_tokens, result, stop_tokens)
        try:
            async for _ in chunks:
                pass
        finally:
            await chunks.aclose()
        return result

    async def generate_text(
        self, prompt: Prompt, max_new_tokens: int, stop_tokens: Optional[Iterable[int]] = None
    ) -> str:
        result = await self.generate(prompt, max_new_tokens, stop_tokens)
        return result.text

    def generate_text_sync(
        self, prompt: Prompt, max_new_tokens: int, stop_tokens: Optional[Iterable[int]] = None
    ) -> str:
        return asyncio.run(self.generate_text(prompt, max_new_tokens, stop_tokens))
