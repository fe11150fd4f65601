#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

import logging
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

from tqdm import tqdm

from ..config import GenerationConfig
from ..errors import NotLoadedError
from ..runtime.pipeline import DEFAULT_CACHE_PROCESSOR, DEFAULT_LOGIT_PROCESSOR, ModelPipeline
from .text_generator import TextGenerator
from .tokenizer import HFTokenizer, resolve_stop_tokens

logger = logging.getLogger(__name__)

KNOWN_TOKENIZERS = (
    ("llama-2-7b", "pcuenq/Llama-2-7b-chat-coreml"),
    ("llama-3.2-1b", "meta-llama/Llama-3.2-1B"),
    ("llama-3.2-3b", "meta-llama/Llama-3.2-3B"),
)


def infer_tokenizer_name(model_prefix=None, model_dir=None) -> Optional[str]:
    """Guess a hub tokenizer id from the model prefix or directory name."""
    hint = model_prefix or (Path(model_dir).name if model_dir else "")
    hint = hint.lower()
    for needle, name in KNOWN_TOKENIZERS:
        if needle in hint:
            return name
    return None


class LLMModelManager:
    """Load a pipeline plus tokenizer from a model directory and generate text."""

    def __init__(self, stop_tokens: Optional[Iterable[int]] = None):
        self._stop_tokens = stop_tokens
        self.pipeline: Optional[ModelPipeline] = None
        self.tokenizer = None
        self.stop_tokens = frozenset()

    @property
    def is_loaded(self) -> bool:
        return self.pipeline is not None and self.tokenizer is not None

    def unload(self):
        """Release the current pipeline's stages and forget the tokenizer."""
        if self.pipeline is not None:
            self.pipeline.unload()
        self.pipeline = None
        self.tokenizer = None
        self.stop_tokens = frozenset()

    def load_model(
        self,
        model_dir,
        model_prefix: Optional[str] = None,
        cache_processor_model_name: str = DEFAULT_CACHE_PROCESSOR,
        logit_processor_model_name: str = DEFAULT_LOGIT_PROCESSOR,
        tokenizer_name: Optional[str] = None,
        compute_unit=None,
        tokenizer=None,
        loader=None,
        progress: bool = False,
    ):
        """Build and load the pipeline, then the tokenizer.

        ``tokenizer`` may be any object with ``encode``/``decode``; otherwise a
        transformers tokenizer is loaded from ``tokenizer_name``, a known hub
        id matching the model name, or the model directory itself.
        """
        self.unload()

        pipeline = ModelPipeline.from_folder(
            model_dir,
            model_prefix=model_prefix,
            cache_processor_model_name=cache_processor_model_name,
            logit_processor_model_name=logit_processor_model_name,
            compute_unit=compute_unit,
            loader=loader,
        )
        try:
            if progress:
                for stage in tqdm(pipeline.stages, desc="Loading models", unit="model"):
                    stage.load()
            pipeline.load()

            if tokenizer is None:
                name = tokenizer_name or infer_tokenizer_name(model_prefix, model_dir) or str(model_dir)
                tokenizer = HFTokenizer.from_pretrained(name)
        except Exception:
            pipeline.unload()
            raise

        self.pipeline = pipeline
        self.tokenizer = tokenizer
        self.stop_tokens = resolve_stop_tokens(self._stop_tokens, tokenizer)
        logger.info("Stop tokens: %s", sorted(self.stop_tokens))
        return self

    def load_from_config(self, config: GenerationConfig, tokenizer=None, loader=None, progress=False):
        if config.stop_tokens is not None:
            self._stop_tokens = config.stop_tokens
        return self.load_model(
            config.model_dir,
            model_prefix=config.model_prefix,
            cache_processor_model_name=config.cache_processor_model_name,
            logit_processor_model_name=config.logit_processor_model_name,
            tokenizer_name=config.tokenizer,
            compute_unit=config.compute_unit,
            tokenizer=tokenizer,
            loader=loader,
            progress=progress,
        )

    def text_generator(self) -> TextGenerator:
        if not self.is_loaded:
            raise NotLoadedError("No model loaded; call load_model() first")
        return TextGenerator(self.pipeline, self.tokenizer, self.stop_tokens)

    async def generate_text(self, input_text: str, max_new_tokens: int) -> str:
        return await self.text_generator().generate_text(input_text, max_new_tokens)

    async def generate_text_stream(self, input_text: str, max_new_tokens: int) -> AsyncIterator[str]:
        """Yield chunks of generated text as they become available."""
        chunks = self.text_generator().stream(input_text, max_new_tokens)
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            await chunks.aclose()
