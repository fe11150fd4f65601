#!/usr/bin/env python3
#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""Generate text with a CoreML model pipeline.

Usage:
    anekit-generate --d ~/Models/llama-3.2-1b --prompt "Hello!" --max-tokens 32
    anekit-generate --meta ~/Models/llama-3.2-1b/meta.yaml --prompt "Hello!" --stream
"""

import argparse
import asyncio
import logging
import sys

from .config import GenerationConfig, load_config
from .errors import AnekitError
from .generation.manager import LLMModelManager
from .generation.text_generator import GenerationResult

# ANSI color codes
LIGHT_BLUE = "\033[94m"
DARK_BLUE = "\033[34m"
RESET_COLOR = "\033[0m"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Generate text with a CoreML LLM pipeline (c) 2025 Anemll")

    parser.add_argument("--meta", type=str, help="Path to meta.yaml to load all parameters")
    parser.add_argument("--d", "--dir", dest="model_dir", type=str,
                        help="Directory containing the model files")
    parser.add_argument("--prefix", dest="model_prefix", type=str,
                        help="File name prefix of the main model (needed when several are present)")
    parser.add_argument("--cache-processor", dest="cache_processor_model_name", type=str,
                        help="Cache processor model file name")
    parser.add_argument("--logit-processor", dest="logit_processor_model_name", type=str,
                        help="Logit processor model file name")
    parser.add_argument("--tokenizer", type=str,
                        help="Tokenizer path or hub id (default: inferred, else the model directory)")

    parser.add_argument("--prompt", type=str, required=True, help="Input text")
    parser.add_argument("--max-tokens", dest="max_new_tokens", type=int,
                        help="Maximum number of tokens to generate (default: 60)")
    parser.add_argument("--stop-token", dest="stop_tokens", type=int, action="append",
                        help="Token id that ends generation (repeatable)")
    parser.add_argument("--stream", action="store_true", help="Print text as it is generated")

    parser.add_argument("--cpu", action="store_true", help="Run on CPU only (no ANE/GPU)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def build_config(args) -> GenerationConfig:
    config = load_config(args.meta) if args.meta else GenerationConfig()
    config = config.merged(
        model_dir=args.model_dir,
        model_prefix=args.model_prefix,
        cache_processor_model_name=args.cache_processor_model_name,
        logit_processor_model_name=args.logit_processor_model_name,
        tokenizer=args.tokenizer,
        max_new_tokens=args.max_new_tokens,
        stop_tokens=args.stop_tokens,
        compute_unit="cpu_only" if args.cpu else None,
    )
    if config.model_dir is None:
        config = config.merged(model_dir=".")
    return config


async def run(manager: LLMModelManager, prompt: str, max_new_tokens: int, stream: bool):
    generator = manager.text_generator()
    if stream:
        result = GenerationResult()
        print(LIGHT_BLUE, end="", flush=True)
        try:
            async for chunk in generator.stream(prompt, max_new_tokens, result=result):
                print(chunk, end="", flush=True)
        finally:
            print(RESET_COLOR)
        return result

    result = await generator.generate(prompt, max_new_tokens)
    print(LIGHT_BLUE + result.text + RESET_COLOR)
    return result


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_config(args)
        manager = LLMModelManager()
        manager.load_from_config(config, progress=True)
        result = asyncio.run(run(manager, args.prompt, config.max_new_tokens, args.stream))
    except AnekitError as e:
        # streamed chunks are already on screen
        if e.partial_text and not args.stream:
            print(f"\nPartial output:\n{e.partial_text}")
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nGeneration interrupted")
        return 130

    print(f"\n{DARK_BLUE}{result.report.format()}{RESET_COLOR}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
