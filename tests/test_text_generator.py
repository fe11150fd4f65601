#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

import asyncio

import pytest

from anekit.errors import ModelLoadError, PredictionFailed
from anekit.generation.text_generator import GenerationResult, IncrementalDecoder, TextGenerator
from anekit.runtime.deferred_model import DeferredModel

from fakes import FakeTokenizer, make_pipeline, stage_calls

PROMPT = [10, 20, 30]


def make_generator(script, stop_tokens=(99,), **kwargs):
    pipeline, calls = make_pipeline(script, **kwargs)
    return TextGenerator(pipeline, FakeTokenizer(), stop_tokens=stop_tokens), calls


async def collect_chunks(stream):
    return [chunk async for chunk in stream]


def test_stop_token_ends_generation_and_is_excluded():
    generator, calls = make_generator([40, 99, 50])
    result = asyncio.run(generator.generate(PROMPT, 3))

    assert [p.new_token for p in result.predictions] == [40]
    assert len(stage_calls(calls, "main")) == 2
    assert result.text == "t40"
    assert result.tokens == (40,)
    assert result.stop_reason == "stop_token"


def test_stop_token_in_prompt_does_not_stop():
    generator, _ = make_generator([40, 41])
    result = asyncio.run(generator.generate([10, 99, 30], 2))

    assert result.text == "t40 t41"
    assert result.stop_reason == "max_new_tokens"


def test_zero_new_tokens_gives_empty_text():
    generator, calls = make_generator([40])
    assert generator.generate_text_sync(PROMPT, 0) == ""
    assert calls == []


def test_prompt_text_is_encoded():
    generator, calls = make_generator([40, 41])
    assert generator.generate_text_sync("t10 t20", 2) == "t40 t41"
    assert stage_calls(calls, "main")[0]["input_ids"].tolist() == [[10, 20]]


def test_stream_yields_only_new_text():
    generator, _ = make_generator([40, 41, 42])
    chunks = asyncio.run(collect_chunks(generator.stream(PROMPT, 3)))
    assert chunks == ["t40", " t41", " t42"]


def test_per_call_stop_tokens_override_defaults():
    generator, _ = make_generator([40, 41, 42])
    assert generator.generate_text_sync(PROMPT, 3, stop_tokens=[41]) == "t40"


def test_closing_stream_stops_stage_invocations():
    generator, calls = make_generator([40, 41, 42])

    async def consume():
        stream = generator.stream(PROMPT, 3)
        received = [await stream.__anext__()]
        await stream.aclose()
        return received

    received = asyncio.run(consume())
    assert received == ["t40"]
    assert len(stage_calls(calls, "main")) == 1
    assert not generator.pipeline.busy


def test_stream_error_comes_after_partial_text():
    generator, _ = make_generator([40, 41, 42], fail_at=2)
    received = []

    async def consume():
        async for chunk in generator.stream(PROMPT, 3):
            received.append(chunk)

    with pytest.raises(PredictionFailed) as excinfo:
        asyncio.run(consume())

    assert received == ["t40", " t41"]
    assert excinfo.value.partial_text == "t40 t41"


def test_sync_generation_never_returns_truncated_text():
    generator, _ = make_generator([40, 41, 42], fail_at=1)
    with pytest.raises(PredictionFailed) as excinfo:
        generator.generate_text_sync(PROMPT, 3)
    assert excinfo.value.partial_text == "t40"


def test_generator_loads_pipeline_on_demand():
    generator, _ = make_generator([40])
    assert not generator.pipeline.stages[0].is_loaded

    result = asyncio.run(generator.generate(PROMPT, 1))
    assert result.load_duration is not None
    assert generator.pipeline.stages[0].is_loaded


def test_stream_collects_result_when_given_one():
    generator, _ = make_generator([40, 41])
    result = GenerationResult()
    asyncio.run(collect_chunks(generator.stream(PROMPT, 2, result=result)))

    assert result.text == "t40 t41"
    assert len(result.predictions) == 2
    assert result.report.num_tokens == 2
    assert result.report.prompt_latency_ms is not None


def test_second_request_reuses_pipeline():
    generator, _ = make_generator([40, 41, 42, 43])
    assert generator.generate_text_sync(PROMPT, 2) == "t40 t41"
    assert generator.generate_text_sync(PROMPT, 2) == "t42 t43"


def test_invalid_input_is_reported():
    generator, _ = make_generator([40])
    with pytest.raises(ValueError):
        generator.generate_text_sync([], 3)


def test_load_failure_surfaces_to_caller():
    generator, calls = make_generator([40])

    def missing(path, cu, fn):
        raise OSError("model file gone")

    generator.pipeline.main_model = DeferredModel("main.mlmodelc", loader=missing)
    with pytest.raises(ModelLoadError):
        generator.generate_text_sync(PROMPT, 1)
    assert calls == []


def test_incremental_decoder_emits_deltas():
    decoder = IncrementalDecoder(FakeTokenizer(), prompt_length=2)
    assert decoder.feed([1, 2]) == ""
    assert decoder.feed([1, 2, 5]) == "t5"
    assert decoder.feed([1, 2, 5, 6]) == " t6"
    # ids the tokenizer cannot decode add no text
    assert decoder.feed([1, 2, 5, 6, 100000]) == ""
    assert decoder.text == "t5 t6"
