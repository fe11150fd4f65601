#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""In-memory stand-ins for the CoreML stages used by the tests.

The fake main network emits one-hot logits for a scripted token sequence,
the fake cache processor appends activations to the cache, and the fake
logit processor takes a real arg-max, so the whole chain runs end to end.
"""

import threading

import numpy as np

from anekit.runtime.cache_processor import CacheProcessor
from anekit.runtime.deferred_model import DeferredModel
from anekit.runtime.logit_processor import LogitProcessor
from anekit.runtime.pipeline import ModelPipeline, PipelineObserver

VOCAB_SIZE = 128


class FakeMainModel:
    def __init__(self, script, calls, vocab_size=VOCAB_SIZE, shards=1, fail_at=None):
        self.script = list(script)
        self.calls = calls
        self.vocab_size = vocab_size
        self.shards = shards
        self.fail_at = fail_at
        self.step = 0

    def predict(self, inputs):
        self.calls.append(("main", inputs))
        step = self.step
        self.step += 1
        if self.fail_at is not None and step == self.fail_at:
            raise RuntimeError("forward pass exploded")

        input_ids = inputs["input_ids"]
        seq_len = input_ids.shape[1]
        logits = np.zeros((1, seq_len, self.vocab_size), dtype=np.float16)
        logits[0, -1, self.script[step]] = 1.0

        outputs = {"new_k_cache": input_ids.astype(np.float16)}
        if self.shards == 1:
            outputs["logits"] = logits
        else:
            for i, part in enumerate(np.array_split(logits, self.shards, axis=-1)):
                outputs[f"logits_{i}"] = part
        return outputs


class BlockingMainModel(FakeMainModel):
    """Main stage that waits for `release` before finishing its forward pass."""

    def __init__(self, script, calls, **kwargs):
        super().__init__(script, calls, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def predict(self, inputs):
        self.entered.set()
        if not self.release.wait(timeout=5):
            raise RuntimeError("main stage was never released")
        return super().predict(inputs)


class FakeCacheModel:
    def __init__(self, calls):
        self.calls = calls

    def predict(self, inputs):
        self.calls.append(("cache", inputs))
        previous = inputs.get("k_cache", np.zeros((1, 0), dtype=np.float16))
        return {"k_cache": np.concatenate([previous, inputs["new_k_cache"]], axis=1)}


class FakeArgmaxModel:
    def __init__(self, calls):
        self.calls = calls

    def predict(self, inputs):
        self.calls.append(("logit", inputs))
        if "logits" in inputs:
            logits = inputs["logits"]
        else:
            names = sorted(inputs, key=lambda name: int(name.rsplit("_", 1)[1]))
            logits = np.concatenate([inputs[name] for name in names], axis=-1)
        return {"argmax": np.argmax(logits, axis=-1).astype(np.int32)}


class RecordingObserver(PipelineObserver):
    def __init__(self):
        self.loads = []
        self.steps = []
        self.finished = []

    def on_load(self, duration):
        self.loads.append(duration)

    def on_step(self, step, prediction):
        self.steps.append((step, prediction.new_token))

    def on_finish(self, steps, reason):
        self.finished.append((steps, reason))


class FakeTokenizer:
    """Whitespace tokenizer over ``t<id>`` words; unknown ids decode to nothing."""

    def __init__(self, vocab_size=VOCAB_SIZE):
        self.vocab_size = vocab_size

    def encode(self, text):
        return [int(word[1:]) for word in text.split()]

    def decode(self, tokens):
        return " ".join(f"t{t}" for t in tokens if 0 <= t < self.vocab_size)


def make_pipeline(script, calls=None, shards=1, fail_at=None, observer=None):
    """A pipeline whose stages produce ``script`` one token per step."""
    calls = [] if calls is None else calls
    main = DeferredModel(
        "main.mlmodelc",
        loader=lambda path, cu, fn: FakeMainModel(script, calls, shards=shards, fail_at=fail_at),
    )
    cache = DeferredModel("cache-processor.mlmodelc", loader=lambda path, cu, fn: FakeCacheModel(calls))
    logit = DeferredModel("logit-processor.mlmodelc", loader=lambda path, cu, fn: FakeArgmaxModel(calls))
    pipeline = ModelPipeline(main, CacheProcessor(cache), LogitProcessor(logit), observer=observer)
    return pipeline, calls


def stage_calls(calls, stage):
    return [inputs for name, inputs in calls if name == stage]
