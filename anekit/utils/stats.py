#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

"""Latency statistics for generation reports. Reporting only."""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np


def mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.mean(values))


def stdev(values: Sequence[float]) -> float:
    """Sample standard deviation; 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.std(values, ddof=1))


@dataclass(frozen=True)
class LatencyReport:
    load_duration: Optional[float]  # seconds
    prompt_latency_ms: Optional[float]
    token_latency_ms: float
    token_latency_stdev_ms: float
    throughput: float  # tokens / second
    throughput_stdev: float
    num_tokens: int

    @classmethod
    def from_predictions(cls, predictions, load_duration=None):
        prompt = [p.prompt_latency * 1000 for p in predictions if p.prompt_latency is not None]
        latencies = [p.latency * 1000 for p in predictions if p.latency is not None]
        throughputs = [1.0 / p.latency for p in predictions if p.latency]
        return cls(
            load_duration=load_duration,
            prompt_latency_ms=mean(prompt) if prompt else None,
            token_latency_ms=mean(latencies),
            token_latency_stdev_ms=stdev(latencies),
            throughput=mean(throughputs),
            throughput_stdev=stdev(throughputs),
            num_tokens=len(predictions),
        )

    def format(self) -> str:
        lines = []
        if self.load_duration is not None:
            lines.append(f"Compile + Load: {self.load_duration:.2f} sec")
        if self.prompt_latency_ms is not None:
            lines.append(f"Prompt        : {self.prompt_latency_ms:.2f} ms")
        lines.append(
            f"Generate      : {self.token_latency_ms:.2f} +/- {self.token_latency_stdev_ms:.2f} ms / token"
        )
        lines.append(
            f"                {self.throughput:.2f} +/- {self.throughput_stdev:.2f} token / sec"
        )
        return "\n".join(lines)
