#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

import pytest

from anekit import cli
from anekit.cli import build_config, parse_args
from anekit.generation.text_generator import TextGenerator

from fakes import FakeTokenizer, make_pipeline


class FailingManager:
    """Manager whose generator fails on the third decode step."""

    def load_from_config(self, config, progress=False):
        return self

    def text_generator(self):
        pipeline, _ = make_pipeline([40, 41, 42], fail_at=2)
        return TextGenerator(pipeline, FakeTokenizer(), stop_tokens=[99])


def test_command_line_overrides_meta(tmp_path):
    meta = tmp_path / "meta.yaml"
    meta.write_text("model_info:\n  parameters:\n    prefix: Llama\n    max_tokens: 20\n")

    args = parse_args(["--meta", str(meta), "--prompt", "hi", "--max-tokens", "5", "--cpu"])
    config = build_config(args)

    assert config.model_dir == str(tmp_path)
    assert config.model_prefix == "Llama"
    assert config.max_new_tokens == 5
    assert config.compute_unit == "cpu_only"


def test_defaults_without_meta():
    args = parse_args(["--prompt", "hi", "--stop-token", "1", "--stop-token", "2"])
    config = build_config(args)

    assert config.model_dir == "."
    assert config.max_new_tokens == 60
    assert config.stop_tokens == [1, 2]
    assert config.compute_unit == "cpu_and_ne"


@pytest.mark.parametrize("stream", [False, True])
def test_failure_reports_partial_output_once(monkeypatch, capsys, stream):
    monkeypatch.setattr(cli, "LLMModelManager", FailingManager)
    argv = ["--prompt", "t10 t20", "--max-tokens", "3"] + (["--stream"] if stream else [])

    assert cli.main(argv) == 1

    captured = capsys.readouterr()
    assert captured.out.count("t40") == 1
    assert captured.out.count("t41") == 1
    assert ("Partial output" in captured.out) is not stream
    assert "Error:" in captured.err
