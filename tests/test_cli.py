"""Tests for the ``khodkar analyze`` command line."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import rule
from khodkar.__main__ import build_parser, main
from khodkar.analysis import config as config_module
from khodkar.analysis.agent import ResultAggregator
from khodkar.analysis.errors import AnalysisCancelled, LLMCallError


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"log_file": str(tmp_path / "logs" / "khodkar.log")}))
    return path


@pytest.fixture
def fake_analyzer():
    aggregator = ResultAggregator()
    result = aggregator.build_result(aggregator.aggregate({"businessRules": [rule()]}))
    instance = MagicMock()
    instance.analyze = AsyncMock(return_value=result)
    instance.outcome = None
    instance.catalog = None
    with patch("khodkar.analysis.analyzer.CodebaseAnalyzer", return_value=instance) as cls, \
            patch("khodkar.logger.setup_logging"):
        yield cls, instance


def _argv(tmp_path, config_file, *extra):
    return [
        "analyze",
        "-d", str(tmp_path),
        "-o", str(tmp_path / "out" / "rules.json"),
        "--llm-base-url", "https://api.example.org/v1",
        "--llm-api-key", "sk-test",
        "--llm-model", "gpt-4o",
        "--config", str(config_file),
        *extra,
    ]


def _exit_code(argv):
    with pytest.raises(SystemExit) as exc:
        main(argv)
    return exc.value.code


class TestCLI:

    def test_parser_defaults(self):
        args = build_parser().parse_args([
            "analyze", "-d", ".", "-o", "r.md",
            "--llm-base-url", "http://x", "--llm-api-key", "k", "--llm-model", "m",
        ])
        assert args.format == "markdown"
        assert args.verbose is False
        assert args.llm_max_steps is None

    def test_missing_required_flag(self, capsys):
        assert _exit_code(["analyze", "-d", "."]) == 2

    def test_no_command_prints_help(self, capsys):
        assert _exit_code([]) == 1
        assert "analyze" in capsys.readouterr().out

    def test_success_writes_output(self, tmp_path, config_file, fake_analyzer, capsys):
        cls, instance = fake_analyzer
        code = _exit_code(_argv(tmp_path, config_file, "-f", "json", "--llm-max-steps", "20"))
        assert code == 0
        data = json.loads((tmp_path / "out" / "rules.json").read_text())
        assert data["summary"]["totalRules"] == 1
        llm_config = cls.call_args.args[0]
        assert llm_config.max_steps == 20
        assert llm_config.model == "gpt-4o"
        instance.analyze.assert_awaited_once_with(str(tmp_path))
        assert "Analysis complete" in capsys.readouterr().out

    def test_invalid_steps_is_configuration_error(self, tmp_path, config_file, fake_analyzer, capsys):
        code = _exit_code(_argv(tmp_path, config_file, "--llm-max-steps", "5"))
        assert code == 1
        assert "ConfigurationError" in capsys.readouterr().err

    def test_analysis_error_reported(self, tmp_path, config_file, fake_analyzer, capsys):
        _, instance = fake_analyzer
        instance.analyze.side_effect = LLMCallError("HTTP 401", reason="auth", status_code=401, step=1)
        code = _exit_code(_argv(tmp_path, config_file))
        assert code == 1
        err = capsys.readouterr().err
        assert "LLMCallError: HTTP 401" in err
        assert "Reason: auth" in err
        assert not (tmp_path / "out").exists()

    def test_cancelled(self, tmp_path, config_file, fake_analyzer, capsys):
        _, instance = fake_analyzer
        instance.analyze.side_effect = AnalysisCancelled("stopped")
        assert _exit_code(_argv(tmp_path, config_file)) == 130

    def test_keyboard_interrupt(self, tmp_path, config_file, fake_analyzer):
        _, instance = fake_analyzer
        instance.analyze.side_effect = KeyboardInterrupt()
        assert _exit_code(_argv(tmp_path, config_file)) == 130

    def test_unexpected_error(self, tmp_path, config_file, fake_analyzer, capsys):
        _, instance = fake_analyzer
        instance.analyze.side_effect = RuntimeError("boom")
        assert _exit_code(_argv(tmp_path, config_file)) == 1
        assert "Unexpected error" in capsys.readouterr().err
