"""Tests for the JSON report feature (--report)."""

import json

import pytest

from scrivo import agent
from scrivo.agent import StreamChunk
from scrivo.report import ReportCollector, TransportError


# ---------------------------------------------------------------------------
# ReportCollector unit tests
# ---------------------------------------------------------------------------


def _build(rc, **overrides):
    kwargs = dict(
        task="hello",
        model="deepseek-chat",
        provider="deepseek",
        session_id="20250101-000000-abcdef",
        settings={},
        outcome="success",
        answer="done",
        exit_code=0,
        rounds=0,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector())
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["session_id"] == "20250101-000000-abcdef"
        assert r["result"] == {"outcome": "success", "answer": "done", "exit_code": 0}
        assert r["stats"]["rounds"] == 0
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["llm_calls"] == 0
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 1000, "stop", tool_calls=2)
        rc.record_llm_call(2, 1.3, 1500, "stop")
        assert rc.llm_calls == 2
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.max_round_seen == 2
        assert rc.events[0]["tool_calls"] == 2
        assert rc.events[1]["prompt_tokens_est"] == 1500

    def test_tool_call_tracking(self):
        rc = ReportCollector()
        rc.record_tool_call(1, "read_file", ["a.txt"], True, 0.01, 120)
        rc.record_tool_call(1, "read_file", ["b.txt"], False, 0.02, 9, error="NotFound: b.txt")
        rc.record_tool_call(2, "run_command", ["make"], True, 1.5, 400)

        stats = _build(rc, rounds=2)["stats"]
        assert stats["tool_calls_total"] == 3
        assert stats["tool_calls_succeeded"] == 2
        assert stats["tool_calls_failed"] == 1
        assert stats["tool_calls_by_name"]["read_file"] == {"succeeded": 1, "failed": 1}
        assert rc.events[1]["error"] == "NotFound: b.txt"
        assert "error" not in rc.events[0]

    def test_interrupt_tracking(self):
        rc = ReportCollector()
        rc.record_interrupt(3, "executing")
        assert _build(rc)["stats"]["interrupts"] == 1
        assert rc.events == [{"round": 3, "type": "interrupt", "state": "executing"}]

    def test_error_outcome(self):
        r = _build(
            ReportCollector(),
            outcome="error",
            answer=None,
            exit_code=1,
            error_message="authentication failed",
        )
        assert r["result"]["error_message"] == "authentication failed"

    def test_write_creates_valid_json(self, tmp_path):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.5, 10, "stop")
        _build_kwargs = dict(
            task="t", model="m", provider="deepseek", session_id=None, settings={"yolo": False},
            outcome="success", answer="a", exit_code=0, rounds=1,
        )
        rc.finalize(**_build_kwargs)
        out = tmp_path / "report.json"
        rc.write(str(out))
        data = json.loads(out.read_text())
        assert data["settings"] == {"yolo": False}
        assert data["timeline"][0]["type"] == "llm_call"


# ---------------------------------------------------------------------------
# CLI validation
# ---------------------------------------------------------------------------


class TestReportCLIValidation:
    def test_report_flag_parsed(self):
        args = agent.build_parser().parse_args(["--report", "/tmp/out.json", "hello"])
        assert args.report == "/tmp/out.json"

    def test_report_default_none(self):
        assert agent.build_parser().parse_args(["hello"]).report is None

    @pytest.mark.parametrize(
        "argv",
        [["--repl", "--report", "out.json", "hello"], ["--report", "out.json"]],
    )
    def test_report_needs_one_shot_question(self, argv, monkeypatch):
        monkeypatch.setattr("sys.argv", ["scrivo", *argv])
        with pytest.raises(SystemExit) as exc_info:
            agent.main()
        assert exc_info.value.code == 2


# ---------------------------------------------------------------------------
# End-to-end through main()
# ---------------------------------------------------------------------------


def _fake_transport(*responses):
    remaining = list(responses)

    def transport(messages, **kwargs):
        response = remaining.pop(0)
        for item in response:
            if isinstance(item, Exception):
                raise item
            yield StreamChunk("content", item)

    return transport


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")
    monkeypatch.setattr(agent, "estimate_tokens", lambda messages: 100)
    work = tmp_path / "work"
    work.mkdir()
    return work


def _run_main(monkeypatch, work, report_path, *extra):
    monkeypatch.setattr(
        "sys.argv",
        ["scrivo", "-q", "--base-dir", str(work), "--report", str(report_path), *extra],
    )
    with pytest.raises(SystemExit) as exc_info:
        agent.main()
    return exc_info.value.code, json.loads(report_path.read_text())


class TestReportEndToEnd:
    def test_success(self, cli_env, tmp_path, monkeypatch):
        monkeypatch.setattr(
            agent,
            "stream_completion",
            _fake_transport(["TOOL: list_files .\n"], ["The directory is empty."]),
        )
        code, report = _run_main(monkeypatch, cli_env, tmp_path / "r.json", "what is here?")
        assert code == 0
        assert report["result"]["outcome"] == "success"
        assert report["result"]["answer"] == "The directory is empty."
        assert report["stats"]["rounds"] == 2
        assert report["stats"]["tool_calls_total"] == 1
        assert report["model"] == "deepseek-chat"
        assert report["session_id"]

    def test_exhausted_exits_2(self, cli_env, tmp_path, monkeypatch):
        monkeypatch.setattr(
            agent, "stream_completion", _fake_transport(["TOOL: list_files .\n"])
        )
        code, report = _run_main(
            monkeypatch, cli_env, tmp_path / "r.json", "--max-rounds", "1", "go"
        )
        assert code == 2
        assert report["result"]["outcome"] == "exhausted"
        assert report["result"]["exit_code"] == 2

    def test_transport_error_exits_1(self, cli_env, tmp_path, monkeypatch):
        monkeypatch.setattr(
            agent,
            "stream_completion",
            _fake_transport(["partial", TransportError("could not reach model service")]),
        )
        code, report = _run_main(monkeypatch, cli_env, tmp_path / "r.json", "go")
        assert code == 1
        assert report["result"]["outcome"] == "error"
        assert "could not reach" in report["result"]["error_message"]
        assert report["stats"]["llm_calls"] == 1
