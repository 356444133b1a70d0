"""
Tests for the command-line interface, including end-to-end runs that
send SIGTERM to a real cronrunner process.
"""

import io
import json
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import pytest

from cronrunner import cli
from cronrunner.config import ENV_SHUTDOWN_TIMEOUT

REPO_ROOT = Path(__file__).parent


@pytest.fixture(autouse=True)
def reset_logging(monkeypatch):
    for name in ("CRONRUNNER_SHUTDOWN_TIMEOUT", "CRONRUNNER_LOG_LEVEL",
                 "CRONRUNNER_LOG_FORMAT", "CRONRUNNER_LOG_FILE"):
        monkeypatch.delenv(name, raising=False)
    yield
    root = logging.getLogger()
    for handler in cli._installed_handlers:
        root.removeHandler(handler)
    cli._installed_handlers.clear()


def test_version(capsys):
    assert cli.main(["version"]) == 0

    out = capsys.readouterr().out.splitlines()
    assert out[0] == "cronrunner version 0.1.0"
    assert out[1].startswith("commit: ")
    assert out[2].startswith("built: ")
    assert out[3].startswith("built by: ")


@pytest.mark.parametrize("argv", [[], ["* * * * *"]])
def test_missing_arguments_exit_1(argv, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)

    assert excinfo.value.code == 1
    assert "usage:" in capsys.readouterr().err


def test_bad_option_exits_1():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--log-format", "xml", "* * * * *", "echo"])

    assert excinfo.value.code == 1


def test_invalid_schedule_exits_1(capsys):
    assert cli.main(["* * * * 8", "echo"]) == 1

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert lines[-1]["msg"] == "failed to create scheduler"
    assert lines[-1]["level"] == "ERROR"
    assert "8" in lines[-1]["error"]


def test_invalid_env_timeout_exits_1(monkeypatch, capsys):
    monkeypatch.setenv(ENV_SHUTDOWN_TIMEOUT, "soon")

    assert cli.main(["* * * * *", "echo"]) == 1
    assert "invalid configuration" in capsys.readouterr().err


def test_command_arguments_pass_through():
    args = cli.build_parser().parse_args(
        ["--log-format", "text", "*/5 * * * *", "echo", "-n", "--verbose", "hi"]
    )

    assert args.schedule == "*/5 * * * *"
    assert args.command == "echo"
    assert args.args == ["-n", "--verbose", "hi"]
    assert args.verbose is False


def test_load_config_command_line_wins(monkeypatch):
    monkeypatch.setenv(ENV_SHUTDOWN_TIMEOUT, "10")
    parser = cli.build_parser()

    config = cli.load_config(parser.parse_args(["* * * * *", "echo"]))
    assert config.shutdown_timeout == 10.0

    config = cli.load_config(
        parser.parse_args(["--shutdown-timeout", "none", "-v", "* * * * *", "echo"])
    )
    assert config.shutdown_timeout is None
    assert config.log_level == "DEBUG"


def test_json_formatter_includes_extra_fields():
    record = logging.makeLogRecord({
        "msg": "executing command",
        "levelname": "INFO",
        "levelno": logging.INFO,
        "schedule": "* * * * *",
        "command": "echo",
        "command_args": ["hi"],
    })

    payload = json.loads(cli.json_formatter().format(record))

    assert payload["msg"] == "executing command"
    assert payload["level"] == "INFO"
    assert payload["schedule"] == "* * * * *"
    assert payload["command_args"] == ["hi"]
    assert "time" in payload
    assert "event" not in payload


def test_json_formatter_skips_text_from_other_formatters():
    record = logging.makeLogRecord({"msg": "hello", "levelname": "INFO", "answer": 42})
    logging.Formatter("%(asctime)s %(message)s").format(record)

    payload = json.loads(cli.json_formatter().format(record))

    assert payload["answer"] == 42
    assert "message" not in payload
    assert "asctime" not in payload


def test_json_formatter_renders_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.makeLogRecord({
            "msg": "run failed",
            "levelname": "ERROR",
            "exc_info": sys.exc_info(),
        })

    payload = json.loads(cli.json_formatter().format(record))

    assert payload["level"] == "ERROR"
    assert "RuntimeError: boom" in payload["exception"]


def test_text_formatter_appends_fields():
    record = logging.makeLogRecord({
        "msg": "new cron scheduled",
        "levelname": "INFO",
        "schedule": "@hourly",
    })

    line = cli.text_formatter().format(record)

    assert "INFO" in line
    assert "new cron scheduled" in line
    assert line.rstrip().endswith("schedule=@hourly")


def test_setup_logging_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "cronrunner.log"
    cli.setup_logging("INFO", "json", str(log_file), stream=io.StringIO())

    logging.getLogger("cronrunner.test").info("hello", extra={"answer": 42})
    for handler in cli._installed_handlers:
        handler.flush()

    payload = json.loads(log_file.read_text().splitlines()[-1])
    assert payload["msg"] == "hello"
    assert payload["answer"] == 42


def _start_runner(tmp_path, *argv):
    output = open(tmp_path / "out.log", "w")
    process = subprocess.Popen(
        [sys.executable, "-m", "cronrunner", *argv],
        cwd=REPO_ROOT,
        stdout=output,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )
    return process, output


def _kill_group(process):
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_sigterm_waits_for_running_job(tmp_path):
    """A running job finishes before the process exits cleanly."""
    process, output = _start_runner(
        tmp_path,
        "--shutdown-timeout", "30",
        "@every 1s",
        sys.executable, "-c", "import time; time.sleep(1.5); print('job done')",
    )
    try:
        time.sleep(3.5)
        process.send_signal(signal.SIGTERM)
        assert process.wait(timeout=20) == 0
    finally:
        output.close()
        _kill_group(process)

    out = (tmp_path / "out.log").read_text()
    assert "new cron scheduled" in out
    assert "executing command" in out
    assert "stopping scheduler" in out
    assert "scheduler stopped successfully" in out
    assert "job done" in out


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_sigterm_forced_exit_after_timeout(tmp_path):
    """A job outliving the shutdown timeout is abandoned, exit code stays 0."""
    process, output = _start_runner(
        tmp_path,
        "--shutdown-timeout", "0.5",
        "@every 1s",
        sys.executable, "-c", "import time; time.sleep(60)",
    )
    try:
        time.sleep(3.0)
        process.send_signal(signal.SIGTERM)
        start = time.monotonic()
        assert process.wait(timeout=15) == 0
        assert time.monotonic() - start < 10
    finally:
        output.close()
        _kill_group(process)

    records = [json.loads(line) for line in (tmp_path / "out.log").read_text().splitlines()]
    warnings = [r for r in records if r["level"] == "WARNING"]
    assert any("shutdown timed out" in r["msg"] for r in warnings)
    assert not any(r["msg"] == "command execution error" for r in records)
