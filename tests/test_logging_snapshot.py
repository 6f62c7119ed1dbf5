from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from core.logging import LOG_FILE_NAME, setup_logging


def read_last_line(path: Path) -> str:
    with path.open("r", encoding="utf-8") as fh:
        lines = fh.readlines()
    return lines[-1].strip()


def flush_handlers() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_json_logging_snapshot(tmp_path: Path) -> None:
    logger = setup_logging("INFO", json_output=True, log_dir=tmp_path)

    logger.info("session_started", session_id=1, duration_sec=30.0)
    flush_handlers()

    payload = json.loads(read_last_line(tmp_path / LOG_FILE_NAME))

    assert payload["event"] == "session_started"
    assert payload["session_id"] == 1
    assert payload["duration_sec"] == 30.0
    assert payload["level"] == "info"
    assert "timestamp" in payload


def test_stdlib_records_share_the_pipeline(tmp_path: Path) -> None:
    setup_logging("INFO", json_output=True, log_dir=tmp_path)

    logging.getLogger("third.party").warning("plain message")
    flush_handlers()

    payload = json.loads(read_last_line(tmp_path / LOG_FILE_NAME))
    assert payload["event"] == "plain message"
    assert payload["level"] == "warning"
    assert payload["logger"] == "third.party"


def test_level_filters_records(tmp_path: Path) -> None:
    logger = setup_logging("WARNING", json_output=True, log_dir=tmp_path)

    logger.info("hidden")
    logger.warning("shown")
    flush_handlers()

    lines = (tmp_path / LOG_FILE_NAME).read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["event"] for line in lines] == ["shown"]


def test_console_output_without_log_dir(capsys: pytest.CaptureFixture[str]) -> None:
    logger = setup_logging("INFO", json_output=False)

    logger.info("console_event", k=1)
    flush_handlers()

    err = capsys.readouterr().err
    assert "console_event" in err
    assert "k=1" in err
