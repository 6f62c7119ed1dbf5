from __future__ import annotations

from pathlib import Path

import yaml  # type: ignore[import-untyped]

from apps.agent.main import build_parser, main


def test_parser_defaults() -> None:
    args = build_parser().parse_args([])

    assert args.config_root == "."


def test_disabled_agent_exits_cleanly(tmp_path: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    data = {
        "app": {"name": "svc"},
        "logging": {"log_dir": str(tmp_path / "logs")},
        "agent": {"enabled": False},
        "export": {"journal_path": str(tmp_path / "snapshots.ndjson")},
    }
    (config_dir / "base.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")

    assert main(["--config-root", str(tmp_path)]) == 0
    assert (tmp_path / "logs" / "agent.ndjson").exists()
