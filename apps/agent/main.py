"""Profiling agent service.

Arms the session controller and serves the configured triggers until SIGINT
or SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal

import structlog

from controller.agent import ProfilingAgent
from core.config import Config, apply_env_overrides, load_config
from core.logging import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="On-demand profiling agent")
    parser.add_argument(
        "--config-root",
        default=".",
        help="Directory containing config/ (defaults to current working directory)",
    )
    return parser


async def _run(cfg: Config) -> None:
    log = structlog.get_logger("apps.agent")
    agent = ProfilingAgent.from_config(cfg)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    try:
        if not agent.start():
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        log.info("agent_running", pid=os.getpid(), triggers=agent.active_triggers)
        try:
            await stop_event.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
    finally:
        # signal handlers are restored from the main thread
        agent.stop()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    cfg = load_config(args.config_root)
    setup_logging(cfg.logging.level, cfg.logging.json_output, cfg.logging.log_dir)
    cfg = apply_env_overrides(cfg, os.environ)

    try:
        asyncio.run(_run(cfg))
    except KeyboardInterrupt:  # pragma: no cover
        return 0
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
