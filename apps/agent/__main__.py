"""Entry point for the profiling agent module."""

from __future__ import annotations

from apps.agent.main import main

if __name__ == "__main__":
    raise SystemExit(main())
