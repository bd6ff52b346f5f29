"""Module entrypoint for ``python -m stage_orchestrator``."""

from __future__ import annotations

from stage_orchestrator.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
