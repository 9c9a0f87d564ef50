"""Module entrypoint for ``python -m stagegate``."""

from __future__ import annotations

from stagegate.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
