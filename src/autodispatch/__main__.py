"""Module execution entrypoint for ``python -m autodispatch``."""

from __future__ import annotations

from autodispatch.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
