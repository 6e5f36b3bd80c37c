"""Command-line surface: argument routing and plain-text rendering."""

from autodispatch.ui.cli import CLIError, build_parser, run_cli
from autodispatch.ui.render import CLIRenderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "run_cli"]
