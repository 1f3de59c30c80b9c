"""User interface components for remedy."""

from remedy.ui.cli import cli
from remedy.ui.printer import Printer

__all__ = [
    "cli",
    "Printer",
]
