"""
Rich Output Utilities
=====================

Terminal output for Darwin Forge using the Rich library.
Provides the themed console, message helpers, tables and logging setup.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List

from rich.console import Console
from rich.logging import RichHandler
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class DarwinColors:
    """Darwin Forge color palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    accent: str = "#A3E635"    # lime accent
    cool: str = "#22D3EE"      # cyan accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"        # success green
    warn: str = "#FBBF24"      # warning yellow
    err: str = "#EF4444"       # error red


def darwin_theme(colors: DarwinColors = DarwinColors()) -> Theme:
    """
    Rich Theme for the Darwin Forge CLI.

    Style names are semantic so they can be used everywhere:
      console.print("...", style="df.ok")
    """
    return Theme(
        {
            "df.border": f"{colors.cool}",
            "df.accent": f"bold {colors.accent}",
            "df.muted": f"{colors.dim}",
            "df.text": f"{colors.ink}",

            "df.ok": f"bold {colors.ok}",
            "df.warn": f"bold {colors.warn}",
            "df.err": f"bold {colors.err}",
            "df.info": f"{colors.cool}",

            "df.key": f"{colors.steel}",
            "df.value": f"{colors.ink}",
            "df.number": f"bold {colors.accent}",
            "df.path": f"{colors.cool}",
            "df.timestamp": f"{colors.dim}",

            "df.table.header": f"bold {colors.cool}",

            # Risk levels
            "df.risk.low": f"{colors.ok}",
            "df.risk.medium": f"{colors.warn}",
            "df.risk.high": f"bold {colors.err}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠️",
    "info": "ℹ",
    "bullet": "•",
    "arrow_right": "→",
    "undo": "↺",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "arrow_right": "->",
    "undo": "<-",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=darwin_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[df.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[df.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[df.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[df.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    """Print muted/secondary text."""
    console.print(f"[df.muted]{message}[/]")


# =============================================================================
# Headers & Sections
# =============================================================================

def print_header(title: str, style: str = "df.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


def print_subheader(title: str, style: str = "df.info") -> None:
    """Print a smaller subsection header."""
    console.print(f"\n[{style}]{icon('arrow_right')} {title}[/]")


# =============================================================================
# Data Display Functions
# =============================================================================

def print_key_value_table(data: Dict[str, Any]) -> None:
    """Print key-value pairs as a borderless two-column table."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="df.key")
    table.add_column("Value", style="df.value")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


def create_table(*, columns: List[str]) -> Table:
    """Create a table in the Darwin style with one column per name."""
    table = Table(header_style="df.table.header", border_style="df.border")
    for col in columns:
        table.add_column(col)
    return table


def print_table(table: Table) -> None:
    console.print(table)


def risk_style(risk: str) -> str:
    """Get the style name for a proposal risk level."""
    return f"df.risk.{risk}" if risk in ("low", "medium", "high") else "df.text"


# =============================================================================
# Spinners
# =============================================================================

@contextmanager
def spinner(message: str) -> Iterator[Status]:
    """Show a spinner while the block runs."""
    with console.status(f"[df.accent]{message}[/]", spinner="dots") as status:
        yield status


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging()
        logging.getLogger(__name__).info("Rollback complete")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
        force=True,
    )
