"""
Rich Output Utilities
=====================

Terminal output for the hyle CLI using the Rich library. Library modules
log through ``logging``; only the CLI prints, and it prints through here.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.rule import Rule
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class HyleColors:
    """hyle palette in hex for truecolor terminals."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    clay: str = "#D97706"      # warm accent
    sky: str = "#38BDF8"       # cool accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"
    warn: str = "#FBBF24"
    err: str = "#EF4444"


def hyle_theme(colors: HyleColors = HyleColors()) -> Theme:
    """
    Rich Theme for the hyle CLI.

    Style names are semantic:
      console.print("...", style="hy.ok")
    """
    return Theme(
        {
            "hy.accent": f"bold {colors.clay}",
            "hy.border": f"{colors.sky}",
            "hy.muted": f"{colors.dim}",
            "hy.text": f"{colors.ink}",

            "hy.ok": f"bold {colors.ok}",
            "hy.warn": f"bold {colors.warn}",
            "hy.err": f"bold {colors.err}",
            "hy.info": f"{colors.sky}",

            "hy.key": f"{colors.steel}",
            "hy.value": f"{colors.ink}",
            "hy.number": f"bold {colors.clay}",
            "hy.path": f"{colors.sky}",

            "hy.table.header": f"bold {colors.sky}",

            # Risk tiers
            "hy.tier.safe": f"{colors.ok}",
            "hy.tier.cautious": f"{colors.sky}",
            "hy.tier.confirm": f"bold {colors.warn}",
            "hy.tier.dangerous": f"bold {colors.err}",
        }
    )


# =============================================================================
# Icons
# =============================================================================

_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "blocked": "⛔",
    "warning": "⚠",
    "info": "ℹ",
    "arrow_right": "→",
    "lightning": "⚡",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "blocked": "[BLOCKED]",
    "warning": "[!]",
    "info": "[i]",
    "arrow_right": "->",
    "lightning": "->",
}


def _can_use_unicode() -> bool:
    if os.name != "nt":
        return True
    try:
        "✓✗•".encode(sys.stdout.encoding or "utf-8")
        return True
    except (UnicodeEncodeError, LookupError):
        return False


_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=hyle_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    console.print(f"[hy.ok]{icon('check')} {escape(message)}[/]")


def print_error(message: str) -> None:
    console.print(f"[hy.err]{icon('cross')} {escape(message)}[/]")


def print_warning(message: str) -> None:
    console.print(f"[hy.warn]{icon('warning')} {escape(message)}[/]")


def print_info(message: str) -> None:
    console.print(f"[hy.info]{icon('info')} {escape(message)}[/]")


def print_muted(message: str) -> None:
    console.print(f"[hy.muted]{escape(message)}[/]")


# =============================================================================
# Headers & Data Display
# =============================================================================

def print_header(title: str, style: str = "hy.accent") -> None:
    """Print a section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "hy.border",
) -> None:
    """Print key-value pairs as a borderless table, optionally in a panel."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="hy.key")
    table.add_column("Value", style="hy.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    border_style: str = "hy.border",
) -> Table:
    """Create a styled Rich Table."""
    table = Table(
        title=title,
        header_style="hy.table.header",
        border_style=border_style,
        title_style="hy.accent",
    )
    for col in columns or []:
        table.add_column(col)
    return table


def print_table(table: Table) -> None:
    console.print(table)


# =============================================================================
# Agent Loop Display
# =============================================================================

def print_agent_token(text: str) -> None:
    """Stream model output as it arrives."""
    console.print(text, end="", highlight=False, markup=False)


def print_tool_call(name: str, preview: str, tier: str) -> None:
    console.print(f"\n  [hy.accent]{icon('lightning')} {name}[/] [hy.tier.{tier}]({tier})[/]")
    if preview:
        console.print(f"     [hy.muted]{escape(preview)}[/]", highlight=False)


def print_tool_outcome(status: str, detail: str = "") -> None:
    if status == "done":
        console.print(f"     [hy.ok]{icon('check')} Done[/]")
    elif status == "blocked":
        console.print(f"     [hy.err]{icon('blocked')} BLOCKED[/] [hy.muted]{escape(detail[:100])}[/]")
    else:
        console.print(f"     [hy.err]{icon('cross')} {status}[/] [hy.muted]{escape(detail[:200])}[/]")


def print_decision(state: str, reason: str) -> None:
    styles = {
        "complete": "hy.ok",
        "aborted": "hy.err",
        "stuck": "hy.err",
        "max_iter": "hy.warn",
        "pause_check": "hy.warn",
        "pause_confirm": "hy.warn",
    }
    style = styles.get(state, "hy.info")
    console.print()
    console.print(Panel(f"[{style}]{state.upper()}[/]\n[hy.muted]{escape(reason)}[/]", border_style=style))


def confirm(message: str, *, default: bool = False) -> bool:
    """Ask for yes/no confirmation."""
    return Confirm.ask(f"[hy.accent]{message}[/]", default=default, console=console)


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Route Python logging through Rich.

    Usage:
        setup_rich_logging(logging.DEBUG)
        logging.getLogger("hyle").info("shown with Rich formatting")
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
