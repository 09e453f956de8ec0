"""Formatting helpers for the live runner's console meter."""

from __future__ import annotations

import os

ANSI_GREEN = "\033[32m"
ANSI_RED = "\033[31m"
ANSI_RESET = "\033[0m"
USE_COLOR_DEFAULT = os.getenv("NO_COLOR") is None
BAR_WIDTH = 30


def color_tf(val: bool, *, use_color: bool | None = None) -> str:
    """Return a single-character boolean indicator with optional ANSI color."""
    enabled = USE_COLOR_DEFAULT if use_color is None else use_color
    if not enabled:
        return "T" if val else "F"
    return f"{ANSI_GREEN}T{ANSI_RESET}" if val else f"{ANSI_RED}F{ANSI_RESET}"


def level_bar(level: float, *, scale: float = 100.0, width: int = BAR_WIDTH) -> str:
    """Fixed-width ``#``/``-`` bar for a 0..scale level."""
    if scale <= 0 or width <= 0:
        return ""
    filled = max(0, min(width, int((level / scale) * width)))
    return "#" * filled + "-" * (width - filled)


def meter_line(level: float, threshold: float, state: str, *, use_color: bool | None = None) -> str:
    # Numeric fields are fixed width so the bar does not jitter.
    return (
        f"[meter] loud={level:5.1f} thr={threshold:5.1f} "
        f"above={color_tf(level >= threshold, use_color=use_color)} "
        f"state={state:<23}  |  {level_bar(level)}"
    )


__all__ = [
    "ANSI_GREEN",
    "ANSI_RED",
    "ANSI_RESET",
    "BAR_WIDTH",
    "USE_COLOR_DEFAULT",
    "color_tf",
    "level_bar",
    "meter_line",
]
