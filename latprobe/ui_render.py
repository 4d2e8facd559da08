#!/usr/bin/env python3
# Copyright 2025 icecake0141
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# This file was created or modified with the assistance of an AI (Large Language Model).
# Review required for correctness, security, and licensing.

"""
LatProbe UI Rendering Module

This module turns stats and history snapshots into terminal lines: a colored
current-latency badge, a sparkline of recent samples with visible gaps for
failed probes, the Current/Average/Min/Max summary, and the help view.
"""

import os
import re
import sys
from typing import List, Optional, Sequence, Tuple

from latprobe.stats import StatsSnapshot, build_summary_lines

ANSI_RESET = "\x1b[0m"
ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;]*m")
LATENCY_COLORS = {
    "good": "\x1b[32m",  # Green
    "fair": "\x1b[33m",  # Yellow
    "poor": "\x1b[31m",  # Red
    "lost": "\x1b[41;97m",  # White on red
}
GOOD_LATENCY_MS = 30.0
FAIR_LATENCY_MS = 100.0
SPARK_CHARS = "▁▂▃▄▅▆▇█"
SPARK_GAP = "╳"
# Sparkline scale never goes below this many milliseconds so small jitter stays flat
SPARK_MIN_SCALE_MS = 100.0
CONNECTION_LOST_LABEL = "CONNECTION LOST"

# Global state for rendering
LAST_RENDER_LINES: Optional[List[str]] = None


# ============================================================================
# ANSI/Text Utility Functions
# ============================================================================


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from text."""
    return ANSI_ESCAPE_RE.sub("", text)


def visible_len(text: str) -> int:
    """Get the visible length of text (excluding ANSI codes)."""
    return len(strip_ansi(text))


def pad_visible(text: str, width: int) -> str:
    """Pad or cut text to a visible width, preserving ANSI codes."""
    result = []
    visible_count = 0
    index = 0
    while index < len(text) and visible_count < width:
        if text[index] == "\x1b":
            match = ANSI_ESCAPE_RE.match(text, index)
            if match:
                result.append(match.group(0))
                index = match.end()
                continue
        result.append(text[index])
        index += 1
        visible_count += 1
    truncated = "".join(result)
    if "\x1b[" in truncated and not truncated.endswith(ANSI_RESET):
        truncated += ANSI_RESET
    return truncated + " " * max(0, width - visible_count)


def latency_level(latency: Optional[float]) -> str:
    """
    Classify a latency for coloring.

    Returns:
        'good' below 30 ms, 'fair' up to 100 ms, 'poor' above, 'lost' for None
    """
    if latency is None:
        return "lost"
    if latency < GOOD_LATENCY_MS:
        return "good"
    if latency <= FAIR_LATENCY_MS:
        return "fair"
    return "poor"


def colorize_text(text: str, level: Optional[str], use_color: bool) -> str:
    """Apply color to text based on latency level."""
    if not use_color or not level:
        return text
    color = LATENCY_COLORS.get(level)
    if not color:
        return text
    return f"{color}{text}{ANSI_RESET}"


# ============================================================================
# Graph Utilities
# ============================================================================


def resample_values(values: Sequence[Optional[float]], target_width: int) -> List[Optional[float]]:
    """Resample values to fit a target width."""
    if target_width <= 0:
        return []
    if not values:
        return []
    if len(values) <= target_width:
        return list(values)
    if target_width == 1:
        return [values[-1]]

    last_index = len(values) - 1
    return [values[round(i * last_index / (target_width - 1))] for i in range(target_width)]


def build_sparkline(values: Sequence[Optional[float]], width: Optional[int] = None) -> str:
    """
    Build a sparkline from history samples.

    Failed samples render as a gap marker. The vertical scale spans the
    smallest sample to max(largest sample, 100 ms).

    Args:
        values: Samples, oldest first
        width: Optional maximum number of characters

    Returns:
        Sparkline string (empty when there are fewer than two samples)
    """
    if width is not None:
        values = resample_values(values, width)
    if len(values) < 2:
        return ""
    numeric_values = [value for value in values if value is not None]
    if not numeric_values:
        return SPARK_GAP * len(values)

    min_val = min(numeric_values)
    max_val = max(max(numeric_values), SPARK_MIN_SCALE_MS)
    span = max_val - min_val
    if span == 0:
        span = 1.0

    chars = []
    for value in values:
        if value is None:
            chars.append(SPARK_GAP)
            continue
        idx = round((value - min_val) / span * (len(SPARK_CHARS) - 1))
        chars.append(SPARK_CHARS[max(0, min(len(SPARK_CHARS) - 1, idx))])
    return "".join(chars)


def colorize_sparkline(sparkline: str, use_color: bool) -> str:
    """Highlight gap markers in red."""
    if not use_color or SPARK_GAP not in sparkline:
        return sparkline
    return sparkline.replace(SPARK_GAP, f"{LATENCY_COLORS['poor']}{SPARK_GAP}{ANSI_RESET}")


# ============================================================================
# Display Building Functions
# ============================================================================


def build_badge(snapshot: StatsSnapshot, use_color: bool) -> str:
    """Build the headline badge: rounded current latency, or the lost-connection label."""
    level = latency_level(snapshot.current)
    if snapshot.current is None:
        return colorize_text(f" {CONNECTION_LOST_LABEL} ", level, use_color)
    return colorize_text(f"{snapshot.current:.0f} ms", level, use_color)


def build_display_lines(
    host: str,
    interval: float,
    stats: StatsSnapshot,
    history: Sequence[Optional[float]],
    has_connection: bool,
    width: int,
    use_color: bool = False,
    status_message: Optional[str] = None,
) -> List[str]:
    """
    Build every line of the main view.

    Args:
        host: Current probe target
        interval: Probe interval in seconds
        stats: Latest stats snapshot
        history: Latest history snapshot, oldest first
        has_connection: Whether the last probe produced a reading
        width: Terminal width in columns
        use_color: Whether to emit ANSI colors
        status_message: Optional transient message for the status line

    Returns:
        List of lines, each padded to width
    """
    width = max(1, width)
    if not history:
        badge = "---"
    elif has_connection:
        badge = build_badge(stats, use_color)
    else:
        badge = colorize_text(f" {CONNECTION_LOST_LABEL} ", "lost", use_color)
    sparkline = colorize_sparkline(build_sparkline(history, width=max(1, width - 2)), use_color)
    lines = [
        f"LatProbe - {host} every {interval:g}s",
        "-" * width,
        f"  {badge}",
        f"  {sparkline}",
        "",
    ]
    lines.extend(f"  {line}" for line in build_summary_lines(stats))
    lines.append(f"  Samples: {stats.count} ok / {len(history)} in history")
    lines.append("")
    lines.append(status_message if status_message else "Press h for help, q to quit")
    return [pad_visible(line, width) for line in lines]


def render_help_view(width: int, target_presets: Sequence[str], interval_presets: Sequence[float]) -> List[str]:
    """Render the help view."""
    lines = [
        "LatProbe - Help",
        "-" * max(1, width),
        f"  t: cycle target ({', '.join(target_presets)})",
        "  /: enter a custom target",
        f"  i: cycle interval ({', '.join(f'{value:g}s' for value in interval_presets)})",
        "  r: reset statistics and history",
        "  c: toggle color output",
        "  h: show help (Press any key to close)",
        "  q: quit",
    ]
    return [pad_visible(line, max(1, width)) for line in lines]


def render_display(lines: List[str]) -> None:
    """Render lines to the terminal, redrawing only lines that changed."""
    global LAST_RENDER_LINES  # pylint: disable=global-statement
    if not lines:
        return

    if LAST_RENDER_LINES is None:
        sys.stdout.write("\x1b[2J\x1b[H")
        output_chunks = []
        for index, line in enumerate(lines):
            output_chunks.append(f"\x1b[{index + 1};1H\x1b[2K{line}")
        sys.stdout.write("".join(output_chunks))
        sys.stdout.flush()
        LAST_RENDER_LINES = lines
        return

    max_lines = max(len(LAST_RENDER_LINES), len(lines))
    output_chunks = []
    for index in range(max_lines):
        previous_line = LAST_RENDER_LINES[index] if index < len(LAST_RENDER_LINES) else None
        current_line = lines[index] if index < len(lines) else ""
        if previous_line == current_line and index < len(lines):
            continue
        output_chunks.append(f"\x1b[{index + 1};1H\x1b[2K{current_line}")

    if output_chunks:
        sys.stdout.write("".join(output_chunks))
        sys.stdout.flush()

    LAST_RENDER_LINES = lines


# ============================================================================
# Terminal Utilities
# ============================================================================


def get_terminal_size(fallback: Tuple[int, int] = (80, 24)) -> os.terminal_size:
    """
    Get the terminal size by directly querying the terminal.

    Queries stdout, then stderr, then stdin, so the size follows resizes
    instead of stale COLUMNS/LINES environment variables.

    Args:
        fallback: Tuple of (columns, lines) used when no stream is a terminal

    Returns:
        os.terminal_size with columns and lines attributes
    """
    for stream in (sys.stdout, sys.stderr, sys.stdin):
        try:
            if stream.isatty():
                return os.get_terminal_size(stream.fileno())
        except (AttributeError, ValueError, OSError):
            continue
    return os.terminal_size(fallback)


def prepare_terminal_for_exit() -> None:
    """Prepare the terminal for exit by moving below the rendered area."""
    global LAST_RENDER_LINES  # pylint: disable=global-statement
    if not sys.stdout.isatty():
        return
    rendered = len(LAST_RENDER_LINES) if LAST_RENDER_LINES else 0
    sys.stdout.write(f"\x1b[{rendered + 1};1H\n")
    sys.stdout.flush()
    LAST_RENDER_LINES = None
