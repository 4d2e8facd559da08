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
# Review for correctness and security.

"""
Command-line interface for LatProbe.

This module contains the main entry point, command-line argument handling and
the interactive loop that feeds scheduler updates to the terminal renderer.
"""

import argparse
import contextlib
import logging
import os
import queue
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from latprobe.config import (
    DEFAULT_CONFIG_PATH,
    LOG_LEVELS,
    ConfigStore,
    ProbeConfig,
    build_config,
    load_config,
)
from latprobe.input_keys import read_key, terminal_cbreak_mode
from latprobe.probe_runner import ProbeRunner
from latprobe.scheduler import Scheduler
from latprobe.stats import build_summary_suffix, format_latency
from latprobe.ui_render import (
    build_display_lines,
    get_terminal_size,
    prepare_terminal_for_exit,
    render_display,
    render_help_view,
)

logger = logging.getLogger(__name__)

TARGET_PRESETS = ("google.com", "1.1.1.1", "8.8.8.8")
INTERVAL_PRESETS = (0.5, 1.0, 2.0, 5.0)
KEY_POLL_SECONDS = 0.05
HOST_ENTRY_PROMPT = "Target host (Enter to apply, Esc to cancel): "

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _configure_logging(log_level: str, log_file: Optional[str], console: bool = True) -> None:
    """Configure logging handlers for CLI execution."""
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.insert(0, logging.FileHandler(os.path.expanduser(log_file), encoding="utf-8"))
    if not handlers:
        handlers.append(logging.NullHandler())
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


# Hardcoded defaults for config-overridable fields.
# Applied after config merging for any field still set to None.
_HARDCODED_DEFAULTS: Dict[str, Any] = ProbeConfig()._asdict()


def _apply_config_to_args(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    """
    Overlay config file values onto a parsed argument namespace.

    Only fields that are still ``None`` (i.e. not explicitly set on the CLI)
    are updated.

    Args:
        args: Namespace returned by ``argparse.ArgumentParser.parse_args()``.
        config: Dictionary of values loaded from the config file.
    """
    for key, value in config.items():
        if hasattr(args, key) and getattr(args, key) is None:
            setattr(args, key, value)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="LatProbe - Periodically measure round-trip latency to a host",
        epilog=f"Settings are read from {DEFAULT_CONFIG_PATH} unless --no-config is given. "
        "Target and interval changes made with the t/i keys are saved back to it.",
    )
    parser.add_argument("host", nargs="?", default=None, help="Host to probe (default: 1.1.1.1)")
    parser.add_argument(
        "-i",
        "--interval",
        type=float,
        default=None,
        help="Interval in seconds between probes (default: 1.0, range: 0.1-60.0)",
    )
    parser.add_argument(
        "-W",
        "--probe-deadline-ms",
        type=int,
        default=None,
        help="Deadline in milliseconds passed to the probe utility (default: 1000)",
    )
    parser.add_argument(
        "-T",
        "--hard-timeout",
        type=float,
        default=None,
        help="Seconds before a hung probe process is terminated (default: 3.0)",
    )
    parser.add_argument(
        "--grace-period",
        type=float,
        default=None,
        help="Seconds between terminate and kill for a hung probe (default: 0.5)",
    )
    parser.add_argument(
        "-b",
        "--probe-binary",
        type=str,
        default=None,
        help="Probe executable (default: ping)",
    )
    parser.add_argument(
        "-n",
        "--history-size",
        type=int,
        default=None,
        help="Number of samples kept for the sparkline (default: 120)",
    )
    parser.add_argument(
        "-c",
        "--count",
        type=int,
        default=0,
        help="Stop after this many probes (default: 0 for infinite)",
    )
    parser.add_argument(
        "-p",
        "--plain",
        action="store_true",
        help="Print one line per probe instead of the interactive view",
    )
    parser.add_argument(
        "-C",
        "--color",
        action="store_true",
        default=False,
        help="Enable colored output (green < 30 ms, yellow <= 100 ms, red otherwise)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default=None,
        choices=list(LOG_LEVELS),
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Optional log file path for persistent logging",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=f"Config file path (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--no-config",
        action="store_true",
        default=False,
        help="Skip loading and saving the config file",
    )
    return parser


def handle_options(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse and validate command-line arguments."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load and apply config file unless --no-config was given
    if not args.no_config:
        try:
            config = load_config(args.config)
            _apply_config_to_args(args, config)
        except ValueError as exc:
            parser.error(str(exc))

    # Apply hardcoded defaults for any config-overridable field still at None
    for field, default in _HARDCODED_DEFAULTS.items():
        if getattr(args, field, None) is None:
            setattr(args, field, default)

    if args.count < 0:
        parser.error("--count must be a non-negative number (0 for infinite).")
    try:
        args.probe_config = build_config(vars(args))
    except ValueError as exc:
        parser.error(str(exc))
    return args


def _cycle(current: Any, presets: Sequence[Any]) -> Any:
    """Return the preset after current, or the first preset if current is not one of them."""
    if current in presets:
        return presets[(presets.index(current) + 1) % len(presets)]
    return presets[0]


def _target_rotation(state: Dict[str, Any]) -> Tuple[str, ...]:
    """Targets cycled by the t key: the presets plus the custom host, if any."""
    custom_host = state["custom_host"]
    if custom_host and custom_host not in TARGET_PRESETS:
        return TARGET_PRESETS + (custom_host,)
    return TARGET_PRESETS


def _handle_host_entry(key: str, scheduler: Scheduler, state: Dict[str, Any]) -> None:
    """Edit the custom target line; Enter applies it, Escape cancels."""
    state["updated"] = True
    if key == "interrupt":
        state["host_entry"] = None
        state["running"] = False
        return
    if key == "escape":
        state["host_entry"] = None
        state["status_message"] = "Target unchanged"
        return
    if key == "enter":
        entered = state["host_entry"]
        state["host_entry"] = None
        try:
            config = scheduler.set_host(entered)
        except ValueError as e:
            state["status_message"] = f"Target unchanged: {e}"
            return
        if config.host not in TARGET_PRESETS:
            state["custom_host"] = config.host
        state["status_message"] = f"Target: {config.host}"
        return
    if key == "backspace":
        state["host_entry"] = state["host_entry"][:-1]
    elif len(key) == 1 and key.isprintable():
        state["host_entry"] += key
    state["status_message"] = HOST_ENTRY_PROMPT + state["host_entry"]


def _handle_user_input(key: str, scheduler: Scheduler, state: Dict[str, Any]) -> None:
    """Process one keyboard input event."""
    if state["host_entry"] is not None:
        _handle_host_entry(key, scheduler, state)
        return
    if state["show_help"]:
        state["show_help"] = False
        state["updated"] = True
        if key not in ("q", "Q"):
            return
    if key in ("q", "Q", "interrupt"):
        state["running"] = False
    elif key in ("h", "H"):
        state["show_help"] = True
        state["updated"] = True
    elif key == "r":
        scheduler.reset()
        state["status_message"] = "Statistics reset"
    elif key == "t":
        config = scheduler.set_host(_cycle(scheduler.host, _target_rotation(state)))
        state["status_message"] = f"Target: {config.host}"
    elif key == "/":
        state["host_entry"] = ""
        state["status_message"] = HOST_ENTRY_PROMPT
    elif key == "i":
        config = scheduler.set_interval(_cycle(scheduler.interval, INTERVAL_PRESETS))
        state["status_message"] = f"Interval: {config.interval:g}s"
    elif key == "c":
        if not state["color_supported"]:
            state["status_message"] = "Color output unavailable (no TTY)"
        else:
            state["use_color"] = not state["use_color"]
            state["status_message"] = f"Color: {'on' if state['use_color'] else 'off'}"
    state["updated"] = True


def _apply_update(state: Dict[str, Any], update: Any) -> None:
    """Store one renderer update; updates with history come from completed probes."""
    stats, history, has_connection = update
    state["stats"] = stats
    state["history"] = history
    state["has_connection"] = has_connection
    state["updated"] = True
    if history:
        state["completed"] += 1
        if state["plain"]:
            _print_plain_line(state)


def _drain_updates(state: Dict[str, Any]) -> None:
    """Apply every pending renderer update."""
    while True:
        try:
            update = state["update_queue"].get_nowait()
        except queue.Empty:
            return
        _apply_update(state, update)


def _print_plain_line(state: Dict[str, Any]) -> None:
    stats = state["stats"]
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    current = format_latency(stats.current) if state["has_connection"] else "connection lost"
    print(f"{timestamp} {state['host']} {current}{build_summary_suffix(stats)}", flush=True)


def _render_frame(scheduler: Scheduler, state: Dict[str, Any]) -> None:
    term_size = get_terminal_size(fallback=(80, 24))
    if state["show_help"]:
        lines = render_help_view(term_size.columns, _target_rotation(state), INTERVAL_PRESETS)
    else:
        lines = build_display_lines(
            scheduler.host,
            scheduler.interval,
            state["stats"],
            state["history"],
            state["has_connection"],
            term_size.columns,
            use_color=state["use_color"],
            status_message=state["status_message"],
        )
    render_display(lines[: max(1, term_size.lines)])
    state["updated"] = False


def run(args: argparse.Namespace) -> int:
    """Run the probe loop until quit, Ctrl-C, or --count probes have completed."""
    config: ProbeConfig = args.probe_config
    interactive = not args.plain and sys.stdin.isatty() and sys.stdout.isatty()
    _configure_logging(config.log_level, config.log_file, console=not interactive)
    logger.info("=== LatProbe started (PID %d) ===", os.getpid())

    store = None if args.no_config else ConfigStore(args.config)
    runner = ProbeRunner(
        binary=config.probe_binary,
        deadline_ms=config.probe_deadline_ms,
        hard_timeout=config.hard_timeout,
        grace_period=config.grace_period,
    )
    update_queue: "queue.Queue[Any]" = queue.Queue()
    scheduler = Scheduler(
        runner,
        config=config,
        renderer=lambda stats, history, has_connection: update_queue.put((stats, history, has_connection)),
        store=store,
    )
    stats, history = scheduler.snapshot()
    state: Dict[str, Any] = {
        "update_queue": update_queue,
        "stats": stats,
        "history": history,
        "has_connection": False,
        "host": config.host,
        "plain": not interactive,
        "running": True,
        "show_help": False,
        "status_message": None,
        "host_entry": None,
        "custom_host": None if config.host in TARGET_PRESETS else config.host,
        "color_supported": sys.stdout.isatty(),
        "use_color": args.color and sys.stdout.isatty(),
        "completed": 0,
        "updated": True,
    }

    if not interactive:
        print(f"LatProbe - Probing {config.host} every {config.interval:g}s " f"(hard timeout {config.hard_timeout:g}s)")

    scheduler.start()
    try:
        with terminal_cbreak_mode() if interactive else contextlib.nullcontext():
            while state["running"] and (args.count == 0 or state["completed"] < args.count):
                if interactive:
                    key = read_key(KEY_POLL_SECONDS)
                    if key:
                        _handle_user_input(key, scheduler, state)
                    _drain_updates(state)
                    if state["updated"]:
                        _render_frame(scheduler, state)
                else:
                    try:
                        update = update_queue.get(timeout=KEY_POLL_SECONDS)
                    except queue.Empty:
                        continue
                    _apply_update(state, update)
    except KeyboardInterrupt:
        state["running"] = False
    finally:
        scheduler.shutdown(wait=False)

    if interactive:
        prepare_terminal_for_exit()
    final_stats, _ = scheduler.snapshot()
    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    print(f"{scheduler.host:30} {final_stats.count} replies{build_summary_suffix(final_stats)}")
    logger.info("=== LatProbe stopped ===")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entrypoint for the CLI - parses arguments and runs the application."""
    args = handle_options(argv)
    sys.exit(run(args))
