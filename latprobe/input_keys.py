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
Keyboard input handling for LatProbe using the readchar library.

Keys are polled without blocking so the main loop can keep redrawing while
no key is pressed.
"""

import contextlib
import select
import sys
import termios
import tty
from typing import Generator, Optional

import readchar
import readchar.key

# Named keys returned by read_key() for non-printable input
_KEY_NAMES = {
    readchar.key.ESC: "escape",
    readchar.key.ENTER: "enter",
    readchar.key.CTRL_C: "interrupt",
    readchar.key.BACKSPACE: "backspace",
    readchar.key.CTRL_H: "backspace",
}


@contextlib.contextmanager
def terminal_cbreak_mode(fd: Optional[int] = None) -> Generator[None, None, None]:
    """Put a terminal into cbreak mode and restore it on exit, even after SIGINT.

    Args:
        fd: Terminal file descriptor to configure.  Defaults to ``sys.stdin.fileno()``.
    """
    if fd is None:
        fd = sys.stdin.fileno()
    try:
        old_settings = termios.tcgetattr(fd)
    except termios.error:
        # Not a real terminal (e.g. a pipe or test mock)
        yield
        return
    try:
        tty.setcbreak(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


def map_key(key_value: str) -> str:
    """
    Map readchar key constants to LatProbe key names.

    Args:
        key_value: The key string returned by readchar.readkey()

    Returns:
        'escape', 'enter', 'interrupt' or 'backspace' for those keys, otherwise the key itself
    """
    return _KEY_NAMES.get(key_value, key_value)


def read_key(timeout: float = 0.0) -> Optional[str]:
    """
    Read a key from stdin if one is available.

    Args:
        timeout: Seconds to wait for input before giving up

    Returns:
        The mapped key, or None if stdin is not a TTY or no input arrived
    """
    if not sys.stdin.isatty():
        return None

    ready, _, _ = select.select([sys.stdin], [], [], timeout)
    if not ready:
        return None
    return map_key(readchar.readkey())
