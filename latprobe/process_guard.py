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
In-flight probe tracking for LatProbe.

This module provides a ProcessGuard class that counts probe attempts which are
currently running. It never blocks or refuses an attempt; it only observes the
count and logs a warning when it rises above a high-water mark, which means the
scheduler is firing faster than probes complete.
"""

import contextlib
import itertools
import logging
import threading
from typing import Iterator, Set

logger = logging.getLogger(__name__)

DEFAULT_HIGH_WATER_MARK = 3


class ProcessGuard:
    """
    Thread-safe counter of concurrently active probe attempts.

    Each call to enter() hands out a unique token which must be given back to
    exit() exactly once. Unknown or repeated tokens are ignored so the active
    count can never drop below zero.
    """

    def __init__(self, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        """
        Initialize the ProcessGuard.

        Args:
            high_water_mark: Active attempt count above which a warning is logged (default: 3)
        """
        self.high_water_mark = high_water_mark
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._active: Set[int] = set()
        self._peak = 0

    def enter(self) -> int:
        """
        Register a new in-flight attempt.

        Returns:
            Token identifying the attempt
        """
        with self._lock:
            token = next(self._tokens)
            self._active.add(token)
            current = len(self._active)
            self._peak = max(self._peak, current)

        if current > self.high_water_mark:
            logger.warning("High number of active probe processes: %d", current)
        return token

    def exit(self, token: int) -> None:
        """
        Deregister an in-flight attempt.

        Args:
            token: Token previously returned by enter()
        """
        with self._lock:
            if token not in self._active:
                logger.debug("Ignoring exit for unknown probe token %d", token)
                return
            self._active.remove(token)

    @contextlib.contextmanager
    def track(self) -> Iterator[int]:
        """Context manager wrapping enter()/exit() around a probe attempt."""
        token = self.enter()
        try:
            yield token
        finally:
            self.exit(token)

    @property
    def active(self) -> int:
        """Number of attempts currently in flight."""
        with self._lock:
            return len(self._active)

    @property
    def peak(self) -> int:
        """Highest number of simultaneous attempts seen so far."""
        with self._lock:
            return self._peak


# Process-wide guard shared by every ProbeRunner unless one is injected
GUARD = ProcessGuard()
