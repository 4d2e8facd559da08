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
Statistics computation for LatProbe.

This module provides the StatsAggregator, which keeps current/min/max/average
latency over every successful sample since the last reset, plus helpers that
format a snapshot for display.
"""

import logging
import threading
import time
from typing import List, NamedTuple, Optional

logger = logging.getLogger(__name__)

GROWTH_ADVISORY_EVERY = 10000
GROWTH_ADVISORY_MIN_SECONDS = 60.0


class StatsSnapshot(NamedTuple):
    """Immutable view of the aggregator state."""

    current: Optional[float] = None
    average: Optional[float] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    count: int = 0


class StatsAggregator:
    """
    Running latency statistics.

    Failed samples (None) only clear `current`; they never enter the average,
    minimum or maximum. The list of successful samples is kept for the life of
    a run so the average stays exact; a warning is logged as it grows.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latencies: List[float] = []
        self._sum = 0.0
        self._current: Optional[float] = None
        self._minimum: Optional[float] = None
        self._maximum: Optional[float] = None
        self._last_growth_warning: Optional[float] = None

    def update(self, sample: Optional[float]) -> None:
        """
        Record one probe result.

        Args:
            sample: Latency in milliseconds, or None for a failed attempt

        Raises:
            ValueError: If the sample is negative
        """
        if sample is not None and sample < 0:
            raise ValueError(f"Latency samples cannot be negative: {sample}")

        with self._lock:
            self._current = sample
            if sample is None:
                return

            self._latencies.append(sample)
            self._sum += sample
            if self._minimum is None or sample < self._minimum:
                self._minimum = sample
            if self._maximum is None or sample > self._maximum:
                self._maximum = sample
            count = len(self._latencies)
            warn = count % GROWTH_ADVISORY_EVERY == 0 and self._should_warn_growth()

        if warn:
            logger.warning("Latency stats have grown to %d entries", count)

    def _should_warn_growth(self) -> bool:
        now = time.monotonic()
        if self._last_growth_warning is not None and now - self._last_growth_warning <= GROWTH_ADVISORY_MIN_SECONDS:
            return False
        self._last_growth_warning = now
        return True

    def reset(self) -> None:
        """Discard all samples and return to the initial empty state."""
        with self._lock:
            discarded = len(self._latencies)
            self._latencies = []
            self._sum = 0.0
            self._current = None
            self._minimum = None
            self._maximum = None
        logger.info("Resetting latency stats (was %d entries)", discarded)

    def snapshot(self) -> StatsSnapshot:
        """Return the current values as an immutable StatsSnapshot."""
        with self._lock:
            count = len(self._latencies)
            average = None
            if count:
                # Float rounding in the running sum must not push the mean outside [min, max]
                average = min(max(self._sum / count, self._minimum), self._maximum)
            return StatsSnapshot(
                current=self._current,
                average=average,
                minimum=self._minimum,
                maximum=self._maximum,
                count=count,
            )

    @property
    def current(self) -> Optional[float]:
        return self.snapshot().current

    @property
    def average(self) -> Optional[float]:
        return self.snapshot().average

    @property
    def minimum(self) -> Optional[float]:
        return self.snapshot().minimum

    @property
    def maximum(self) -> Optional[float]:
        return self.snapshot().maximum

    @property
    def count(self) -> int:
        """Number of successful samples since the last reset."""
        return self.snapshot().count


def format_latency(value: Optional[float], precision: int = 1) -> str:
    """
    Format a latency value for display.

    Args:
        value: Latency in milliseconds, or None
        precision: Decimal places to show

    Returns:
        String like "12.3 ms", or "---" when the value is missing
    """
    if value is None:
        return "---"
    return f"{value:.{precision}f} ms"


def build_summary_lines(snapshot: StatsSnapshot) -> List[str]:
    """
    Build the Current/Average/Min/Max lines for a snapshot.

    Args:
        snapshot: Stats snapshot to describe

    Returns:
        List of four display strings
    """
    return [
        f"Current: {format_latency(snapshot.current)}",
        f"Average: {format_latency(snapshot.average)}",
        f"Min: {format_latency(snapshot.minimum)}",
        f"Max: {format_latency(snapshot.maximum)}",
    ]


def build_summary_suffix(snapshot: StatsSnapshot) -> str:
    """Build a single-line summary suffix for a status line."""
    parts = [
        f"avg {format_latency(snapshot.average)}",
        f"min {format_latency(snapshot.minimum)}",
        f"max {format_latency(snapshot.maximum)}",
    ]
    return f": {' | '.join(parts)}"
