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
History management for LatProbe.

This module provides a fixed-size ring of recent samples used to draw the
sparkline. Failed attempts are kept as None so gaps stay visible.
"""

import threading
from collections import deque
from typing import Deque, Optional, Tuple

# Constants for history feature
DEFAULT_HISTORY_SIZE = 120  # 2 minutes at 1 second intervals


class HistoryBuffer:
    """Insertion-ordered, fixed-capacity buffer of optional latency samples."""

    def __init__(self, capacity: int = DEFAULT_HISTORY_SIZE) -> None:
        """
        Initialize the HistoryBuffer.

        Args:
            capacity: Maximum number of samples kept (default: 120)
        """
        if capacity < 1:
            raise ValueError("History capacity must be at least 1.")
        self._lock = threading.Lock()
        self._entries: Deque[Optional[float]] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def push(self, sample: Optional[float]) -> None:
        """Append a sample, evicting the oldest one when full."""
        with self._lock:
            self._entries.append(sample)

    def reset(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()

    def snapshot(self) -> Tuple[Optional[float], ...]:
        """
        Copy the buffer contents.

        Returns:
            Tuple of samples, oldest first
        """
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
