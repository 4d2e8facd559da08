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
Scheduler module for LatProbe.

This module provides a Scheduler class that fires one probe per tick at the
configured interval, applies each result to the statistics and history as a
pair, and hands a fresh snapshot to the renderer.

Ticks can overlap when a probe takes longer than the interval. Results may
then arrive out of order, but they are applied one at a time under a single
lock. Every reconfiguration or reset advances a generation counter, and a
result started under an older generation is dropped.

The worker pool is sized so every tick that can still be running gets its own
worker. A tick that would have to wait behind others is skipped, and a queued
tick whose generation or timer run has ended never starts a probe.
"""

import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Tuple

from latprobe.config import ConfigStore, ProbeConfig, validate_config, validate_host, validate_interval
from latprobe.history import HistoryBuffer
from latprobe.probe_runner import DRAIN_JOIN_TIMEOUT, ProbeRunner
from latprobe.stats import StatsAggregator, StatsSnapshot

logger = logging.getLogger(__name__)

HistorySnapshot = Tuple[Optional[float], ...]
Renderer = Callable[[StatsSnapshot, HistorySnapshot, bool], None]


class TickSkipped(Exception):
    """Raised by a queued tick that no longer belongs to the current run."""


def worker_count(config: ProbeConfig) -> int:
    """
    Number of workers needed so overlapping ticks never queue.

    A probe runs for at most hard_timeout, two grace periods (terminate, then
    kill) and the output reader join. One extra worker covers timer jitter.
    """
    longest_probe = config.hard_timeout + 2 * config.grace_period + DRAIN_JOIN_TIMEOUT
    return math.ceil(round(longest_probe / config.interval, 6)) + 1


class Scheduler:
    """
    Periodic probe driver.

    The Scheduler owns its timer and configuration. It is idle until start()
    and returns to idle on stop(). Changing the host or interval restarts the
    timer and clears the statistics and history before any new sample lands.
    """

    def __init__(
        self,
        runner: ProbeRunner,
        config: Optional[ProbeConfig] = None,
        stats: Optional[StatsAggregator] = None,
        history: Optional[HistoryBuffer] = None,
        renderer: Optional[Renderer] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        store: Optional[ConfigStore] = None,
    ) -> None:
        """
        Initialize the Scheduler.

        Args:
            runner: ProbeRunner used for every tick
            config: Probe target and interval (default: ProbeConfig())
            stats: Aggregator to feed (default: new StatsAggregator)
            history: History to feed (default: HistoryBuffer sized from config)
            renderer: Callable receiving (stats snapshot, history snapshot, has_connection)
            executor: Worker pool for probe attempts (default: private pool sized by worker_count())
            store: Optional ConfigStore that persists host/interval changes
        """
        self.runner = runner
        self.config = validate_config(config if config is not None else ProbeConfig())
        self.stats = stats if stats is not None else StatsAggregator()
        self.history = history if history is not None else HistoryBuffer(self.config.history_size)
        self.renderer = renderer
        self.store = store
        self._owns_executor = executor is None
        self._max_pending = worker_count(self.config)
        self._executor = executor if executor is not None else self._new_executor(self._max_pending)
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._timer_epoch = 0
        self._next_tick: Optional[float] = None
        self._running = False
        self._generation = 0
        self._pending = 0

    @staticmethod
    def _new_executor(max_workers: int) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="latprobe-probe")

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def interval(self) -> float:
        return self.config.interval

    @property
    def generation(self) -> int:
        """Current configuration generation; results from older generations are discarded."""
        with self._lock:
            return self._generation

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def pending(self) -> int:
        """Ticks submitted to the pool that have not finished yet."""
        with self._lock:
            return self._pending

    @property
    def max_pending(self) -> int:
        """Upper bound on pending ticks; further ticks are skipped."""
        with self._lock:
            return self._max_pending

    def start(self) -> None:
        """Fire the first tick immediately and keep firing every interval. No-op if already running."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._timer_epoch += 1
            self._next_tick = time.monotonic()
            epoch = self._timer_epoch
        logger.info("Starting probes to %s every %.1fs", self.config.host, self.config.interval)
        self._fire(epoch)

    def stop(self) -> None:
        """Cancel the timer. In-flight probes finish and are still applied; queued ticks are dropped."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._cancel_timer()
        logger.info("Stopped probes to %s", self.config.host)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the timer and release the worker pool if the Scheduler created it."""
        self.stop()
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)

    def _cancel_timer(self) -> None:
        # Caller holds self._lock
        self._timer_epoch += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, epoch: int) -> None:
        """Timer callback: arm the next tick, then run this one."""
        with self._lock:
            if not self._running or epoch != self._timer_epoch:
                return
            now = time.monotonic()
            anchor = self._next_tick if self._next_tick is not None else now
            next_tick = anchor + self.config.interval
            if next_tick <= now:
                # Fell behind (slow host, suspended machine); re-anchor instead of bursting
                next_tick = now + self.config.interval
            self._next_tick = next_tick
            timer = threading.Timer(next_tick - now, self._fire, args=(epoch,))
            timer.daemon = True
            self._timer = timer
            timer.start()

        try:
            self.tick(epoch)
        except RuntimeError as e:
            # Executor already shut down
            logger.error("Could not schedule probe: %s", e)

    def tick(self, epoch: Optional[int] = None) -> "Optional[Future[Optional[float]]]":
        """
        Submit one probe attempt for the current host.

        Args:
            epoch: Timer run that fired this tick; None for a manual tick

        Returns:
            Future resolving to the sample (applied automatically on completion),
            or None if the tick was skipped because every worker is busy
        """
        with self._lock:
            if self._pending >= self._max_pending:
                logger.warning("Skipping tick: %d probes to %s still pending", self._pending, self.config.host)
                return None
            self._pending += 1
            generation = self._generation
            host = self.config.host
            executor = self._executor
        try:
            future = executor.submit(self._run_probe, host, generation, epoch)
        except RuntimeError:
            with self._lock:
                self._pending -= 1
            raise
        future.add_done_callback(lambda done: self._on_probe_done(done, generation))
        return future

    def _is_current(self, generation: int, epoch: Optional[int]) -> bool:
        # Caller holds self._lock
        if generation != self._generation:
            return False
        return epoch is None or (self._running and epoch == self._timer_epoch)

    def _run_probe(self, host: str, generation: int, epoch: Optional[int]) -> Optional[float]:
        """Worker body: run the probe unless the tick went stale while queued."""
        with self._lock:
            if not self._is_current(generation, epoch):
                raise TickSkipped(host)
        return self.runner.probe(host)

    def _on_probe_done(self, future: "Future[Optional[float]]", generation: int) -> None:
        with self._lock:
            self._pending -= 1
        if future.cancelled():
            return
        try:
            sample = future.result()
        except TickSkipped as e:
            logger.debug("Skipped queued probe to %s from an earlier run", e)
            return
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Probe worker failed: %s", e)
            sample = None
        self.apply_sample(sample, generation)

    def apply_sample(self, sample: Optional[float], generation: int) -> bool:
        """
        Apply one result to stats and history together, then notify the renderer.

        Args:
            sample: Latency in milliseconds, or None
            generation: Generation the probe was started under

        Returns:
            True if applied, False if the result was stale and discarded
        """
        with self._lock:
            if generation != self._generation:
                logger.debug("Discarding stale sample %s from generation %d (current %d)", sample, generation, self._generation)
                return False
            self.stats.update(sample)
            self.history.push(sample)
            self._notify()
        return True

    def snapshot(self) -> Tuple[StatsSnapshot, HistorySnapshot]:
        """Return consistent stats and history snapshots."""
        with self._lock:
            return self.stats.snapshot(), self.history.snapshot()

    def _notify(self) -> None:
        # Caller holds self._lock so renderer calls follow application order
        if self.renderer is None:
            return
        stats_snapshot = self.stats.snapshot()
        history_snapshot = self.history.snapshot()
        try:
            self.renderer(stats_snapshot, history_snapshot, stats_snapshot.current is not None)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Renderer failed: %s", e)

    def reset(self) -> None:
        """Clear stats and history and drop any result still in flight."""
        with self._lock:
            self._generation += 1
            self.stats.reset()
            self.history.reset()
            self._notify()

    def _resize_pool(self) -> None:
        # Caller holds self._lock
        needed = worker_count(self.config)
        if needed == self._max_pending:
            return
        if self._owns_executor and needed > self._max_pending:
            old_executor = self._executor
            self._executor = self._new_executor(needed)
            old_executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("Probe pool now allows %d pending ticks (was %d)", needed, self._max_pending)
        self._max_pending = needed

    def reconfigure(self, host: Optional[str] = None, interval: Optional[float] = None) -> ProbeConfig:
        """
        Change the probe target and/or interval.

        Both stats and history are cleared and the timer restarts at the new
        interval, so no sample from the old configuration is ever shown.

        Args:
            host: New probe target (unchanged if None)
            interval: New interval in seconds (unchanged if None)

        Returns:
            The configuration now in effect

        Raises:
            ValueError: If host or interval is invalid
        """
        new_host = validate_host(host) if host is not None else None
        new_interval = validate_interval(interval) if interval is not None else None

        with self._lock:
            new_config = self.config
            if new_host is not None:
                new_config = new_config._replace(host=new_host)
            if new_interval is not None:
                new_config = new_config._replace(interval=new_interval)
            was_running = self._running
            self._cancel_timer()
            self.config = new_config
            self._generation += 1
            self._resize_pool()
            self.stats.reset()
            self.history.reset()
            self._notify()
            if was_running:
                self._next_tick = time.monotonic()
            epoch = self._timer_epoch

        logger.info("Probe target is now %s every %.1fs", new_config.host, new_config.interval)
        if self.store is not None:
            try:
                self.store.save(new_config)
            except (OSError, ValueError) as e:
                logger.error("Failed to save config to '%s': %s", self.store.path, e)
        if was_running:
            self._fire(epoch)
        return new_config

    def set_host(self, host: str) -> ProbeConfig:
        """Change the probe target."""
        return self.reconfigure(host=host)

    def set_interval(self, interval: float) -> ProbeConfig:
        """Change the probe interval."""
        return self.reconfigure(interval=interval)
