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
Probe execution for LatProbe.

This module runs the system ping utility once against a host and turns its
output into a single latency sample. The process is bounded by a hard timeout
that is independent of ping's own deadline:

  - Command: <probe-binary> -c 1 -W <deadline> <host>
  - Output: stdout and stderr merged, drained in chunks by a reader thread
  - Hard timeout: terminate, wait a grace period, then kill
  - Result: latency parsed from the first "time=<number> <unit>" match

Every failure mode (launch error, timeout, unparseable output, non-zero exit
without a reading) produces a None sample; nothing escapes probe().
"""

import json
import logging
import math
import re
import subprocess
import sys
import threading
import time
from typing import IO, List, NamedTuple, Optional, Sequence, Tuple

from latprobe.process_guard import GUARD, ProcessGuard

logger = logging.getLogger(__name__)

DEFAULT_PROBE_BINARY = "ping"
DEFAULT_DEADLINE_MS = 1000
DEFAULT_HARD_TIMEOUT = 3.0
DEFAULT_GRACE_PERIOD = 0.5
CHUNK_SIZE = 4096
DRAIN_JOIN_TIMEOUT = 0.5

# Outcome kinds reported by ProbeRunner.probe_detailed()
RESULT_OK = "ok"
RESULT_LAUNCH_FAILURE = "launch_failure"
RESULT_TIMEOUT = "timeout"
RESULT_PARSE_FAILURE = "parse_failure"
RESULT_NETWORK_FAILURE = "network_failure"

LATENCY_RE = re.compile(r"time\s*[=<]\s*([0-9]+(?:\.[0-9]+)?)\s*(ms|us|µs|s)\b")
_UNIT_TO_MS = {"ms": 1.0, "us": 0.001, "µs": 0.001, "s": 1000.0}


class ProbeError(RuntimeError):
    """Base class for failures of a single probe attempt."""

    def __init__(self, message, host=None, output=b""):
        super().__init__(message)
        self.host = host
        self.output = output


class ProbeLaunchError(ProbeError):
    """Raised when the probe executable cannot be started."""


class ProbeTimeoutError(ProbeError):
    """Raised when the probe process outlives the hard timeout."""


class ProbeParseError(ProbeError):
    """Raised when the probe completed but reported no readable latency."""


class ProbeNetworkError(ProbeError):
    """Raised when the probe exited non-zero without a latency reading."""

    def __init__(self, message, host=None, output=b"", returncode=None):
        super().__init__(message, host=host, output=output)
        self.returncode = returncode


class ProbeResult(NamedTuple):
    """Outcome of one probe attempt."""

    host: str
    kind: str
    latency: Optional[float]
    returncode: Optional[int]
    elapsed: float
    output: str


def decode_output(output: bytes) -> Optional[str]:
    """Decode raw probe output as UTF-8, returning None when it is not valid."""
    try:
        return output.decode("utf-8")
    except UnicodeDecodeError:
        logger.error("Failed to decode probe output as UTF-8")
        return None


def parse_latency(text: Optional[str]) -> Optional[float]:
    """
    Extract a latency in milliseconds from ping output.

    The first "time=<number> <unit>" occurrence wins. "time<1 ms" readings are
    accepted as their numeric bound.

    Args:
        text: Decoded output of the probe utility

    Returns:
        Latency in milliseconds, or None if no reading is present
    """
    if not text:
        return None
    match = LATENCY_RE.search(text)
    if match is None:
        logger.debug("No latency match found in output")
        return None
    value = float(match.group(1)) * _UNIT_TO_MS[match.group(2)]
    if math.isnan(value) or math.isinf(value) or value < 0:
        return None
    return value


def deadline_argument(deadline_ms: int, platform: Optional[str] = None) -> str:
    """
    Format the -W value for the local ping implementation.

    BSD/macOS ping takes milliseconds; iputils ping on Linux takes seconds.
    """
    if platform is None:
        platform = sys.platform
    if platform == "darwin" or platform.startswith("freebsd"):
        return str(deadline_ms)
    return str(max(1, math.ceil(deadline_ms / 1000.0)))


def _drain_output(stream: IO[bytes], chunks: List[bytes]) -> None:
    """Read the probe pipe in chunks until EOF so the child never blocks on a full pipe."""
    try:
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
    except (OSError, ValueError) as e:
        logger.debug("Probe output reader stopped: %s", e)
    finally:
        stream.close()


def _terminate(process: "subprocess.Popen[bytes]", grace_period: float) -> None:
    """Terminate a process, escalating to SIGKILL if it ignores the request."""
    try:
        process.terminate()
    except OSError as e:
        logger.debug("terminate() failed for PID %d: %s", process.pid, e)
    try:
        process.wait(timeout=grace_period)
        return
    except subprocess.TimeoutExpired:
        pass

    logger.error("Force killing hung probe process PID: %d", process.pid)
    try:
        process.kill()
    except OSError as e:
        logger.debug("kill() failed for PID %d: %s", process.pid, e)
    try:
        process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        logger.error("Probe process PID %d did not exit after SIGKILL", process.pid)


def run_probe_process(
    command: Sequence[str],
    hard_timeout: float = DEFAULT_HARD_TIMEOUT,
    grace_period: float = DEFAULT_GRACE_PERIOD,
) -> Tuple[int, bytes]:
    """
    Run a probe command under a hard wall-clock timeout.

    Args:
        command: Full argv of the probe process
        hard_timeout: Seconds to wait for the process before terminating it
        grace_period: Seconds to wait after terminate() before kill()

    Returns:
        Tuple of (exit code, combined stdout/stderr bytes)

    Raises:
        ProbeLaunchError: If the executable is missing, not permitted, or the argv is unusable
        ProbeTimeoutError: If the process did not exit within hard_timeout
    """
    host = command[-1] if command else None
    try:
        process = subprocess.Popen(  # pylint: disable=consider-using-with
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            bufsize=0,
        )
    except (OSError, ValueError) as e:
        raise ProbeLaunchError(f"Failed to start probe process {command[0]!r}: {e}", host=host) from e

    logger.debug("Probe process started with PID: %d", process.pid)
    chunks: List[bytes] = []
    reader = threading.Thread(target=_drain_output, args=(process.stdout, chunks), daemon=True)
    reader.start()

    returncode: Optional[int] = None
    try:
        returncode = process.wait(timeout=hard_timeout)
    except subprocess.TimeoutExpired:
        logger.error("Probe process timed out after %.1fs, terminating PID: %d", hard_timeout, process.pid)
    finally:
        if process.poll() is None:
            _terminate(process, grace_period)
        reader.join(DRAIN_JOIN_TIMEOUT)
        if reader.is_alive():
            logger.warning("Output reader for probe PID %d is still running; abandoning it", process.pid)

    output = b"".join(list(chunks))
    if returncode is None:
        raise ProbeTimeoutError(f"Probe to {host} exceeded hard timeout of {hard_timeout:.1f}s", host=host, output=output)
    return returncode, output


def extract_latency(host: str, returncode: int, output: bytes) -> float:
    """
    Interpret a finished probe process.

    A non-zero exit code alone is not a failure; the output is parsed first.

    Raises:
        ProbeParseError: If the output is undecodable or carries no reading
        ProbeNetworkError: If the process exited non-zero without a reading
    """
    text = decode_output(output)
    if text is None:
        raise ProbeParseError("Probe output is not valid UTF-8", host=host, output=output)
    logger.debug("Probe output: %s", text.strip())
    latency = parse_latency(text)
    if latency is not None:
        return latency
    if returncode != 0:
        raise ProbeNetworkError(
            f"Probe to {host} exited with code {returncode} and no reading",
            host=host,
            output=output,
            returncode=returncode,
        )
    raise ProbeParseError(f"Probe to {host} completed but no latency could be parsed", host=host, output=output)


class ProbeRunner:
    """
    Runs single probe attempts against a host.

    probe() is synchronous for the caller; the hard timeout guarantees it
    returns within roughly hard_timeout + 2 * grace_period seconds.
    """

    def __init__(
        self,
        binary: str = DEFAULT_PROBE_BINARY,
        deadline_ms: int = DEFAULT_DEADLINE_MS,
        hard_timeout: float = DEFAULT_HARD_TIMEOUT,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        guard: Optional[ProcessGuard] = None,
    ) -> None:
        """
        Initialize the ProbeRunner.

        Args:
            binary: Probe executable name or path (default: ping)
            deadline_ms: Deadline handed to the probe utility itself (default: 1000)
            hard_timeout: Seconds before the process is forcibly stopped (default: 3.0)
            grace_period: Seconds between terminate and kill (default: 0.5)
            guard: ProcessGuard to register attempts with (default: process-wide GUARD)
        """
        if deadline_ms <= 0:
            raise ValueError("deadline_ms must be a positive integer in milliseconds.")
        if hard_timeout <= 0:
            raise ValueError("hard_timeout must be positive.")
        if grace_period < 0:
            raise ValueError("grace_period must not be negative.")
        self.binary = binary
        self.deadline_ms = deadline_ms
        self.hard_timeout = hard_timeout
        self.grace_period = grace_period
        self.guard = guard if guard is not None else GUARD

    def build_command(self, host: str) -> List[str]:
        """Build the probe argv for a host."""
        return [self.binary, "-c", "1", "-W", deadline_argument(self.deadline_ms), host]

    def probe(self, host: str) -> Optional[float]:
        """Run one probe attempt and return the latency in milliseconds, or None."""
        return self.probe_detailed(host).latency

    def probe_detailed(self, host: str) -> ProbeResult:
        """Run one probe attempt and report how it ended."""
        start = time.monotonic()
        logger.debug("Starting probe to %s", host)
        returncode: Optional[int] = None
        output = b""

        with self.guard.track():
            try:
                if not host or host.startswith("-") or any(ch.isspace() or not ch.isprintable() for ch in host):
                    raise ProbeLaunchError(f"Refusing to probe invalid host {host!r}", host=host)
                returncode, output = run_probe_process(self.build_command(host), self.hard_timeout, self.grace_period)
                latency = extract_latency(host, returncode, output)
            except ProbeLaunchError as e:
                logger.error("%s", e)
                return self._result(host, RESULT_LAUNCH_FAILURE, None, None, start, b"")
            except ProbeTimeoutError as e:
                return self._result(host, RESULT_TIMEOUT, None, None, start, e.output)
            except ProbeNetworkError as e:
                logger.warning("%s", e)
                return self._result(host, RESULT_NETWORK_FAILURE, None, returncode, start, output)
            except ProbeParseError as e:
                logger.warning("%s", e)
                return self._result(host, RESULT_PARSE_FAILURE, None, returncode, start, output)

        if returncode != 0:
            logger.warning("Probe process exited with code %d but reported a reading", returncode)
        result = self._result(host, RESULT_OK, latency, returncode, start, output)
        logger.info("Probe to %s succeeded: %.2fms (total time: %.2fms)", host, latency, result.elapsed * 1000)
        return result

    @staticmethod
    def _result(
        host: str,
        kind: str,
        latency: Optional[float],
        returncode: Optional[int],
        start: float,
        output: bytes,
    ) -> ProbeResult:
        return ProbeResult(
            host=host,
            kind=kind,
            latency=latency,
            returncode=returncode,
            elapsed=time.monotonic() - start,
            output=output.decode("utf-8", errors="replace"),
        )


def main():
    """
    Command-line interface for a single probe.

    Usage:
        python3 -m latprobe.probe_runner <host> [deadline_ms]

    Outputs JSON with the result:
        {"host": "1.1.1.1", "latency_ms": 12.345, "kind": "ok", "success": true}
        {"host": "1.1.1.1", "latency_ms": null, "kind": "timeout", "success": false}
    """
    if len(sys.argv) < 2:
        print("Usage: python3 -m latprobe.probe_runner <host> [deadline_ms]", file=sys.stderr)
        sys.exit(1)

    host = sys.argv[1]
    deadline_ms = DEFAULT_DEADLINE_MS
    if len(sys.argv) >= 3:
        try:
            deadline_ms = int(sys.argv[2])
        except ValueError:
            print("Error: deadline_ms must be an integer", file=sys.stderr)
            sys.exit(1)
        if deadline_ms <= 0:
            print("Error: deadline_ms must be a positive integer", file=sys.stderr)
            sys.exit(1)

    try:
        result = ProbeRunner(deadline_ms=deadline_ms).probe_detailed(host)
    except Exception as e:  # pylint: disable=broad-exception-caught
        print(json.dumps({"host": host, "latency_ms": None, "kind": None, "success": False, "error": str(e)}))
        sys.exit(3)

    print(
        json.dumps(
            {
                "host": host,
                "latency_ms": result.latency,
                "kind": result.kind,
                "success": result.latency is not None,
            }
        )
    )
    if result.latency is not None:
        sys.exit(0)
    sys.exit(2 if result.kind == RESULT_LAUNCH_FAILURE else 1)


if __name__ == "__main__":
    main()
