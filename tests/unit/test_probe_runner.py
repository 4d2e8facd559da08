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
Unit tests for latprobe.probe_runner.

Covers latency parsing, the hard-timeout process runner (using short-lived
Python child processes), outcome classification and the JSON CLI.
"""

import io
import json
import os
import sys
import time
import unittest
from unittest.mock import patch

# Add parent directory to path to import latprobe
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from latprobe.probe_runner import (  # noqa: E402  # pylint: disable=wrong-import-position
    RESULT_LAUNCH_FAILURE,
    RESULT_NETWORK_FAILURE,
    RESULT_OK,
    RESULT_PARSE_FAILURE,
    RESULT_TIMEOUT,
    ProbeLaunchError,
    ProbeNetworkError,
    ProbeParseError,
    ProbeResult,
    ProbeRunner,
    ProbeTimeoutError,
    deadline_argument,
    decode_output,
    extract_latency,
    main,
    parse_latency,
    run_probe_process,
)
from latprobe.process_guard import ProcessGuard  # noqa: E402  # pylint: disable=wrong-import-position


def python_command(code):
    """Build an argv that runs a snippet in a fresh interpreter."""
    return [sys.executable, "-c", code]


class TestParseLatency(unittest.TestCase):
    """Tests for parse_latency."""

    def test_standard_reply_line(self):
        text = "64 bytes from 1.1.1.1: icmp_seq=0 ttl=56 time=23.4 ms"
        self.assertAlmostEqual(parse_latency(text), 23.4)

    def test_request_timeout_line(self):
        self.assertIsNone(parse_latency("Request timeout for icmp_seq 0"))

    def test_empty_and_none(self):
        self.assertIsNone(parse_latency(""))
        self.assertIsNone(parse_latency(None))

    def test_first_match_wins(self):
        text = "reply time=1.5 ms\nreply time=9.0 ms\n"
        self.assertAlmostEqual(parse_latency(text), 1.5)

    def test_integer_value_and_no_space_before_unit(self):
        self.assertAlmostEqual(parse_latency("time=17ms"), 17.0)

    def test_less_than_reading(self):
        self.assertAlmostEqual(parse_latency("Reply from 10.0.0.1: bytes=32 time<1 ms TTL=64"), 1.0)

    def test_microseconds_are_converted(self):
        self.assertAlmostEqual(parse_latency("time=250 us"), 0.25)

    def test_full_macos_output(self):
        text = (
            "PING 1.1.1.1 (1.1.1.1): 56 data bytes\n"
            "64 bytes from 1.1.1.1: icmp_seq=0 ttl=57 time=11.872 ms\n\n"
            "--- 1.1.1.1 ping statistics ---\n"
            "1 packets transmitted, 1 packets received, 0.0% packet loss\n"
            "round-trip min/avg/max/stddev = 11.872/11.872/11.872/0.000 ms\n"
        )
        self.assertAlmostEqual(parse_latency(text), 11.872)

    def test_no_number_after_time(self):
        self.assertIsNone(parse_latency("time=abc ms"))


class TestDecodeOutput(unittest.TestCase):
    """Tests for decode_output."""

    def test_valid_utf8(self):
        self.assertEqual(decode_output(b"time=1 ms"), "time=1 ms")

    def test_invalid_utf8_returns_none(self):
        self.assertIsNone(decode_output(b"\xff\xfe\xfd"))


class TestDeadlineArgument(unittest.TestCase):
    """Tests for deadline_argument."""

    def test_macos_uses_milliseconds(self):
        self.assertEqual(deadline_argument(1000, platform="darwin"), "1000")

    def test_linux_uses_whole_seconds(self):
        self.assertEqual(deadline_argument(1000, platform="linux"), "1")
        self.assertEqual(deadline_argument(1500, platform="linux"), "2")
        self.assertEqual(deadline_argument(100, platform="linux"), "1")


class TestExtractLatency(unittest.TestCase):
    """Tests for extract_latency outcome classification."""

    def test_nonzero_exit_with_reading_is_accepted(self):
        self.assertAlmostEqual(extract_latency("h", 2, b"time=5.5 ms"), 5.5)

    def test_nonzero_exit_without_reading(self):
        with self.assertRaises(ProbeNetworkError) as context:
            extract_latency("h", 2, b"Request timeout for icmp_seq 0")
        self.assertEqual(context.exception.returncode, 2)

    def test_zero_exit_without_reading(self):
        with self.assertRaises(ProbeParseError):
            extract_latency("h", 0, b"garbage")

    def test_undecodable_output(self):
        with self.assertRaises(ProbeParseError):
            extract_latency("h", 0, b"\xff\xfe time=1 ms")


class TestRunProbeProcess(unittest.TestCase):
    """Tests for run_probe_process using real child processes."""

    def test_collects_output_and_exit_code(self):
        returncode, output = run_probe_process(
            python_command("import sys; print('time=3.2 ms'); sys.exit(0)"), hard_timeout=10.0
        )
        self.assertEqual(returncode, 0)
        self.assertIn(b"time=3.2 ms", output)

    def test_merges_stderr_into_output(self):
        _, output = run_probe_process(
            python_command("import sys; sys.stderr.write('ping: unknown host\\n'); sys.exit(68)"), hard_timeout=10.0
        )
        self.assertIn(b"unknown host", output)

    def test_reports_nonzero_exit_code(self):
        returncode, _ = run_probe_process(python_command("import sys; sys.exit(2)"), hard_timeout=10.0)
        self.assertEqual(returncode, 2)

    def test_large_output_does_not_block(self):
        code = "import sys; sys.stdout.write('x' * 1000000); print(); print('time=8.0 ms')"
        returncode, output = run_probe_process(python_command(code), hard_timeout=10.0)
        self.assertEqual(returncode, 0)
        self.assertGreater(len(output), 1000000)
        self.assertIn(b"time=8.0 ms", output)

    def test_missing_executable_raises_launch_error(self):
        with self.assertRaises(ProbeLaunchError) as context:
            run_probe_process(["/nonexistent/latprobe-ping", "-c", "1", "example.com"])
        self.assertIn("/nonexistent/latprobe-ping", str(context.exception))

    def test_unusable_argv_raises_launch_error(self):
        with self.assertRaises(ProbeLaunchError):
            run_probe_process([sys.executable, "-c", "print('time=1 ms')", "a\x00b"])

    def test_hung_process_is_terminated(self):
        start = time.monotonic()
        with self.assertRaises(ProbeTimeoutError):
            run_probe_process(python_command("import time; time.sleep(30)"), hard_timeout=0.5, grace_period=0.5)
        self.assertLess(time.monotonic() - start, 5.0)

    def test_process_ignoring_sigterm_is_killed(self):
        code = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('partial', flush=True)\n"
            "time.sleep(30)\n"
        )
        start = time.monotonic()
        with self.assertRaises(ProbeTimeoutError) as context:
            run_probe_process(python_command(code), hard_timeout=1.5, grace_period=0.3)
        self.assertLess(time.monotonic() - start, 6.0)
        self.assertIn(b"partial", context.exception.output)


class TestProbeRunner(unittest.TestCase):
    """Tests for ProbeRunner with the process layer patched out."""

    def setUp(self):
        self.guard = ProcessGuard()
        self.runner = ProbeRunner(guard=self.guard)

    def test_invalid_construction(self):
        with self.assertRaises(ValueError):
            ProbeRunner(deadline_ms=0)
        with self.assertRaises(ValueError):
            ProbeRunner(hard_timeout=0)
        with self.assertRaises(ValueError):
            ProbeRunner(grace_period=-1)

    @patch("latprobe.probe_runner.sys.platform", "darwin")
    def test_build_command(self):
        runner = ProbeRunner(binary="/sbin/ping", deadline_ms=1000)
        self.assertEqual(runner.build_command("1.1.1.1"), ["/sbin/ping", "-c", "1", "-W", "1000", "1.1.1.1"])

    @patch("latprobe.probe_runner.run_probe_process")
    def test_success(self, mock_run):
        mock_run.return_value = (0, b"64 bytes from 1.1.1.1: icmp_seq=0 ttl=56 time=23.4 ms\n")
        result = self.runner.probe_detailed("1.1.1.1")
        self.assertIsInstance(result, ProbeResult)
        self.assertEqual(result.kind, RESULT_OK)
        self.assertAlmostEqual(result.latency, 23.4)
        self.assertEqual(result.returncode, 0)
        self.assertEqual(self.guard.active, 0)
        self.assertEqual(self.guard.peak, 1)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_probe_returns_latency_only(self, mock_run):
        mock_run.return_value = (0, b"time=4.0 ms")
        self.assertEqual(self.runner.probe("1.1.1.1"), 4.0)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_launch_failure(self, mock_run):
        mock_run.side_effect = ProbeLaunchError("Failed to start probe process 'ping': not found")
        result = self.runner.probe_detailed("1.1.1.1")
        self.assertEqual(result.kind, RESULT_LAUNCH_FAILURE)
        self.assertIsNone(result.latency)
        self.assertEqual(self.guard.active, 0)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_timeout(self, mock_run):
        mock_run.side_effect = ProbeTimeoutError("timed out", output=b"PING 1.1.1.1")
        result = self.runner.probe_detailed("1.1.1.1")
        self.assertEqual(result.kind, RESULT_TIMEOUT)
        self.assertIsNone(result.latency)
        self.assertEqual(result.output, "PING 1.1.1.1")
        self.assertEqual(self.guard.active, 0)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_parse_failure(self, mock_run):
        mock_run.return_value = (0, b"nothing useful")
        result = self.runner.probe_detailed("1.1.1.1")
        self.assertEqual(result.kind, RESULT_PARSE_FAILURE)
        self.assertIsNone(result.latency)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_network_failure(self, mock_run):
        mock_run.return_value = (2, b"Request timeout for icmp_seq 0\n")
        result = self.runner.probe_detailed("1.1.1.1")
        self.assertEqual(result.kind, RESULT_NETWORK_FAILURE)
        self.assertEqual(result.returncode, 2)
        self.assertIsNone(result.latency)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_nonzero_exit_with_reading(self, mock_run):
        mock_run.return_value = (1, b"time=30.0 ms")
        result = self.runner.probe_detailed("1.1.1.1")
        self.assertEqual(result.kind, RESULT_OK)
        self.assertEqual(result.latency, 30.0)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_option_like_host_is_refused(self, mock_run):
        result = self.runner.probe_detailed("-f")
        self.assertEqual(result.kind, RESULT_LAUNCH_FAILURE)
        mock_run.assert_not_called()
        self.assertEqual(self.guard.active, 0)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_control_characters_in_host_are_refused(self, mock_run):
        for host in ("a\x00b", "host\x1b[31m"):
            result = self.runner.probe_detailed(host)
            self.assertEqual(result.kind, RESULT_LAUNCH_FAILURE)
            self.assertIsNone(result.latency)
        mock_run.assert_not_called()
        self.assertEqual(self.guard.active, 0)

    def test_nul_byte_host_end_to_end(self):
        self.assertIsNone(ProbeRunner(guard=self.guard).probe("a\x00b"))
        self.assertEqual(self.guard.active, 0)

    @patch("latprobe.probe_runner.run_probe_process")
    def test_unexpected_error_still_releases_guard(self, mock_run):
        mock_run.side_effect = KeyError("boom")
        with self.assertRaises(KeyError):
            self.runner.probe_detailed("1.1.1.1")
        self.assertEqual(self.guard.active, 0)

    def test_missing_binary_end_to_end(self):
        runner = ProbeRunner(binary="/nonexistent/latprobe-ping", guard=self.guard)
        self.assertIsNone(runner.probe("1.1.1.1"))
        self.assertEqual(self.guard.active, 0)


class TestProbeRunnerMain(unittest.TestCase):
    """Tests for the probe_runner JSON CLI."""

    def _run_main(self, argv):
        with patch("sys.argv", argv), patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
            with self.assertRaises(SystemExit) as context:
                main()
        return context.exception.code, mock_stdout.getvalue()

    @patch("latprobe.probe_runner.ProbeRunner.probe_detailed")
    def test_main_success(self, mock_probe):
        mock_probe.return_value = ProbeResult("1.1.1.1", RESULT_OK, 12.345, 0, 0.01, "")
        code, output = self._run_main(["probe_runner.py", "1.1.1.1"])
        self.assertEqual(code, 0)
        payload = json.loads(output)
        self.assertEqual(payload["host"], "1.1.1.1")
        self.assertAlmostEqual(payload["latency_ms"], 12.345, places=3)
        self.assertTrue(payload["success"])

    @patch("latprobe.probe_runner.ProbeRunner.probe_detailed")
    def test_main_timeout(self, mock_probe):
        mock_probe.return_value = ProbeResult("1.1.1.1", RESULT_TIMEOUT, None, None, 3.0, "")
        code, output = self._run_main(["probe_runner.py", "1.1.1.1"])
        self.assertEqual(code, 1)
        payload = json.loads(output)
        self.assertIsNone(payload["latency_ms"])
        self.assertEqual(payload["kind"], RESULT_TIMEOUT)
        self.assertFalse(payload["success"])

    @patch("latprobe.probe_runner.ProbeRunner.probe_detailed")
    def test_main_launch_failure(self, mock_probe):
        mock_probe.return_value = ProbeResult("1.1.1.1", RESULT_LAUNCH_FAILURE, None, None, 0.0, "")
        code, _ = self._run_main(["probe_runner.py", "1.1.1.1"])
        self.assertEqual(code, 2)

    @patch("latprobe.probe_runner.ProbeRunner.probe_detailed")
    def test_main_unexpected_exception(self, mock_probe):
        mock_probe.side_effect = RuntimeError("Unexpected error")
        code, output = self._run_main(["probe_runner.py", "1.1.1.1"])
        self.assertEqual(code, 3)
        payload = json.loads(output)
        self.assertIn("Unexpected error", payload["error"])

    def test_main_rejects_bad_deadline(self):
        with patch("sys.argv", ["probe_runner.py", "1.1.1.1", "abc"]), patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as context:
                main()
        self.assertEqual(context.exception.code, 1)


if __name__ == "__main__":
    unittest.main()
