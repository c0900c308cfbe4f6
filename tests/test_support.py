"""Tests for logging, counters and the latency tester helpers."""

from __future__ import annotations

import logging
import os
import unittest
from unittest import mock

from cosyvoice_bridge.api.client.tester import build_params
from cosyvoice_bridge.api.service.logging_config import (
    LOG_LEVEL_ENV_VAR,
    RequestAwareFormatter,
    build_logging_config,
    task_logger,
)
from cosyvoice_bridge.api.service.metrics import RequestCounters


class LoggingConfigTests(unittest.TestCase):
    def test_formatter_fills_service_and_task_context(self) -> None:
        formatter = RequestAwareFormatter("bridge", fmt="%(service)s %(task_id)s %(session_id)s %(message)s")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello", None, None)

        self.assertEqual("bridge - - hello", formatter.format(record))

        record.task_id = "T1"
        record.session_id = "s1"
        self.assertEqual("bridge T1 s1 hello", formatter.format(record))

    def test_task_logger_stamps_task_and_session(self) -> None:
        log = task_logger(logging.getLogger("cosyvoice_bridge.tests"), "T1", "s1")

        with self.assertLogs("cosyvoice_bridge.tests", level="INFO") as captured:
            log.info("started")
            log.info("override", extra={"session_id": "s2"})

        self.assertEqual([("T1", "s1"), ("T1", "s2")], [(r.task_id, r.session_id) for r in captured.records])

    def test_websockets_logger_is_capped(self) -> None:
        with mock.patch.dict(os.environ, {LOG_LEVEL_ENV_VAR: "debug"}):
            config = build_logging_config("bridge")
        self.assertEqual("WARNING", config["loggers"]["websockets"]["level"])
        self.assertEqual("DEBUG", config["loggers"]["uvicorn.access"]["level"])

    def test_level_comes_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {LOG_LEVEL_ENV_VAR: "debug"}):
            config = build_logging_config("bridge")
        self.assertEqual("DEBUG", config["loggers"][""]["level"])

        with mock.patch.dict(os.environ, {LOG_LEVEL_ENV_VAR: "verbose"}):
            config = build_logging_config("bridge")
        self.assertEqual("INFO", config["loggers"][""]["level"])


class RequestCountersTests(unittest.TestCase):
    def test_begin_and_finish_are_balanced(self) -> None:
        counters = RequestCounters()

        started = counters.begin()
        counters.begin()
        latency = counters.finish(started)

        self.assertGreaterEqual(latency, 0.0)
        self.assertEqual(
            {"request_count": 2, "active_requests": 1, "completed": 1, "last_latency_ms": latency},
            counters.snapshot(),
        )

    def test_active_requests_never_negative(self) -> None:
        counters = RequestCounters()
        counters.finish(0.0)
        self.assertEqual(0, counters.active_requests)


class TesterTests(unittest.TestCase):
    def test_build_params_drops_unset_values(self) -> None:
        params = build_params("hi", None, "pcm", 24000, None, None, 60)

        self.assertEqual({"text": "hi", "format": "pcm", "sampleRate": "24000", "volume": "60"}, params)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
