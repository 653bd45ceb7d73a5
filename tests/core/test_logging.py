"""Tests for structured logging configuration."""

from __future__ import annotations

import json

import structlog

from rollout.core.logging import LogContext, configure_logging, get_logger


class TestConfigureLogging:
    def test_json_output_is_ecs_compatible(self, capsys):
        configure_logging(level="INFO", json_format=True, service="rollout-test")
        try:
            get_logger("tests").info("stage.complete", stage="build")
            line = capsys.readouterr().err.strip().splitlines()[-1]
            event = json.loads(line)
            assert event["event"] == "stage.complete"
            assert event["stage"] == "build"
            assert event["log.level"] == "info"
            assert event["service.name"] == "rollout-test"
            assert "@timestamp" in event
        finally:
            configure_logging(level="CRITICAL", json_format=True)

    def test_secret_fields_are_masked(self, capsys):
        configure_logging(level="INFO", json_format=True)
        try:
            get_logger("tests").info("store.connect", url="https://repo", artifact_password="hunter2", api_token="t")
            event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
            assert event["url"] == "https://repo"
            assert event["artifact_password"] == "***"
            assert event["api_token"] == "***"
        finally:
            configure_logging(level="CRITICAL", json_format=True)

    def test_logger_name_is_emitted(self, info_logging):
        get_logger("rollout.deploy.controller").info("deploy.start", target="web")
        event = info_logging()[-1]
        assert event["log.logger"] == "rollout.deploy.controller"
        assert event["target"] == "web"

    def test_exception_is_rendered(self, info_logging):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            get_logger("tests").exception("api.run_crashed", run_id="run_1")
        event = info_logging()[-1]
        assert event["event"] == "api.run_crashed"
        assert event["log.level"] == "error"
        assert "RuntimeError: boom" in event["exception"]

    def test_level_filters(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        try:
            get_logger("tests").info("ignored")
            assert capsys.readouterr().err == ""
        finally:
            configure_logging(level="CRITICAL", json_format=True)


class TestLogContext:
    def test_binds_and_unbinds(self):
        with LogContext(run_id="run_1", pipeline="web"):
            ctx = structlog.contextvars.get_contextvars()
            assert ctx["run_id"] == "run_1"
        assert "run_id" not in structlog.contextvars.get_contextvars()
