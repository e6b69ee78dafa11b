"""Tests for the logging helpers."""

import json
import logging

import pytest

from cmdguard.utils.log import CmdguardLogger


@pytest.fixture
def logger(request):
    instance = CmdguardLogger(name=f"cmdguard.test.{request.node.name}")
    yield instance
    for handler in list(instance.logger.handlers):
        instance.logger.removeHandler(handler)
        handler.close()


def _lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_file_log_is_json_lines_with_extra_fields(logger, tmp_path):
    log_file = tmp_path / "logs" / "cmdguard.jsonl"
    logger.attach_file_handler(log_file)

    logger.info("[permissions] Rejected unparseable command", extra={"error": "unterminated_quote"})
    logger.debug("[config] Built session policy", extra={"preset": "dev", "allow": 2})

    first, second = _lines(log_file)
    assert first["level"] == "INFO"
    assert first["message"] == "[permissions] Rejected unparseable command"
    assert first["error"] == "unterminated_quote"
    assert second["preset"] == "dev"
    assert second["allow"] == 2
    assert "lineno" not in first


def test_reattaching_same_file_keeps_one_handler(logger, tmp_path):
    log_file = tmp_path / "cmdguard.jsonl"
    logger.attach_file_handler(log_file)
    logger.attach_file_handler(log_file)
    file_handlers = [h for h in logger.logger.handlers if isinstance(h, logging.FileHandler)]
    assert len(file_handlers) == 1
    assert logger.log_file == log_file.resolve()


def test_switching_files(logger, tmp_path):
    logger.attach_file_handler(tmp_path / "a.jsonl")
    logger.attach_file_handler(tmp_path / "b.jsonl")
    logger.warning("[cli] moved")
    assert (tmp_path / "a.jsonl").read_text(encoding="utf-8") == ""
    assert _lines(tmp_path / "b.jsonl")[0]["message"] == "[cli] moved"


def test_console_level_from_environment(monkeypatch, request):
    monkeypatch.setenv("CMDGUARD_LOG_LEVEL", "debug")
    instance = CmdguardLogger(name=f"cmdguard.test.{request.node.name}")
    try:
        (console,) = instance.logger.handlers
        assert console.level == logging.DEBUG
    finally:
        instance.logger.handlers.clear()
