"""
Tests for logging configuration.
"""

import logging

from otelops.logging_config import ProbeNoiseFilter, get_logging_config


def make_record(name, message, level=logging.INFO):
    return logging.LogRecord(name, level, __file__, 1, message, None, None)


def test_probe_requests_filtered():
    noise = ProbeNoiseFilter()
    record = make_record("httpx", 'HTTP Request: GET http://127.0.0.1:54321/health "HTTP/1.1 200 OK"')
    assert noise.filter(record) is False


def test_other_requests_kept():
    noise = ProbeNoiseFilter()
    record = make_record("httpx", 'HTTP Request: GET http://127.0.0.1:54321/rolldice "HTTP/1.1 200 OK"')
    assert noise.filter(record) is True


def test_warnings_and_other_loggers_kept():
    noise = ProbeNoiseFilter()
    assert noise.filter(make_record("httpx", "HTTP Request: GET /health", logging.WARNING)) is True
    assert noise.filter(make_record("otelops.health", "HTTP Request: GET /health")) is True


def test_config_levels():
    config = get_logging_config("debug")

    assert config["loggers"]["otelops"]["level"] == "DEBUG"
    assert config["loggers"]["httpx"]["level"] == "INFO"
    assert get_logging_config("INFO")["loggers"]["httpx"]["level"] == "WARNING"


def test_logs_go_to_stderr():
    handlers = get_logging_config()["handlers"]
    assert all(h["stream"] == "ext://sys.stderr" for h in handlers.values())
