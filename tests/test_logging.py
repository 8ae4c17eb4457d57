import io
import json

import pytest

from realmauth.logging import (
    configure_logging,
    correlation_id_var,
    get_logger,
    set_correlation_id,
)


@pytest.fixture
def buffer():
    stream = io.StringIO()
    configure_logging(log_level="INFO", json_output=True, development_mode=False, stream=stream)
    yield stream
    correlation_id_var.set(None)
    configure_logging()


def _entries(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_reconfiguring_reroutes_existing_loggers(buffer, capsys):
    logger = get_logger("realmauth.tests")
    logger.info("first_event")
    other = io.StringIO()
    configure_logging(json_output=True, development_mode=False, stream=other)
    logger.info("second_event")
    assert [e["event"] for e in _entries(buffer)] == ["first_event"]
    assert [e["event"] for e in _entries(other)] == ["second_event"]
    assert capsys.readouterr().out == ""


def test_credentials_and_addresses_are_masked(buffer):
    set_correlation_id("req-123")
    get_logger("realmauth.tests").info(
        "login_failed", email="player@example.com", wallet_address="0xabcdef", attempts=2
    )
    entry = _entries(buffer)[0]
    assert entry["email"] == "pl***om"
    assert entry["wallet_address"] == "0x***ef"
    assert entry["attempts"] == 2
    assert entry["correlation_id"] == "req-123"
    assert entry["level"] == "info"


def test_level_filters_lower_events(buffer):
    configure_logging(log_level="WARNING", json_output=True, development_mode=False, stream=buffer)
    logger = get_logger("realmauth.tests")
    logger.info("quiet")
    logger.warning("loud")
    assert [e["event"] for e in _entries(buffer)] == ["loud"]


def test_stderr_selected_from_environment(monkeypatch, capsys):
    monkeypatch.setenv("LOG_STREAM", "stderr")
    monkeypatch.setenv("LOG_JSON", "true")
    monkeypatch.setenv("LOG_DEV_MODE", "false")
    try:
        configure_logging()
        get_logger("realmauth.tests").info("routed_event")
        captured = capsys.readouterr()
    finally:
        monkeypatch.delenv("LOG_STREAM")
        configure_logging()
    assert captured.out == ""
    assert "routed_event" in captured.err
