from __future__ import annotations

import logging

import pytest

from mockview import settings


@pytest.mark.parametrize("raw,expected", [("0.25", 0.25), (" 2 ", 2.0), ("", 1.0)])
def test_env_float_parses_values(monkeypatch, raw, expected):
    monkeypatch.setenv("POPUP_POLL_INTERVAL_SECONDS", raw)
    assert settings.env_float("POPUP_POLL_INTERVAL_SECONDS", 1.0) == expected


def test_env_float_falls_back_on_malformed_value(monkeypatch, caplog):
    monkeypatch.setenv("POPUP_POLL_INTERVAL_SECONDS", "fast")
    with caplog.at_level(logging.WARNING, logger="mockview.settings"):
        assert settings.env_float("POPUP_POLL_INTERVAL_SECONDS", 1.0) == 1.0
    assert "not a number" in caplog.text


def test_env_int_falls_back_on_malformed_value(monkeypatch):
    monkeypatch.setenv("WELCOME_TOKENS", "three")
    assert settings.env_int("WELCOME_TOKENS", 3) == 3
