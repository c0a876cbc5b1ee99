#!/usr/bin/env python3
"""Tests for logging setup and log sanitizing."""

import logging

from odnav.logging_config import sanitize_for_log, setup_logging


def test_sanitize_redacts_tokens():
    text = sanitize_for_log("GET /me Authorization: Bearer eyJ0eXAi.abc-123 access_token=secret123")
    assert 'eyJ0eXAi' not in text
    assert 'secret123' not in text
    assert 'Bearer ***REDACTED***' in text


def test_sanitize_redacts_auth_code():
    text = sanitize_for_log('{"code": "M.R3_BAY.abc", "state": "s1"}')
    assert 'M.R3_BAY' not in text
    assert 'state' in text


def test_setup_logging_writes_file(tmp_path):
    log_file = tmp_path / 'logs' / 'odnav.log'
    setup_logging(level='WARNING', log_file=log_file)
    try:
        logging.getLogger('odnav.test').warning("written to file")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert 'written to file' in log_file.read_text()
        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger('msal').level == logging.WARNING
    finally:
        for handler in logging.getLogger().handlers[:]:
            logging.getLogger().removeHandler(handler)
            handler.close()
