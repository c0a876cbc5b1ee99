#!/usr/bin/env python3
"""Tests for sign-in diagnostics and repair."""

import time

import pytest
from keyring.errors import KeyringError

from odnav.credential_store import INTERACTION_KEY
from odnav.diagnostics import (
    Diagnostics, ALL_CLEAR, CONFIGURATION_MISMATCH, PENDING_REDIRECT, PROVIDER_ERROR,
    RETRY_EXHAUSTED, SESSION_DEGRADED, SIGN_IN_REQUIRED, STALE_INTERACTION,
    STORAGE_UNAVAILABLE, redirect_matches_origin, url_error_params,
)
from odnav.errors import ConfigurationMismatch, RetryBudgetExhausted
from odnav.models import InteractionState
from odnav.navigator import RemoteFolderNavigator
from odnav.retry import RetryBudget
from odnav.session import SessionController, SessionState

from conftest import ACCOUNT, FakeMsalApp, expired, make_broker

SCOPES = ['Files.ReadWrite']


class MemoryKeyring:
    def __init__(self, fail=False):
        self.fail = fail
        self.values = {}

    def set_password(self, service, key, value):
        if self.fail:
            raise KeyringError("No recommended backend was available")
        self.values[(service, key)] = value

    def get_password(self, service, key):
        return self.values.get((service, key))

    def delete_password(self, service, key):
        self.values.pop((service, key), None)


@pytest.fixture
def app():
    return FakeMsalApp(accounts=[ACCOUNT])


@pytest.fixture
def controller(config, store, app):
    controller = SessionController(config, store=store,
                                   broker_factory=lambda s: make_broker(s, app))
    controller.start()
    return controller


def diagnose(controller, **kwargs):
    kwargs.setdefault('keyring_backend', MemoryKeyring())
    return Diagnostics(controller, **kwargs)


def test_all_clear(controller, monkeypatch):
    monkeypatch.delenv('ODNAV_ORIGIN', raising=False)
    snapshot = diagnose(controller).run_diagnostics()

    assert snapshot.success
    assert snapshot.issues == []
    assert [hint.kind for hint in snapshot.hints] == [ALL_CLEAR]
    assert snapshot.details['local_storage'] == 'available'
    assert snapshot.details['session_storage'] == 'available'
    assert snapshot.details['active_account'] == 'user@example.com'
    assert snapshot.session_state == SessionState.READY.value


def test_origin_mismatch_names_both_values(controller):
    snapshot = diagnose(controller).run_diagnostics(origin='http://127.0.0.1:9000')

    assert not snapshot.success
    assert snapshot.hints[0].kind == CONFIGURATION_MISMATCH
    assert 'http://127.0.0.1:9000' in snapshot.hints[0].message
    assert 'http://localhost:8080' in snapshot.hints[0].message


def test_origin_from_environment(controller, monkeypatch):
    monkeypatch.setenv('ODNAV_ORIGIN', 'https://app.example.com')
    diagnostics = diagnose(controller)

    with pytest.raises(ConfigurationMismatch) as exc:
        diagnostics.check_origin()
    assert exc.value.origin == 'https://app.example.com'
    assert exc.value.redirect_uri == 'http://localhost:8080'


def test_provider_error_in_url(controller):
    url = ("http://localhost:8080/?error=redirect_uri_mismatch"
           "&error_description=The+reply+URL+does+not+match")
    snapshot = diagnose(controller).run_diagnostics(current_url=url, origin='http://localhost:8080')

    assert snapshot.has_hint(PROVIDER_ERROR)
    assert 'Auth error in URL: redirect_uri_mismatch' in snapshot.issues
    assert 'http://localhost:8080' in snapshot.hints[0].message


def test_stale_marker_reported_and_repaired(controller, store, config):
    store.set_interaction_marker('redirect', SCOPES, flow={'state': 'x'})
    marker = store.get(INTERACTION_KEY)
    marker['started_at'] = time.time() - config.interaction_ttl - 1
    store.set(INTERACTION_KEY, marker)
    diagnostics = diagnose(controller)

    snapshot = diagnostics.run_diagnostics(origin='http://localhost:8080')
    assert snapshot.has_hint(STALE_INTERACTION)
    assert snapshot.interaction.state == InteractionState.IN_PROGRESS

    # Diagnostics itself is read-only
    assert store.get_interaction_marker() is not None

    diagnostics.repair_common_issues()
    assert store.get_interaction_marker() is None
    assert controller.get_account() is None

    # Idempotent
    diagnostics.repair_common_issues()
    assert not diagnostics.run_diagnostics(origin='http://localhost:8080').has_hint(STALE_INTERACTION)


def test_fresh_redirect_marker_is_pending(controller, store):
    store.set_interaction_marker('redirect', SCOPES, flow={'state': 'x'})
    snapshot = diagnose(controller).run_diagnostics(origin='http://localhost:8080')
    assert snapshot.has_hint(PENDING_REDIRECT)
    assert not snapshot.has_hint(STALE_INTERACTION)


def test_keyring_unavailable(controller):
    snapshot = diagnose(controller, keyring_backend=MemoryKeyring(fail=True)).run_diagnostics(
        origin='http://localhost:8080')
    assert snapshot.has_hint(STORAGE_UNAVAILABLE)
    assert snapshot.details['local_storage'] == 'unavailable'


def test_degraded_session_and_no_accounts(config, store):
    def broken(_store):
        raise RuntimeError("boom")

    controller = SessionController(config, store=store, broker_factory=broken)
    controller.start()
    snapshot = diagnose(controller).run_diagnostics(origin='http://localhost:8080')
    assert snapshot.has_hint(SESSION_DEGRADED)
    assert snapshot.details['identity_client'] == 'not initialized'

    empty = SessionController(config, store=store,
                              broker_factory=lambda s: make_broker(s, FakeMsalApp()))
    empty.start()
    assert diagnose(empty).run_diagnostics(origin='http://localhost:8080').has_hint(SIGN_IN_REQUIRED)


def test_exhausted_budget_reported(controller, app):
    class AlwaysExpired:
        def list_children(self, token, folder_id=None):
            raise expired()

    navigator = RemoteFolderNavigator(controller.broker, SCOPES, client=AlwaysExpired(),
                                      budget=RetryBudget(ceiling=1))
    with pytest.raises(RetryBudgetExhausted):
        navigator.list_root()

    snapshot = diagnose(controller, navigator=navigator).run_diagnostics(origin='http://localhost:8080')
    assert snapshot.has_hint(RETRY_EXHAUSTED)
    assert snapshot.details['retry_budgets']['list_root']['exhausted'] is True


def test_helpers():
    assert redirect_matches_origin('http://localhost:8080', 'http://localhost:8080/callback')
    assert not redirect_matches_origin('http://localhost:8081', 'http://localhost:8080')
    assert not redirect_matches_origin('http://localhost', 'http://localhost:8080/callback')
    assert not redirect_matches_origin('http://localhost:80', 'http://localhost.evil.com/')
    assert redirect_matches_origin('https://App.Example.com', 'https://app.example.com:443/auth')
    assert url_error_params("http://x/#error=access_denied&error_description=no") == ('access_denied', 'no')
    assert url_error_params(None) == (None, None)
