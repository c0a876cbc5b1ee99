#!/usr/bin/env python3
"""Tests for the SessionController state machine."""

import threading
import time

import pytest

from odnav.credential_store import INTERACTION_KEY
from odnav.errors import AuthRequired, InteractionAlreadyInProgress, RedirectPending
from odnav.session import (
    SessionController, SessionState, get_session_controller,
    reset_session_controller, set_session_controller,
)

from conftest import ACCOUNT, FakeMsalApp, make_broker

SCOPES = ['Files.ReadWrite']


def controller_for(config, store, app, **kwargs):
    factory_kwargs = kwargs.pop('broker_kwargs', {})
    return SessionController(
        config, store=store,
        broker_factory=lambda s: make_broker(s, app, **factory_kwargs),
        **kwargs,
    )


def test_start_reaches_ready(config, store, fake_app):
    controller = controller_for(config, store, fake_app)
    transitions = []
    controller.subscribe(lambda old, new: transitions.append((old, new)))

    assert not controller.is_ready()
    assert controller.start() == SessionState.READY
    assert controller.is_ready()
    assert transitions == [
        (SessionState.UNINITIALIZED, SessionState.INITIALIZING),
        (SessionState.INITIALIZING, SessionState.READY),
    ]


def test_unsubscribe(config, store, fake_app):
    controller = controller_for(config, store, fake_app)
    seen = []
    unsubscribe = controller.subscribe(lambda old, new: seen.append(new))
    unsubscribe()
    controller.start()
    assert seen == []


def test_construction_failure_degrades(config, store):
    def broken(_store):
        raise RuntimeError("identity library missing")

    controller = SessionController(config, store=store, broker_factory=broken)
    assert controller.start() == SessionState.DEGRADED
    assert 'identity library missing' in controller.degraded_reason

    with pytest.raises(AuthRequired):
        controller.get_access_token(SCOPES)


def test_require_account_degrades_without_account(config, store, fake_app):
    controller = controller_for(config, store, fake_app, require_account=True)
    assert controller.start() == SessionState.DEGRADED


def test_startup_clears_stale_popup_marker(config, store, fake_app):
    store.set_interaction_marker('popup', SCOPES)
    controller_for(config, store, fake_app).start()
    assert store.get_interaction_marker() is None


def test_startup_clears_expired_redirect_marker(config, store, fake_app):
    marker = store.set_interaction_marker('redirect', SCOPES, flow={'state': 'state-1'})
    marker['started_at'] = time.time() - config.interaction_ttl - 10
    store.set(INTERACTION_KEY, marker)

    controller = controller_for(config, store, fake_app)
    controller.start(redirect_response="http://localhost:8080/?code=abc&state=state-1")

    assert store.get_interaction_marker() is None
    assert fake_app.count('redeem') == 0
    assert controller.state == SessionState.READY


def test_start_resumes_redirect(config, store, fake_app):
    make_broker(store, fake_app).begin_redirect(SCOPES)

    controller = controller_for(config, store, fake_app)
    state = controller.start(redirect_response="http://localhost:8080/?code=abc&state=state-1")

    assert state == SessionState.READY
    assert controller.get_account().username == 'user@example.com'
    assert store.get_interaction_marker() is None


def test_failed_redirect_resume_degrades(config, store, fake_app):
    make_broker(store, fake_app).begin_redirect(SCOPES)

    controller = controller_for(config, store, fake_app)
    state = controller.start(redirect_response={'error': 'access_denied', 'state': 'state-1'})

    assert state == SessionState.DEGRADED
    assert store.get_interaction_marker() is None


def test_stuck_redirect_handling_times_out(config, store, fake_app):
    controller = controller_for(config, store, fake_app)
    controller.start()
    controller.broker.begin_redirect(SCOPES)
    release = threading.Event()

    def never_arrives():
        release.wait(5)
        return None

    try:
        with pytest.raises(TimeoutError):
            controller.handle_redirect_response(never_arrives, timeout=0.1)
    finally:
        release.set()
    assert store.get_interaction_marker() is None


def test_timed_out_redemption_is_abandoned(config, store, fake_app):
    controller = controller_for(config, store, fake_app)
    controller.start()
    controller.broker.begin_redirect(SCOPES)
    entered = threading.Event()
    release = threading.Event()
    redeem = fake_app.acquire_token_by_auth_code_flow

    def stuck_redeem(flow, params):
        entered.set()
        release.wait(5)
        return redeem(flow, params)

    fake_app.acquire_token_by_auth_code_flow = stuck_redeem
    try:
        with pytest.raises(TimeoutError):
            controller.handle_redirect_response({'code': 'abc', 'state': 'state-1'}, timeout=0.1)
        assert entered.wait(1)
        assert store.get_interaction_marker() is None
        assert not controller.broker.interaction_running()

        # The slot is free again while the old worker is still blocked
        fake_app.acquire_token_by_auth_code_flow = redeem
        controller.manual_sign_in(SCOPES)
        assert controller.state == SessionState.READY
    finally:
        release.set()

    # The abandoned worker finishes without touching the new session
    deadline = time.time() + 5
    while fake_app.count('redeem') < 1 and time.time() < deadline:
        time.sleep(0.01)
    assert controller.get_account().username == 'user@example.com'
    assert store.get_interaction_marker() is None


def test_one_automatic_interaction_per_lifetime(config, store, fake_app):
    fake_app.interactive_results = [{'error': 'interaction_required', 'error_description': 'x'}]
    controller = controller_for(config, store, fake_app)
    controller.start()
    transitions = []
    controller.subscribe(lambda old, new: transitions.append((old, new)))

    with pytest.raises(AuthRequired):
        controller.get_access_token(SCOPES)
    assert fake_app.count('interactive') == 1
    assert controller.state == SessionState.DEGRADED
    assert 'Automatic sign-in failed' in controller.degraded_reason
    assert transitions == [(SessionState.READY, SessionState.DEGRADED)]

    # Second automatic attempt is refused without opening another flow
    with pytest.raises(AuthRequired):
        controller.get_access_token(SCOPES)
    assert fake_app.count('interactive') == 1

    # Explicit user action is still allowed
    controller.manual_sign_in(SCOPES)
    assert fake_app.count('interactive') == 2
    assert controller.state == SessionState.READY
    assert transitions[-1] == (SessionState.DEGRADED, SessionState.READY)
    assert controller.get_access_token(SCOPES).covers(SCOPES)
    assert fake_app.count('interactive') == 2


def test_exhausted_automatic_interaction_degrades(config, store, fake_app):
    controller = controller_for(config, store, fake_app)
    controller.start()
    transitions = []
    controller.subscribe(lambda old, new: transitions.append((old, new)))

    # The one automatic sign-in succeeds
    assert controller.get_access_token(SCOPES).covers(SCOPES)
    assert controller.state == SessionState.READY

    # Later the cached grant is revoked and silent renewal fails again
    fake_app.silent_results = [{'error': 'invalid_grant', 'error_description': 'revoked'}]
    with pytest.raises(AuthRequired):
        controller.get_access_token(SCOPES)
    assert fake_app.count('interactive') == 1
    assert controller.state == SessionState.DEGRADED
    assert controller.degraded_reason == "Sign-in required"
    assert transitions == [(SessionState.READY, SessionState.DEGRADED)]


def test_pending_redirect_does_not_degrade(config, store, fake_app):
    fake_app.popup_error = OSError("no browser")
    controller = controller_for(config, store, fake_app)
    controller.start()

    with pytest.raises(RedirectPending):
        controller.get_access_token(SCOPES)
    assert controller.state == SessionState.READY


def test_get_access_token_during_interaction(config, store, fake_app):
    controller = controller_for(config, store, fake_app)
    controller.start()
    store.set_interaction_marker('redirect', SCOPES, flow={'state': 'state-1'})

    with pytest.raises(InteractionAlreadyInProgress):
        controller.get_access_token(SCOPES)
    assert fake_app.count('interactive') == 0


def test_manual_sign_in_clears_stale_state(config, store, fake_app):
    controller = controller_for(config, store, fake_app, require_account=True)
    assert controller.start() == SessionState.DEGRADED
    store.set_interaction_marker('popup', SCOPES)

    controller.manual_sign_in(SCOPES)
    assert controller.state == SessionState.READY
    assert controller.degraded_reason is None


def test_sign_out_runs_hooks(config, store):
    app = FakeMsalApp(accounts=[ACCOUNT])
    controller = controller_for(config, store, app, broker_kwargs={'browser_opener': lambda url: True})
    controller.start()
    reset = []
    controller.on_sign_out(lambda: reset.append(True))
    states = []
    controller.subscribe(lambda old, new: states.append(new))

    url = controller.sign_out()
    assert 'oauth2/v2.0/logout' in url
    assert reset == [True]
    assert controller.get_account() is None
    assert states == [SessionState.INITIALIZING, SessionState.READY]


def test_listener_errors_do_not_break_transitions(config, store, fake_app):
    controller = controller_for(config, store, fake_app)

    def bad_listener(old, new):
        raise RuntimeError("boom")

    controller.subscribe(bad_listener)
    assert controller.start() == SessionState.READY


def test_injectable_singleton(config, store, fake_app):
    controller = controller_for(config, store, fake_app)
    set_session_controller(controller)
    try:
        assert get_session_controller() is controller
    finally:
        reset_session_controller()
