"""Unit tests for the per-request policy pipeline."""

from types import SimpleNamespace

import pytest

from memberguard.service import audit as actions
from memberguard.service.pipeline import (
    CHANGE_PASSWORD_REDIRECT,
    CONTINUE,
    LOGIN_REDIRECT,
    SETUP_2FA_REDIRECT,
    PasswordExpiryCheck,
    PipelineOutcome,
    PolicyPipeline,
    RequestContext,
    SessionCheck,
    TwoFactorCheck,
)


class RecordingCheck:
    def __init__(self, name, outcome, calls):
        self.name = name
        self.outcome = outcome
        self.calls = calls

    def check(self, context):
        self.calls.append(self.name)
        return self.outcome


@pytest.fixture
def pipeline(sessions, audit, passwords):
    return PolicyPipeline(
        [SessionCheck(sessions, audit), TwoFactorCheck(), PasswordExpiryCheck(passwords)]
    )


@pytest.fixture
def signed_in(sessions, passwords, make_account, store):
    """Account with a live session, 2FA on and a fresh password."""

    def _enable(target):
        target.two_factor_enabled = True
        passwords.ensure_password_dates(target)

    account, token = sessions.issue_session(make_account(), also=_enable)
    return account, token


class TestOrdering:
    def test_checks_run_in_order_and_stop_at_first_redirect(self):
        calls = []
        pipeline = PolicyPipeline(
            [
                RecordingCheck("first", CONTINUE, calls),
                RecordingCheck("second", PipelineOutcome(redirect="/stop"), calls),
                RecordingCheck("third", PipelineOutcome(redirect="/never"), calls),
            ]
        )
        context = RequestContext("/v1/me", SimpleNamespace(id="acct-1"), "token")
        outcome = pipeline.evaluate(context)

        assert outcome.redirect == "/stop"
        assert calls == ["first", "second"]

    def test_no_account_skips_every_check(self):
        calls = []
        pipeline = PolicyPipeline([RecordingCheck("only", PipelineOutcome(redirect="/x"), calls)])
        assert pipeline.evaluate(RequestContext("/v1/me", None, None)).proceed
        assert calls == []


class TestAllowList:
    @pytest.mark.parametrize(
        "path",
        [
            "/v1/login",
            "/v1/LOGOUT",
            "/v1/register",
            "/v1/changepassword",
            "/v1/setup2fa",
            "/v1/verify2fa",
            "/v1/show2farecoverycodes",
            "/error",
            "/v1/CheckSession",
            "/static/login/page.css",
        ],
    )
    def test_allow_listed_paths_bypass_checks(self, path):
        pipeline = PolicyPipeline([RecordingCheck("x", PipelineOutcome(redirect="/x"), [])])
        assert pipeline.is_exempt(path)
        assert pipeline.evaluate(RequestContext(path, object(), None)).proceed

    @pytest.mark.parametrize("path", ["/v1/me", "/", "/v1/orders"])
    def test_other_paths_are_checked(self, path):
        pipeline = PolicyPipeline([])
        assert not pipeline.is_exempt(path)


class TestChecks:
    def test_healthy_account_proceeds(self, pipeline, signed_in):
        account, token = signed_in
        assert pipeline.evaluate(RequestContext("/v1/me", account, token)).proceed

    def test_superseded_session_signs_out(self, pipeline, signed_in, audit):
        account, _ = signed_in
        outcome = pipeline.evaluate(RequestContext("/v1/me", account, "stale-token"))

        assert outcome.redirect == LOGIN_REDIRECT
        assert outcome.reason == "session_expired"
        assert outcome.sign_out is True
        assert audit.entries()[-1].action == actions.SESSION_INVALID

    def test_two_factor_is_checked_before_expiry(
        self, pipeline, sessions, passwords, make_account, clock
    ):
        # Both checks would fail; the 2FA redirect wins
        account, token = sessions.issue_session(
            make_account(), also=passwords.ensure_password_dates
        )
        clock.advance(minutes=5)

        outcome = pipeline.evaluate(RequestContext("/v1/me", account, token))

        assert outcome.redirect == SETUP_2FA_REDIRECT
        assert not outcome.sign_out

    def test_expired_password_redirects_to_change(self, pipeline, signed_in, clock):
        account, token = signed_in
        clock.advance(minutes=2, seconds=1)

        outcome = pipeline.evaluate(RequestContext("/v1/me", account, token))

        assert outcome.redirect == CHANGE_PASSWORD_REDIRECT
        assert outcome.reason == "password_expired"

    def test_expired_password_does_not_block_change_password_route(
        self, pipeline, signed_in, clock
    ):
        account, token = signed_in
        clock.advance(minutes=10)
        assert pipeline.evaluate(RequestContext("/v1/changepassword", account, token)).proceed
