"""Tests for settings, the immutable security policy, rate limits and log redaction."""

import dataclasses
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from memberguard import app as app_module
from memberguard.config import SecurityPolicy, Settings
from memberguard.logging import _redact_pii
from memberguard.service import runtime as runtime_module
from memberguard.service.runtime import check_rate_limit, get_runtime, reset_runtime_for_tests
from memberguard.storage.models import utcnow
from memberguard.storage.redis_cache import RedisCache


def _settings(**overrides):
    return Settings(auth_secret="s" * 40, data_encryption_key="k" * 40, **overrides)


class TestSecurityPolicy:
    def test_defaults(self):
        policy = SecurityPolicy()

        assert policy.lockout_threshold == 2
        assert policy.lockout_duration == timedelta(minutes=1)
        assert policy.min_password_age == timedelta(minutes=1)
        assert policy.max_password_age == timedelta(minutes=2)
        assert policy.password_history_depth == 2
        assert policy.session_lifetime == timedelta(seconds=60)
        assert policy.reset_token_ttl == timedelta(hours=1)
        assert policy.recovery_code_count == 10

    def test_policy_is_immutable(self):
        policy = SecurityPolicy()
        with pytest.raises(dataclasses.FrozenInstanceError):
            policy.lockout_threshold = 5

    def test_settings_build_policy(self):
        policy = _settings(lockout_threshold=3, session_minutes=5).security_policy()

        assert policy.lockout_threshold == 3
        assert policy.session_lifetime == timedelta(minutes=5)

    def test_non_positive_counts_are_rejected(self):
        with pytest.raises(ValidationError):
            _settings(lockout_threshold=0)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PASSWORD_HISTORY_DEPTH", "4")
        monkeypatch.setenv("SMTP_HOST", "smtp.test")

        settings = Settings.from_env()

        assert settings.password_history_depth == 4
        assert settings.smtp_host == "smtp.test"


class TestRateLimits:
    async def test_local_bucket_refuses_past_limit(self):
        runtime = get_runtime()

        first = await check_rate_limit(runtime, "login:1.2.3.4", 2, 60, return_remaining=True)
        second = await check_rate_limit(runtime, "login:1.2.3.4", 2, 60, return_remaining=True)
        third = await check_rate_limit(runtime, "login:1.2.3.4", 2, 60, return_remaining=True)

        assert first[0] and second[0]
        assert third[0] is False
        assert third[2] > 0
        # Separate keys have separate buckets
        assert await check_rate_limit(runtime, "login:5.6.7.8", 2, 60)

    async def test_zero_limit_disables_check(self):
        runtime = get_runtime()
        for _ in range(5):
            assert await check_rate_limit(runtime, "k", 0, 60)

    async def test_refilled_buckets_are_pruned(self, monkeypatch):
        monkeypatch.setattr(runtime_module, "LOCAL_RATE_LIMIT_MAX_KEYS", 1)
        runtime = get_runtime()
        long_ago = utcnow() - timedelta(minutes=5)
        runtime._local_rate_limits["login:10.0.0.1"] = (1.0, long_ago, long_ago)

        await check_rate_limit(runtime, "login:10.0.0.2", 5, 60)

        assert list(runtime._local_rate_limits) == ["login:10.0.0.2"]

    async def test_bucket_map_is_capped(self, monkeypatch):
        monkeypatch.setattr(runtime_module, "LOCAL_RATE_LIMIT_MAX_KEYS", 2)
        runtime = get_runtime()

        for n in range(3):
            await check_rate_limit(runtime, f"login:10.0.0.{n}", 1, 60)

        assert list(runtime._local_rate_limits) == ["login:10.0.0.1", "login:10.0.0.2"]

    def test_redis_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:1.2.3.4")

        assert key.startswith("rate:")
        assert "1.2.3.4" not in key
        assert key != RedisCache._normalize_rate_key("login:1.2.3.5")

    def test_auth_route_answers_429(self, monkeypatch, clock):
        monkeypatch.setenv("AUTH_RATE_LIMIT_PER_MINUTE", "1")
        reset_runtime_for_tests(clock=clock)
        client = TestClient(app_module.app)

        assert client.post("/v1/forgotpassword", json={"email": "a@example.com"}).status_code == 200
        limited = client.post("/v1/forgotpassword", json={"email": "a@example.com"})

        assert limited.status_code == 429
        error = limited.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["retry_after"] > 0


class TestLogRedaction:
    def test_sensitive_fields_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "login", "user_email": "reader@example.com", "session_token": "abcdefgh"},
        )

        assert event["user_email"] == "re***om"
        assert event["session_token"] == "ab***gh"
        assert event["event"] == "login"
