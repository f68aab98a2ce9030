"""Tests for Settings validation and request authentication."""

import time
from unittest.mock import patch

import jwt
import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from backend.auth import get_current_user
from backend.settings import Settings

SECRET = "test-jwt-secret-0123456789abcdef0123"


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.generation_retention_seconds == 600
        assert settings.generation_stream_ceiling_seconds == 300.0
        assert settings.generation_timeout_seconds == 660.0
        assert settings.generation_worker_url is None
        assert settings.is_development

    def test_origins_from_comma_separated_string(self):
        settings = Settings(allowed_origins="https://a.example, https://b.example", _env_file=None)
        assert settings.allowed_origins_list == ["https://a.example", "https://b.example"]

    def test_origins_fall_back_to_localhost(self):
        settings = Settings(_env_file=None)
        assert "http://localhost:3000" in settings.allowed_origins_list

    def test_invalid_environment(self):
        with pytest.raises(ValidationError):
            Settings(environment="moon", _env_file=None)

    def test_simulated_window_must_move_forward(self):
        with pytest.raises(ValidationError):
            Settings(
                generation_simulated_start_percent=80,
                generation_simulated_end_percent=60,
                _env_file=None,
            )

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("GENERATION_POLL_INTERVAL_SECONDS", "0.5")
        monkeypatch.setenv("ENVIRONMENT", "Production")
        settings = Settings(_env_file=None)
        assert settings.generation_poll_interval_seconds == 0.5
        assert settings.is_production


def _token(sub="user-1", exp_offset=300, secret=SECRET, **claims):
    payload = {"sub": sub, "exp": int(time.time()) + exp_offset, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_settings():
    settings = Settings(environment="test", jwt_secret=SECRET, _env_file=None)
    with patch("backend.auth.get_settings", return_value=settings):
        yield settings


class TestGetCurrentUser:
    @pytest.mark.asyncio
    async def test_valid_bearer_token(self, auth_settings):
        user_id = await get_current_user(authorization=f"Bearer {_token()}")
        assert user_id == "user-1"

    @pytest.mark.asyncio
    async def test_missing_token(self, auth_settings):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(authorization=None)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token(self, auth_settings):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(authorization=f"Bearer {_token(exp_offset=-60)}")
        assert exc_info.value.detail == "Token expired"

    @pytest.mark.asyncio
    async def test_wrong_signature(self, auth_settings):
        token = _token(secret="another-secret-of-sufficient-length")
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(authorization=f"Bearer {token}")
        assert exc_info.value.detail == "Invalid token"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme(self, auth_settings):
        with pytest.raises(HTTPException):
            await get_current_user(authorization=f"Basic {_token()}")

    @pytest.mark.asyncio
    async def test_audience_is_checked_when_configured(self):
        settings = Settings(
            environment="test", jwt_secret=SECRET, jwt_audience="generation-api", _env_file=None
        )
        with patch("backend.auth.get_settings", return_value=settings):
            ok = await get_current_user(
                authorization=f"Bearer {_token(aud='generation-api')}"
            )
            assert ok == "user-1"
            with pytest.raises(HTTPException):
                await get_current_user(authorization=f"Bearer {_token(aud='other')}")

    @pytest.mark.asyncio
    async def test_no_secret_rejects(self):
        settings = Settings(environment="test", _env_file=None)
        with patch("backend.auth.get_settings", return_value=settings):
            with pytest.raises(HTTPException) as exc_info:
                await get_current_user(authorization=f"Bearer {_token()}")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_test_bypass_outside_production(self, auth_settings):
        user_id = await get_current_user(
            authorization=None, x_test_auth="true", x_test_user_id="e2e-user"
        )
        assert user_id == "e2e-user"

    @pytest.mark.asyncio
    async def test_test_bypass_rejected_in_production(self):
        settings = Settings(environment="production", _env_file=None)
        with patch("backend.auth.get_settings", return_value=settings):
            with pytest.raises(HTTPException) as exc_info:
                await get_current_user(
                    authorization=None, x_test_auth="true", x_test_user_id="e2e-user"
                )
        assert exc_info.value.status_code == 401
