"""Tests for auth/config.py - Auth configuration with validation."""

import pytest
from pydantic import ValidationError

from auth.config import AuthConfig


class TestAuthConfigDefaults:
    """Tests that AuthConfig has sensible defaults."""

    def test_two_factor_defaults(self):
        config = AuthConfig()
        assert config.two_factor_code_expiry_minutes == 10
        assert config.two_factor_max_attempts == 5

    def test_token_lifetimes(self):
        config = AuthConfig()
        assert config.session_expiry_days == 7
        assert config.organization_switch_expiry_hours == 24
        assert config.trusted_device_expiry_days == 90
        assert config.reset_token_expiry_minutes == 60

    def test_rate_limit_defaults(self):
        config = AuthConfig()
        assert config.login_rate_limit_attempts == 6
        assert config.login_rate_limit_window_minutes == 15
        assert config.reset_rate_limit_window_minutes == 60

    def test_bcrypt_rounds_default(self):
        assert AuthConfig().bcrypt_rounds == 10


class TestEnvironment:
    """Reset limiter relaxes outside production."""

    def test_production_uses_strict_reset_limit(self):
        config = AuthConfig(environment="production")
        assert config.is_production is True
        assert config.effective_reset_rate_limit_attempts == 5

    def test_development_uses_relaxed_reset_limit(self):
        config = AuthConfig(environment="development")
        assert config.is_production is False
        assert config.effective_reset_rate_limit_attempts == 100


class TestAuthConfigValidation:
    """Tests that AuthConfig enforces validation bounds."""

    def test_bcrypt_rounds_min_bound(self):
        with pytest.raises(ValidationError):
            AuthConfig(bcrypt_rounds=3)  # < 4

    def test_bcrypt_rounds_max_bound(self):
        with pytest.raises(ValidationError):
            AuthConfig(bcrypt_rounds=16)  # > 15

    def test_reset_expiry_min_bound(self):
        with pytest.raises(ValidationError):
            AuthConfig(reset_token_expiry_minutes=4)  # < 5

    def test_login_attempts_min_bound(self):
        with pytest.raises(ValidationError):
            AuthConfig(login_rate_limit_attempts=1)  # < 2

    def test_asymmetric_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            AuthConfig(jwt_algorithm="RS256")

    def test_none_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            AuthConfig(jwt_algorithm="none")

    def test_valid_custom_values(self):
        config = AuthConfig(
            bcrypt_rounds=12,
            two_factor_max_attempts=3,
            jwt_algorithm="HS512",
        )
        assert config.bcrypt_rounds == 12
        assert config.two_factor_max_attempts == 3
        assert config.jwt_algorithm == "HS512"
