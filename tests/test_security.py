"""Tests for meeting SDK credential signing."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from jose import JWTError, jwt

from src.meetbot.core.security import SDK_TOKEN_ALGORITHM, create_sdk_token, decode_sdk_token


class TestSdkToken:
    def test_claims(self):
        now = datetime.now(timezone.utc)
        token = create_sdk_token("key-1", "secret-1", "123 456 789", now=now)
        claims = decode_sdk_token(token, "secret-1")

        issued = int(now.timestamp())
        assert claims["sdkKey"] == "key-1"
        assert claims["mn"] == "123456789"
        assert claims["role"] == 0
        assert claims["iat"] == issued
        assert claims["exp"] == issued + 7200
        assert claims["tokenExp"] == claims["exp"]

    def test_header_algorithm(self):
        token = create_sdk_token("k", "s", "1")
        assert jwt.get_unverified_header(token)["alg"] == SDK_TOKEN_ALGORITHM

    def test_custom_ttl_and_role(self):
        claims = decode_sdk_token(create_sdk_token("k", "s", "1", role=1, ttl_seconds=60), "s")
        assert claims["role"] == 1
        assert claims["exp"] - claims["iat"] == 60

    def test_wrong_secret_rejected(self):
        token = create_sdk_token("k", "s", "1")
        with pytest.raises(JWTError):
            decode_sdk_token(token, "other")
