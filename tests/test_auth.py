"""
Tests for bearer token verification
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from api.auth import JWT_ALGORITHM, JWT_SECRET_KEY, create_access_token, verify_token


def encode(**claims):
    now = datetime.now(timezone.utc)
    payload = {"iat": now, "exp": now + timedelta(hours=1)}
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


class TestVerifyToken:

    def test_access_token_accepted(self):
        payload, err = verify_token(create_access_token("owner-1"))

        assert err is None
        assert payload["user_id"] == "owner-1"
        assert payload["type"] == "access"

    def test_refresh_token_rejected(self):
        payload, err = verify_token(encode(user_id="owner-1", type="refresh"))

        assert payload is None
        assert "access tokens" in err

    def test_missing_user_rejected(self):
        assert verify_token(encode(type="access")) == (None, "Token does not identify a user")

    def test_expired_within_leeway_accepted(self):
        token = create_access_token("owner-1", expires_in=timedelta(seconds=-30))

        payload, err = verify_token(token)

        assert err is None

    def test_expired(self):
        token = create_access_token("owner-1", expires_in=timedelta(minutes=-5))

        assert verify_token(token) == (None, "Token has expired")

    def test_wrong_secret(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"user_id": "owner-1", "iat": now, "exp": now + timedelta(hours=1)},
            "another-secret-key-of-sufficient-length",
            algorithm=JWT_ALGORITHM,
        )

        assert verify_token(token) == (None, "Token signature is invalid")

    @pytest.mark.parametrize("token", ["not-a-token", "a.b.c"])
    def test_garbage(self, token):
        payload, err = verify_token(token)

        assert payload is None
        assert err is not None
