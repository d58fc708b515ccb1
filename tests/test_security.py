from datetime import timedelta

import pytest
from jose import jwt

from beyanname_ai.core.config import settings
from beyanname_ai.core.security import InvalidTokenError, create_access_token, decode_owner_id


class TestTokens:
    def test_round_trip_subject(self):
        assert decode_owner_id(create_access_token("user-123")) == "user-123"

    def test_expired_token_rejected(self):
        token = create_access_token("user-123", expires_delta=timedelta(seconds=-5))
        with pytest.raises(InvalidTokenError):
            decode_owner_id(token)

    def test_wrong_secret_rejected(self):
        token = jwt.encode({"sub": "user-123"}, "another-secret", algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            decode_owner_id(token)

    def test_missing_subject_rejected(self):
        token = jwt.encode({"role": "authenticated"}, settings.AUTH_JWT_SECRET, algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            decode_owner_id(token)

    def test_garbage_rejected(self):
        with pytest.raises(InvalidTokenError):
            decode_owner_id("not-a-jwt")

    def test_audience_enforced_when_configured(self, monkeypatch):
        foreign = jwt.encode({"sub": "user-123", "aud": "other"}, settings.AUTH_JWT_SECRET, algorithm="HS256")
        monkeypatch.setattr(settings, "AUTH_JWT_AUDIENCE", "authenticated")
        assert decode_owner_id(create_access_token("user-123")) == "user-123"
        with pytest.raises(InvalidTokenError):
            decode_owner_id(foreign)
