"""
Unit tests for token issuing, token verification and settings validation.
"""
import pytest
from jose import jwt
from pydantic import ValidationError
from sqlalchemy.orm import Session

from core.config import Settings, settings
from core.exceptions import InvalidToken, Unauthorized
from core.security import (
    extract_bearer_token, hash_password, issue_token, verify_password, verify_token
)
from db.models import User
from db.repository import Repository
from services.context import RequestContext


class TestPasswords:

    def test_hash_and_verify(self):
        hashed = hash_password("s3cret")
        assert hashed != "s3cret"
        assert verify_password("s3cret", hashed)
        assert not verify_password("wrong", hashed)

    def test_overlong_password_never_matches(self):
        hashed = hash_password("s3cret")
        assert verify_password("x" * 80, hashed) is False
        # Byte length counts, not characters
        assert verify_password("é" * 40, hashed) is False


class TestTokens:
    """Tests for signed bearer tokens."""

    def test_round_trip_claims(self):
        claims = verify_token(issue_token(7, 3))
        assert claims.user_id == 7
        assert claims.token_version == 3

    def test_rejects_foreign_signature(self):
        forged = jwt.encode({"sub": "7", "ver": 1}, "another-secret", algorithm="HS256")
        assert verify_token(forged) is None

    def test_rejects_garbage(self):
        assert verify_token("not-a-token") is None

    def test_rejects_payload_without_version(self):
        token = jwt.encode({"sub": "7"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        assert verify_token(token) is None

    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc") == "abc"
        assert extract_bearer_token("bearer abc ") == "abc"
        assert extract_bearer_token("Basic abc") is None
        assert extract_bearer_token(None) is None
        assert extract_bearer_token("Bearer ") is None


class TestRequestContext:
    """Principal resolution against the stored token version."""

    def test_anonymous_context_is_unauthorized(self, test_db: Session):
        with pytest.raises(Unauthorized):
            RequestContext.from_token(None).resolve(Repository(test_db))

    def test_bad_token_is_invalid(self, test_db: Session):
        with pytest.raises(InvalidToken):
            RequestContext.from_token("garbage").resolve(Repository(test_db))

    def test_current_version_resolves(self, test_db: Session, seed_test_users: list[User]):
        user = seed_test_users[0]
        context = RequestContext.from_token(issue_token(user.id, user.token_version))
        assert context.resolve(Repository(test_db)).id == user.id

    def test_stale_version_is_invalid(self, test_db: Session, seed_test_users: list[User]):
        repository = Repository(test_db)
        user = seed_test_users[0]
        context = RequestContext.from_token(issue_token(user.id, user.token_version))

        repository.bump_token_version(user)

        with pytest.raises(InvalidToken):
            context.resolve(repository)

    def test_unknown_user_is_invalid(self, test_db: Session):
        context = RequestContext.from_token(issue_token(999, 1))
        with pytest.raises(InvalidToken):
            context.resolve(Repository(test_db))


class TestSettings:

    @pytest.mark.parametrize("secret", ["", "   ", "changeme", "your_secret", "SECRET"])
    def test_placeholder_secret_refused(self, secret):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=secret)

    def test_missing_secret_refused(self, monkeypatch):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_custom_secret_accepted(self):
        assert Settings(jwt_secret="a-real-signing-key").jwt_secret == "a-real-signing-key"
