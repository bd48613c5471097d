"""
Credential resolution. A bad or missing identity is always Unauthenticated,
never a fallback user id.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from lifecycle_guard.config import get_settings
from lifecycle_guard.domain import Actor, DenyReason, ReadPost, Role
from lifecycle_guard.errors import UnauthenticatedError
from lifecycle_guard.identity import (
    IdentityResolver,
    create_access_token,
    get_password_hash,
    parse_subject,
    verify_password,
)
from lifecycle_guard.models import User


def encode(claims, secret=None):
    settings = get_settings()
    payload = {"exp": datetime.now(timezone.utc) + timedelta(minutes=5), "type": "access"}
    payload.update(claims)
    return jwt.encode(payload, secret or settings.secret_key, algorithm=settings.algorithm)


class TestParseSubject:
    """Strict parsing of the `sub` claim"""

    def test_numeric_string(self):
        """Test a positive numeric subject parses"""
        assert parse_subject("7") == 7

    @pytest.mark.parametrize("sub", [None, "", "abc", "0", "-1", "7.0", True, "\u00b2", "\u0667", "9" * 40, 2 ** 63])
    def test_rejects_non_ids(self, sub):
        """Test anything that is not a positive integer is rejected"""
        with pytest.raises(UnauthenticatedError):
            parse_subject(sub)

    def test_largest_id(self):
        """Test the top of the 64-bit id range is still a valid subject"""
        assert parse_subject(str(2 ** 63 - 1)) == 2 ** 63 - 1


class TestIdentityResolver:
    """Resolving an Actor from a bearer token and the user table"""

    def test_resolves_user(self, db):
        """Test a valid token yields the user's id and stored role"""
        actor = IdentityResolver(db).resolve_actor(create_access_token(7))
        assert actor == Actor(id=7, role=Role.USER)
        assert not actor.is_admin

    def test_resolves_admin(self, db):
        """Test the role comes from the database row"""
        assert IdentityResolver(db).resolve_actor(create_access_token(1)).is_admin

    @pytest.mark.parametrize("credential", [None, "", "   "])
    def test_missing_credential(self, db, credential):
        """Test an absent credential is Unauthenticated"""
        with pytest.raises(UnauthenticatedError):
            IdentityResolver(db).resolve_actor(credential)

    def test_garbage_token(self, db):
        """Test a token that is not a JWT"""
        with pytest.raises(UnauthenticatedError):
            IdentityResolver(db).resolve_actor("not-a-token")

    def test_expired_token(self, db):
        """Test an expired token is rejected"""
        token = create_access_token(7, expires_delta=timedelta(minutes=-1))
        with pytest.raises(UnauthenticatedError, match="expired"):
            IdentityResolver(db).resolve_actor(token)

    def test_wrong_secret(self, db):
        """Test a token signed with another key is rejected"""
        with pytest.raises(UnauthenticatedError):
            IdentityResolver(db).resolve_actor(encode({"sub": "7"}, secret="someone-else"))

    @pytest.mark.parametrize("claims", [
        {}, {"sub": "0"}, {"sub": "abc"}, {"sub": "\u00b2"}, {"sub": "7", "type": "refresh"},
    ])
    def test_bad_claims(self, db, claims):
        """Test missing, zero, malformed subjects and non-access tokens"""
        with pytest.raises(UnauthenticatedError):
            IdentityResolver(db).resolve_actor(encode(claims))

    def test_unknown_user(self, db):
        """Test a well-formed token for a user that does not exist"""
        with pytest.raises(UnauthenticatedError):
            IdentityResolver(db).resolve_actor(create_access_token(999))

    def test_inactive_user(self, db):
        """Test a deactivated user can no longer act"""
        db.query(User).filter(User.id == 7).update({"is_active": False})
        db.commit()
        with pytest.raises(UnauthenticatedError):
            IdentityResolver(db).resolve_actor(create_access_token(7))

    def test_orchestrator_reports_unauthenticated(self, orchestrator, make_post):
        """Test a bad credential comes back as a deny result, not an exception"""
        post_id = make_post(status="Published")
        result = orchestrator.request_transition(post_id, encode({"sub": "0"}), ReadPost())
        assert not result.ok
        assert result.reason == DenyReason.UNAUTHENTICATED


class TestPasswords:
    """Password hashing"""

    def test_hash_round_trip(self):
        """Test a hash verifies its own password and nothing else"""
        hashed = get_password_hash("correct-horse")
        assert hashed != "correct-horse"
        assert verify_password("correct-horse", hashed)
        assert not verify_password("wrong-horse", hashed)

    def test_missing_hash_never_matches(self):
        """Test accounts without a stored hash cannot log in"""
        assert not verify_password("anything", None)
