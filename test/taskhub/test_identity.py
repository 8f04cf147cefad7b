"""
Tests for bearer token resolution.
"""

from datetime import timedelta

import jwt
import pytest

from taskhub.errors import Unauthenticated
from taskhub.identity import IdentityProvider, extract_bearer_token
from taskhub.models import Role

from conftest import TEST_JWT_SECRET


class TestExtractBearerToken:

    @pytest.mark.parametrize("header,expected", [
        ("Bearer abc.def", "abc.def"),
        ("bearer   abc", "abc"),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ])
    def test_extract(self, header, expected):
        assert extract_bearer_token(header) == expected


class TestIdentityProvider:

    def test_round_trip_resolves_actor(self, identity, db, users):
        token = identity.issue_token(db.get_user(users["manager"]))
        actor = identity.resolve(token)
        assert actor.id == users["manager"]
        assert actor.role is Role.MANAGER

    def test_stored_role_is_authoritative(self, identity, db, users):
        token = identity.issue_token(db.get_user(users["alice"]))
        db.update_user(users["alice"], {"role": Role.MANAGER})
        assert identity.resolve(token).role is Role.MANAGER

    def test_forged_role_claim_ignored(self, identity, users):
        token = jwt.encode({"sub": str(users["alice"]), "role": "Admin", "exp": 9999999999},
                           TEST_JWT_SECRET, algorithm="HS256")
        assert identity.resolve(token).role is Role.USER

    def test_missing_token(self, identity):
        with pytest.raises(Unauthenticated):
            identity.resolve(None)

    def test_wrong_secret(self, identity, users):
        token = jwt.encode({"sub": str(users["alice"]), "exp": 9999999999}, "another-secret-entirely",
                           algorithm="HS256")
        with pytest.raises(Unauthenticated, match="Invalid token"):
            identity.resolve(token)

    def test_expired_token(self, identity, db, users):
        token = identity.issue_token(db.get_user(users["alice"]), expires_in=timedelta(seconds=-5))
        with pytest.raises(Unauthenticated, match="expired"):
            identity.resolve(token)

    def test_garbage_token(self, identity):
        with pytest.raises(Unauthenticated):
            identity.resolve("not-a-jwt")

    def test_non_numeric_subject(self, identity):
        token = jwt.encode({"sub": "alice", "exp": 9999999999}, TEST_JWT_SECRET, algorithm="HS256")
        with pytest.raises(Unauthenticated):
            identity.resolve(token)

    def test_deleted_user(self, identity, db, users):
        token = identity.issue_token(db.get_user(users["bob"]))
        db.delete_user(users["bob"])
        with pytest.raises(Unauthenticated, match="does not exist"):
            identity.resolve(token)

    def test_settings_algorithm_used(self, db, settings, users):
        provider = IdentityProvider(db, settings)
        token = provider.issue_token(db.get_user(users["alice"]))
        assert jwt.get_unverified_header(token)["alg"] == settings.jwt_algorithm
