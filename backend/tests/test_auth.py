"""Tests for bearer-token verification."""
from datetime import timedelta

import jwt
import pytest

from kidslink.auth import Identity, TokenService, extract_bearer_token
from kidslink.errors import AuthenticationError

SECRET = "kidslink-auth-test-secret-0123456789"


@pytest.fixture
def token_service():
    return TokenService(secret_key=SECRET)


class TestTokenService:
    """Tests for TokenService.decode / issue."""

    def test_round_trip_claims(self, token_service):
        token = token_service.issue(Identity(id="u1", role="teacher", username="binh"))
        identity = token_service.decode(token)
        assert identity == Identity(id="u1", role="teacher", username="binh")

    def test_numeric_id_claim_is_stringified(self, token_service):
        token = jwt.encode({"id": 42, "role": "parent"}, SECRET, algorithm="HS256")
        identity = token_service.decode(token)
        assert identity.id == "42"
        assert identity.username == ""

    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, token_service, token):
        with pytest.raises(AuthenticationError) as exc:
            token_service.decode(token)
        assert exc.value.message == "Missing authentication token"
        assert exc.value.status_code == 401

    def test_garbage_token(self, token_service):
        with pytest.raises(AuthenticationError) as exc:
            token_service.decode("abc.def.ghi")
        assert exc.value.message == "Invalid or expired token"

    def test_expired_token(self, token_service):
        token = token_service.issue(Identity(id="u1"), expires_in=timedelta(seconds=-5))
        with pytest.raises(AuthenticationError):
            token_service.decode(token)

    def test_leeway_accepts_recently_expired(self):
        service = TokenService(secret_key=SECRET, leeway_seconds=60)
        token = service.issue(Identity(id="u1"), expires_in=timedelta(seconds=-5))
        assert service.decode(token).id == "u1"

    def test_wrong_secret(self, token_service):
        token = jwt.encode({"id": "u1"}, "another-secret-0123456789abcdefgh", algorithm="HS256")
        with pytest.raises(AuthenticationError):
            token_service.decode(token)

    def test_token_without_id(self, token_service):
        token = jwt.encode({"role": "parent"}, SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError) as exc:
            token_service.decode(token)
        assert exc.value.details == "token has no id claim"

    def test_algorithm_is_pinned(self, token_service):
        token = jwt.encode({"id": "u1"}, SECRET, algorithm="HS512")
        with pytest.raises(AuthenticationError):
            token_service.decode(token)


class TestExtractBearerToken:
    """Tests for credential extraction from handshake parameters."""

    def test_header(self):
        assert extract_bearer_token({"authorization": "Bearer abc"}, {}) == "abc"

    def test_query_param(self):
        assert extract_bearer_token({}, {"token": "xyz"}) == "xyz"

    def test_header_wins(self):
        assert extract_bearer_token({"authorization": "Bearer abc"}, {"token": "xyz"}) == "abc"

    def test_non_bearer_header_falls_back(self):
        assert extract_bearer_token({"authorization": "Basic Zm9v"}, {"token": "xyz"}) == "xyz"

    def test_custom_query_param(self):
        assert extract_bearer_token({}, {"access_token": "q"}, query_param="access_token") == "q"

    def test_nothing(self):
        assert extract_bearer_token({}, {}) is None
