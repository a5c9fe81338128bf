import pytest
import requests
from unittest.mock import MagicMock, patch

from auth_utils import ClientCredentialTokenProvider, StaticTokenProvider, token_url_for
from errors import CredentialError


def _token_response(status_code=200, body=None):
    res = MagicMock()
    res.status_code = status_code
    res.json.return_value = body if body is not None else {"access_token": "tok-1", "expires_in": 3600}
    res.text = "error"
    return res


@pytest.fixture
def now():
    return [0.0]


@pytest.fixture
def provider(now):
    return ClientCredentialTokenProvider(
        token_url=token_url_for("tenant-1"),
        client_id="app-id",
        client_secret="app-secret",
        clock=lambda: now[0],
    )


class TestStaticTokenProvider:
    def test_returns_token(self):
        assert StaticTokenProvider(" abc ").get_token() == "abc"

    def test_missing_token(self):
        with pytest.raises(CredentialError):
            StaticTokenProvider("").get_token()


class TestClientCredentialTokenProvider:
    def test_posts_client_credential_grant(self, provider):
        with patch("auth_utils.requests.post", return_value=_token_response()) as post:
            assert provider.get_token() == "tok-1"

        args, kwargs = post.call_args
        assert args[0] == "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
        assert kwargs["data"] == {
            "grant_type": "client_credentials",
            "client_id": "app-id",
            "client_secret": "app-secret",
            "scope": "https://graph.microsoft.com/.default",
        }

    def test_token_is_cached_until_expiry(self, provider, now):
        responses = [
            _token_response(body={"access_token": "first", "expires_in": 3600}),
            _token_response(body={"access_token": "second", "expires_in": 3600}),
        ]
        with patch("auth_utils.requests.post", side_effect=responses) as post:
            assert provider.get_token() == "first"
            now[0] = 3000
            assert provider.get_token() == "first"
            now[0] = 3541
            assert provider.get_token() == "second"
        assert post.call_count == 2

    def test_invalidate_forces_refresh(self, provider):
        with patch("auth_utils.requests.post", return_value=_token_response()) as post:
            provider.get_token()
            provider.invalidate()
            provider.get_token()
        assert post.call_count == 2

    def test_invalid_expires_in(self, provider):
        body = {"access_token": "tok-1", "expires_in": "soon"}
        with patch("auth_utils.requests.post", return_value=_token_response(body=body)):
            with pytest.raises(CredentialError, match="expires_in"):
                provider.get_token()

    def test_endpoint_error(self, provider):
        with patch("auth_utils.requests.post", return_value=_token_response(status_code=400)):
            with pytest.raises(CredentialError):
                provider.get_token()

    def test_endpoint_unreachable(self, provider):
        with patch("auth_utils.requests.post", side_effect=requests.Timeout("slow")):
            with pytest.raises(CredentialError):
                provider.get_token()

    def test_response_without_token(self, provider):
        with patch("auth_utils.requests.post", return_value=_token_response(body={"token_type": "Bearer"})):
            with pytest.raises(CredentialError):
                provider.get_token()

    def test_missing_client_secret(self):
        provider = ClientCredentialTokenProvider(token_url_for("t"), client_id="app", client_secret="")
        with patch("auth_utils.requests.post") as post:
            with pytest.raises(CredentialError):
                provider.get_token()
        post.assert_not_called()
