# backend/auth_utils.py

import logging
import threading
import time

import requests
from jose import JWTError, jwt

from errors import AuthenticationError, CredentialError

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
BOT_CONNECTOR_SCOPE = "https://api.botframework.com/.default"
LOGIN_BASE_URL = "https://login.microsoftonline.com"

# Refresh this many seconds before the token endpoint says it expires
EXPIRY_MARGIN_SECONDS = 60


def token_url_for(tenant: str) -> str:
    return f"{LOGIN_BASE_URL}/{tenant}/oauth2/v2.0/token"


class StaticTokenProvider:
    """Bearer token handed in through configuration, never refreshed."""

    def __init__(self, token: str):
        self.token = (token or "").strip()

    def get_token(self, timeout=None) -> str:
        if not self.token:
            raise CredentialError("static access token is not configured")
        return self.token

    def invalidate(self) -> None:
        pass


class ClientCredentialTokenProvider:
    """
    OAuth2 client-credential grant against the Microsoft identity platform.

    Tokens are cached until shortly before they expire, so a burst of
    bookings costs a single round trip to the token endpoint.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str = GRAPH_SCOPE,
        timeout: float = 10.0,
        clock=time.time,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.timeout = timeout
        self._clock = clock
        self._token = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get_token(self, timeout=None) -> str:
        with self._lock:
            if self._token and self._clock() < self._expires_at:
                return self._token
            self._token, self._expires_at = self._fetch(timeout or self.timeout)
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def _fetch(self, timeout: float):
        if not self.client_id or not self.client_secret:
            raise CredentialError("client id and secret are required for the client-credential grant")

        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scope,
        }
        try:
            res = requests.post(self.token_url, data=data, timeout=timeout)
        except requests.RequestException as e:
            logging.error(f"[TOKEN ERROR] {self.token_url} unreachable: {e}")
            raise CredentialError(f"failed to reach token endpoint: {e}") from e

        if res.status_code >= 400:
            logging.error(f"[TOKEN ERROR] status={res.status_code} body={res.text[:500]}")
            raise CredentialError(f"failed to get access token: status={res.status_code}")

        try:
            payload = res.json()
        except ValueError as e:
            raise CredentialError("token endpoint returned invalid JSON") from e

        token = payload.get("access_token")
        if not token:
            raise CredentialError("token endpoint response has no access_token")

        try:
            expires_in = int(payload.get("expires_in", 3600))
        except (TypeError, ValueError) as e:
            raise CredentialError(f"token endpoint returned invalid expires_in: {payload.get('expires_in')!r}") from e
        expires_at = self._clock() + max(expires_in - EXPIRY_MARGIN_SECONDS, 0)
        logging.info(f"[TOKEN ACQUIRED] scope={self.scope} | expires_in={expires_in}s")
        return token, expires_at


BOT_OPENID_METADATA_URL = "https://login.botframework.com/v1/.well-known/openidconfiguration"
BOT_TOKEN_ISSUER = "https://api.botframework.com"
SIGNING_KEYS_TTL_SECONDS = 24 * 3600


def fetch_bot_signing_keys(metadata_url: str = BOT_OPENID_METADATA_URL, timeout: float = 10.0) -> dict:
    try:
        metadata = requests.get(metadata_url, timeout=timeout)
        metadata.raise_for_status()
        keys = requests.get(metadata.json()["jwks_uri"], timeout=timeout)
        keys.raise_for_status()
        return keys.json()
    except (requests.RequestException, ValueError, KeyError) as e:
        logging.error(f"[BOT AUTH] could not load signing keys: {e}")
        raise AuthenticationError(f"signing keys unavailable: {e}") from e


def _normalize_url(url) -> str:
    return str(url or "").strip().rstrip("/").lower()


class BotTokenValidator:
    """
    Checks the bearer token the Bot Connector service puts on every activity.

    The token must be signed by one of the published Bot Framework keys,
    issued by the Bot Framework, addressed to this bot's app id, and bound
    to the same serviceUrl the activity asks us to reply to.
    """

    def __init__(self, app_id: str, keys_loader=None, timeout: float = 10.0, clock=time.time):
        self.app_id = app_id
        self.timeout = timeout
        self._keys_loader = keys_loader or (lambda: fetch_bot_signing_keys(timeout=self.timeout))
        self._clock = clock
        self._keys = None
        self._keys_loaded_at = 0.0
        self._lock = threading.Lock()

    def validate(self, authorization, service_url=None) -> dict:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("missing bearer token")
        token = token.strip()

        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as e:
            raise AuthenticationError(f"malformed token: {e}") from e

        key = self._signing_key(kid)
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self.app_id,
                issuer=BOT_TOKEN_ISSUER,
            )
        except JWTError as e:
            raise AuthenticationError(f"token rejected: {e}") from e

        if service_url is not None and _normalize_url(claims.get("serviceurl")) != _normalize_url(service_url):
            raise AuthenticationError("token serviceurl does not match activity serviceUrl")
        return claims

    def _signing_key(self, kid) -> dict:
        with self._lock:
            stale = self._keys is None or self._clock() - self._keys_loaded_at > SIGNING_KEYS_TTL_SECONDS
            if stale:
                self._load_keys()
            key = self._find_key(kid)
            if key is None and not stale:
                # Keys rotate; one refresh before giving up
                self._load_keys()
                key = self._find_key(kid)
        if key is None:
            raise AuthenticationError(f"unknown signing key {kid!r}")
        return key

    def _load_keys(self) -> None:
        self._keys = self._keys_loader().get("keys", [])
        self._keys_loaded_at = self._clock()

    def _find_key(self, kid):
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key
        return None
