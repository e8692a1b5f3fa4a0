"""
Control-plane authentication.

A TokenSource hides whether a static bearer token, a password grant or a
client-credentials grant is in effect. BearerAuth asks the source for a token
on every request, so OAuth2 tokens are refreshed transparently.
"""
import logging
import threading
import time
from typing import Dict, Optional

import requests
from requests.auth import AuthBase

from pds_integration.config import Settings
from pds_integration.errors import ConfigError, PDSTestError

logger = logging.getLogger(__name__)

# Refresh a little before the issuer's expiry
EXPIRY_LEEWAY = 30
REQUEST_TIMEOUT = 30


class AuthError(PDSTestError):
    pass


class TokenSource:
    def token(self) -> str:
        raise NotImplementedError


class StaticTokenSource(TokenSource):
    def __init__(self, access_token: str):
        self._token = access_token

    def token(self) -> str:
        return self._token


class OAuth2TokenSource(TokenSource):
    """
    OAuth2 token source against an OIDC issuer.

    Uses the password grant when a username is given, otherwise the
    client-credentials grant. Tokens are cached until shortly before expiry and
    refreshed with the refresh token when the issuer returned one.
    """

    def __init__(self, issuer_url: str, client_id: str, client_secret: str = '', username: str = '',
                 password: str = '', session: Optional[requests.Session] = None):
        self.issuer_url = issuer_url.rstrip('/')
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.session = session or requests.Session()
        self._token_endpoint: Optional[str] = None
        self._access_token = ''
        self._refresh_token = ''
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def token_endpoint(self) -> str:
        if self._token_endpoint is None:
            url = f"{self.issuer_url}/.well-known/openid-configuration"
            response = self.session.get(url, timeout=REQUEST_TIMEOUT)
            if response.status_code != 200:
                raise AuthError(f"instantiating OIDC provider for {self.issuer_url!r}: "
                                f"{response.status_code} ({response.text})")
            endpoint = response.json().get('token_endpoint')
            if not endpoint:
                raise AuthError(f"OIDC provider {self.issuer_url!r} has no token_endpoint")
            self._token_endpoint = endpoint
        return self._token_endpoint

    def _grant(self) -> Dict[str, str]:
        if self._refresh_token:
            return {'grant_type': 'refresh_token', 'refresh_token': self._refresh_token}
        if self.username:
            return {'grant_type': 'password', 'username': self.username, 'password': self.password}
        return {'grant_type': 'client_credentials'}

    def _fetch(self) -> None:
        data = self._grant()
        data['client_id'] = self.client_id
        if self.client_secret:
            data['client_secret'] = self.client_secret
        response = self.session.post(self.token_endpoint(), data=data, timeout=REQUEST_TIMEOUT)
        if response.status_code != 200 and data['grant_type'] == 'refresh_token':
            logger.info("Refresh token rejected (%s), requesting a new token", response.status_code)
            self._refresh_token = ''
            return self._fetch()
        if response.status_code != 200:
            raise AuthError(f"token request to {self.token_endpoint()} failed: "
                            f"{response.status_code} ({response.text})")
        payload = response.json()
        self._access_token = payload['access_token']
        self._refresh_token = payload.get('refresh_token', '')
        expires_in = float(payload.get('expires_in') or 0)
        self._expires_at = time.monotonic() + expires_in - EXPIRY_LEEWAY if expires_in else float('inf')
        logger.debug("Obtained %s token, expires in %ss", data['grant_type'], expires_in)

    def token(self) -> str:
        with self._lock:
            if not self._access_token or time.monotonic() >= self._expires_at:
                self._fetch()
            return self._access_token


def token_source_from_settings(settings: Settings, session: Optional[requests.Session] = None) -> TokenSource:
    mode = settings.auth_mode()
    if mode == 'token':
        return StaticTokenSource(settings.token)
    if mode in ('password', 'client_credentials'):
        return OAuth2TokenSource(
            settings.issuer_url,
            settings.issuer_client_id,
            settings.issuer_client_secret,
            settings.username if mode == 'password' else '',
            settings.password if mode == 'password' else '',
            session=session,
        )
    raise ConfigError("no authentication configured")


class BearerAuth(AuthBase):
    """Sets Authorization: Bearer <token> (and optional extra headers) on each request"""

    def __init__(self, source: TokenSource, extra_headers: Optional[Dict[str, str]] = None):
        self.source = source
        self.extra_headers = extra_headers or {}

    def __call__(self, request):
        request.headers['Authorization'] = f"Bearer {self.source.token()}"
        for key, value in self.extra_headers.items():
            request.headers[key] = value
        return request
