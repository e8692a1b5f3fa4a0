"""
HTTP client for the PDS control-plane REST API.

Responses are decoded JSON dicts. Non-success statuses are raised as the
ApiError subclass matching the status, with the response body attached.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from pds_integration.auth import BearerAuth, TokenSource
from pds_integration.errors import ApiError, TransientRemoteError, api_error_for

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60
SUCCESS_STATUSES = (200, 201, 202, 204)


class PDSClient:
    def __init__(self, api_url: str, token_source: TokenSource, session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT):
        if not api_url.startswith(('http://', 'https://')):
            raise ValueError(f"parsing API URL {api_url!r}: scheme must be http or https")
        self.url = api_url.rstrip('/')
        self.token_source = token_source
        self.session = session or requests.Session()
        self.session.auth = BearerAuth(token_source)
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.url}/{path.lstrip('/')}"

    def raw_request(self, method: str, path: str, json: Any = None,
                    params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Send a request and return the response whatever its status"""
        url = self._url(path)
        if params:
            params = {k: v for k, v in params.items() if v is not None and v != ''}
        logger.debug("%s %s params=%s", method, url, params)
        try:
            return self.session.request(method, url, json=json, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientRemoteError(0, method, url, str(e)) from e

    def request(self, method: str, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None,
                expected: Sequence[int] = SUCCESS_STATUSES) -> Any:
        response = self.raw_request(method, path, json=json, params=params)
        if response.status_code not in expected:
            raise api_error_for(response.status_code, method, response.url or self._url(path), response.text)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(response.status_code, method, self._url(path),
                           f"invalid JSON response: {response.text[:200]}") from e

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request('GET', path, params=params)

    def post(self, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request('POST', path, json=json, params=params)

    def put(self, path: str, json: Any = None) -> Any:
        return self.request('PUT', path, json=json)

    def patch(self, path: str, json: Any = None) -> Any:
        return self.request('PATCH', path, json=json)

    def delete(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request('DELETE', path, params=params)

    def list_data(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET a list endpoint and return its `data` items"""
        body = self.get(path, params=params) or {}
        return body.get('data') or []

    # Identity

    def get_account(self, account_name: str) -> Dict[str, Any]:
        for account in self.list_data('accounts'):
            if account.get('name') == account_name:
                return account
        raise LookupError(f"account {account_name!r} was not found")

    def get_tenant(self, account_id: str, tenant_name: str) -> Dict[str, Any]:
        for tenant in self.list_data(f"accounts/{account_id}/tenants"):
            if tenant.get('name') == tenant_name:
                return tenant
        raise LookupError(f"tenant {tenant_name!r} was not found in account with ID {account_id!r}")

    def get_project(self, tenant_id: str, project_name: str) -> Dict[str, Any]:
        for project in self.list_data(f"tenants/{tenant_id}/projects"):
            if project.get('name') == project_name:
                return project
        raise LookupError(f"project {project_name!r} was not found under tenant with ID {tenant_id!r}")

    def get_metadata(self) -> Dict[str, Any]:
        return self.get('metadata')
