"""
Prometheus queries through the control-plane proxy.

Every request carries the tenant header and a bearer token fresh from the
token source.
"""
import datetime
import logging
from typing import Any, Dict, Optional, Union

import requests

from pds_integration.auth import BearerAuth, TokenSource
from pds_integration.errors import PDSTestError

logger = logging.getLogger(__name__)

TENANT_HEADER = 'X-PDS-TenantID'
REQUEST_TIMEOUT = 60

Timestamp = Union[datetime.datetime, float]


class PrometheusError(PDSTestError):
    pass


def prometheus_url(control_plane_api: str) -> str:
    """https://host/api -> https://host/prometheus"""
    base = control_plane_api.rstrip('/')
    if base.endswith('/api'):
        base = base[:-len('/api')]
    return f"{base}/prometheus"


def _timestamp(value: Timestamp) -> float:
    if isinstance(value, datetime.datetime):
        return value.timestamp()
    return float(value)


class PrometheusClient:
    def __init__(self, url: str, token_source: TokenSource, tenant_id: str,
                 session: Optional[requests.Session] = None):
        self.url = url.rstrip('/')
        self.session = session or requests.Session()
        self.session.auth = BearerAuth(token_source, {TENANT_HEADER: tenant_id})

    @classmethod
    def for_control_plane(cls, control_plane_api: str, token_source: TokenSource,
                          tenant_id: str) -> 'PrometheusClient':
        return cls(prometheus_url(control_plane_api), token_source, tenant_id)

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.url}{path}"
        logger.debug("GET %s params=%s", url, params)
        response = self.session.get(url, params=params, timeout=REQUEST_TIMEOUT)
        if response.status_code != 200:
            raise PrometheusError(f"GET {url}: {response.status_code} ({response.text})")
        payload = response.json()
        if payload.get('status') != 'success':
            raise PrometheusError(f"query failed: {payload.get('errorType')}: {payload.get('error')}")
        return payload['data']

    def query(self, query: str, at: Optional[Timestamp] = None) -> Dict[str, Any]:
        """Instant query; returns the `data` object ({resultType, result})"""
        params: Dict[str, Any] = {'query': query}
        if at is not None:
            params['time'] = _timestamp(at)
        return self._get('/api/v1/query', params)

    def query_range(self, query: str, start: Timestamp, end: Timestamp, step: float) -> Dict[str, Any]:
        params = {'query': query, 'start': _timestamp(start), 'end': _timestamp(end), 'step': step}
        return self._get('/api/v1/query_range', params)
