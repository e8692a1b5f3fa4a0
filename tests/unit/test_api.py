"""
Unit tests for the control-plane HTTP client and authentication
"""
from unittest import mock

import pytest
import requests

from pds_integration.api import PDSClient
from pds_integration.auth import BearerAuth, OAuth2TokenSource, StaticTokenSource, token_source_from_settings
from pds_integration.config import Settings
from pds_integration.errors import (
    ApiError, ConfigError, ConflictError, NotFoundError, TransientRemoteError, UnprocessableError,
)

API_URL = 'https://pds.example.com/api'


def _response(status=200, payload=None, text=''):
    response = mock.Mock(status_code=status, url='')
    response.content = b'{}' if payload is not None else text.encode()
    response.text = text
    response.json.return_value = payload
    return response


def _client(*responses):
    session = mock.Mock()
    session.request.side_effect = list(responses)
    return PDSClient(API_URL, StaticTokenSource('t0k3n'), session=session), session


@pytest.mark.unit
def test_rejects_non_http_url():
    with pytest.raises(ValueError):
        PDSClient('ftp://pds.example.com', StaticTokenSource('x'))


@pytest.mark.unit
def test_get_decodes_json_and_drops_empty_params():
    api, session = _client(_response(payload={'id': 'd-1'}))

    assert api.get('deployments/d-1', params={'expand': 'status', 'sort_by': ''}) == {'id': 'd-1'}
    session.request.assert_called_once_with(
        'GET', f"{API_URL}/deployments/d-1", json=None, params={'expand': 'status'}, timeout=60,
    )


@pytest.mark.unit
def test_list_data_returns_items():
    api, _ = _client(_response(payload={'data': [{'id': 'a'}, {'id': 'b'}]}))
    assert api.list_data('accounts') == [{'id': 'a'}, {'id': 'b'}]


@pytest.mark.unit
def test_no_content_returns_none():
    api, _ = _client(_response(status=204, text=''))
    assert api.delete('backups/b-1') is None


@pytest.mark.unit
@pytest.mark.parametrize('status,error', [
    (400, ApiError),
    (404, NotFoundError),
    (409, ConflictError),
    (422, UnprocessableError),
    (502, TransientRemoteError),
])
def test_error_statuses(status, error):
    api, _ = _client(_response(status=status, text='{"message":"nope"}'))

    with pytest.raises(error) as exc_info:
        api.post('backup-credentials', {'name': 'x'})

    assert exc_info.value.status == status
    assert 'nope' in str(exc_info.value)


@pytest.mark.unit
def test_expected_statuses_can_be_narrowed():
    api, _ = _client(_response(status=200, payload={}))

    with pytest.raises(ApiError):
        api.request('DELETE', 'deployment-targets/t-1', expected=(204,))


@pytest.mark.unit
def test_connection_errors_are_transient():
    session = mock.Mock()
    session.request.side_effect = requests.ConnectionError('connection refused')
    api = PDSClient(API_URL, StaticTokenSource('x'), session=session)

    with pytest.raises(TransientRemoteError):
        api.get('metadata')


@pytest.mark.unit
def test_get_account_by_name():
    api, _ = _client(_response(payload={'data': [{'id': 'a-1', 'name': 'Other'}, {'id': 'a-2', 'name': 'Portworx'}]}),
                     _response(payload={'data': []}))

    assert api.get_account('Portworx')['id'] == 'a-2'
    with pytest.raises(LookupError):
        api.get_account('Portworx')


@pytest.mark.unit
def test_bearer_auth_sets_headers():
    request = mock.Mock(headers={})
    auth = BearerAuth(StaticTokenSource('t0k3n'), {'X-PDS-TenantID': 'tenant-1'})

    auth(request)

    assert request.headers == {'Authorization': 'Bearer t0k3n', 'X-PDS-TenantID': 'tenant-1'}


@pytest.mark.unit
def test_oauth2_password_grant_and_cache():
    session = mock.Mock()
    session.get.return_value = _response(payload={'token_endpoint': 'https://issuer/token'})
    session.post.return_value = _response(payload={'access_token': 'abc', 'expires_in': 3600})
    source = OAuth2TokenSource('https://issuer', '4', username='ci', password='pw', session=session)

    assert source.token() == 'abc'
    assert source.token() == 'abc'

    session.post.assert_called_once()
    data = session.post.call_args.kwargs['data']
    assert data == {'grant_type': 'password', 'username': 'ci', 'password': 'pw', 'client_id': '4'}


@pytest.mark.unit
def test_oauth2_client_credentials_grant():
    session = mock.Mock()
    session.get.return_value = _response(payload={'token_endpoint': 'https://issuer/token'})
    session.post.return_value = _response(payload={'access_token': 'xyz'})
    source = OAuth2TokenSource('https://issuer', '4', client_secret='s3cret', session=session)

    assert source.token() == 'xyz'
    data = session.post.call_args.kwargs['data']
    assert data['grant_type'] == 'client_credentials'
    assert data['client_secret'] == 's3cret'


@pytest.mark.unit
def test_token_source_from_settings():
    assert isinstance(token_source_from_settings(Settings(token='abc')), StaticTokenSource)
    assert isinstance(token_source_from_settings(Settings(username='u', password='p')), OAuth2TokenSource)
    with pytest.raises(ConfigError):
        token_source_from_settings(Settings())
