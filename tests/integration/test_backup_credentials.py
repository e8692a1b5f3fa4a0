"""
Backup credentials CRUD on the control plane
"""
import json

import pytest
from rich.console import Console

from pds_integration.controlplane.models import AzureCredentials, GoogleCredentials, S3Credentials
from pds_integration.errors import ConflictError, NotFoundError
from pds_integration.naming import random_name

console = Console()


@pytest.fixture
def azure_credentials(control_plane, deferrals):
    name = random_name('azure-creds')
    created = control_plane.create_backup_credentials(name, AzureCredentials('pdsaccount', 'c2VjcmV0').to_dict())
    deferrals.push('delete backup credentials', control_plane.must_delete_backup_credentials_if_exists,
                   created['id'])
    return created


@pytest.mark.integration
def test_duplicate_name_conflicts(control_plane, azure_credentials):
    """Credentials names are unique per tenant."""
    with pytest.raises(ConflictError) as exc_info:
        control_plane.create_backup_credentials(azure_credentials['name'],
                                                AzureCredentials('other', 'b3RoZXI=').to_dict())
    assert exc_info.value.status == 409


@pytest.mark.integration
def test_secrets_not_returned(control_plane, azure_credentials):
    """Reading the credentials payload never returns the account key."""
    payload = control_plane.get_backup_credentials_no_secrets(azure_credentials['id'])

    azure = payload.get('azure') or {}
    assert azure.get('account_name') == 'pdsaccount'
    assert not azure.get('account_key')


@pytest.mark.integration
def test_google_credentials_update(control_plane, deferrals):
    name = random_name('gcp-creds')
    json_key = json.dumps({'type': 'service_account', 'project_id': 'pds-test'})
    created = control_plane.create_backup_credentials(name, GoogleCredentials('pds-test', json_key).to_dict())
    deferrals.push('delete backup credentials', control_plane.must_delete_backup_credentials_if_exists,
                   created['id'])

    renamed = random_name('gcp-creds')
    control_plane.update_google_backup_credentials(created['id'], renamed, 'pds-test-2', json_key)

    assert control_plane.get_backup_credentials(created['id'])['name'] == renamed
    payload = control_plane.get_backup_credentials_no_secrets(created['id'])
    assert (payload.get('google') or {}).get('project_id') == 'pds-test-2'


@pytest.mark.integration
def test_listed_and_deleted(control_plane, azure_credentials):
    """Deleted credentials disappear from the listing and cannot be deleted twice."""
    listed = [c['id'] for c in control_plane.list_backup_credentials()]
    assert azure_credentials['id'] in listed

    control_plane.must_delete_backup_credentials(azure_credentials['id'])

    assert azure_credentials['id'] not in [c['id'] for c in control_plane.list_backup_credentials()]
    with pytest.raises(NotFoundError):
        control_plane.delete_backup_credentials(azure_credentials['id'])


@pytest.fixture
def credentials_in_use(orchestrator, s3_settings, deferrals):
    credentials, _ = orchestrator.ensure_backup_target(deferrals)
    return credentials


@pytest.mark.integration
def test_update_credentials_used_by_target_conflicts(control_plane, credentials_in_use, s3_settings):
    """Credentials referenced by a backup target cannot be changed."""
    rotated = S3Credentials(s3_settings.s3_access_key, 'rotated-secret', s3_settings.s3_endpoint)

    with pytest.raises(ConflictError) as exc_info:
        control_plane.update_backup_credentials(credentials_in_use['id'], credentials_in_use['name'],
                                                rotated.to_dict())
    assert exc_info.value.status == 409


@pytest.mark.integration
def test_delete_credentials_used_by_target_conflicts(control_plane, credentials_in_use):
    """Credentials referenced by a backup target cannot be deleted."""
    with pytest.raises(ConflictError) as exc_info:
        control_plane.delete_backup_credentials(credentials_in_use['id'])
    assert exc_info.value.status == 409

    assert control_plane.get_backup_credentials(credentials_in_use['id'])['id'] == credentials_in_use['id']
