"""
Unit tests for the control-plane facade with a mocked API client
"""
from unittest import mock

import pytest

from pds_integration.controlplane import ControlPlane, ImageReference, ShortDeploymentSpec
from pds_integration.controlplane.models import (
    AzureCredentials, DataServiceTemplateInfo, S3CompatibleCredentials, TemplateInfo,
)
from pds_integration.errors import ApiError, NotFoundError, RequirementFailed, WaitTimeout

POSTGRES_IMAGES = [
    ImageReference('PostgreSQL', 'ds-pg', 'v-15', '15.3', 'abc123', 'img-1'),
    ImageReference('PostgreSQL', 'ds-pg', 'v-15', '15.3', 'def456', 'img-2'),
    ImageReference('PostgreSQL', 'ds-pg', 'v-14', '14.8', 'aaa111', 'img-3'),
]


def _control_plane():
    cp = ControlPlane(mock.Mock())
    cp.tenant_id = 'tenant-1'
    cp.project_id = 'project-1'
    cp.namespace_id = 'ns-1'
    cp.deployment_target_id = 'dt-1'
    cp.storage_template_id = 'st-1'
    cp.storage_template_name = 'ft-storage'
    cp.image_versions = list(POSTGRES_IMAGES)
    cp.templates = {
        'PostgreSQL': DataServiceTemplateInfo(
            app_config_templates=[TemplateInfo('ac-1', 'ft-pg-config')],
            resource_templates=[TemplateInfo('rs-1', 'ft-pg-small')],
        ),
    }
    return cp


@pytest.mark.unit
@pytest.mark.parametrize('tag,build,expected', [
    ('', '', 'img-1'),
    ('15.3', '', 'img-1'),
    ('15.3', 'def456', 'img-2'),
    ('14.8', '', 'img-3'),
    ('13.0', '', None),
])
def test_find_image_version(tag, build, expected):
    cp = _control_plane()
    image = cp.find_image_version(ShortDeploymentSpec('PostgreSQL', image_version_tag=tag, image_version_build=build))
    assert (image.image_id if image else None) == expected


@pytest.mark.unit
def test_set_default_image_version_build():
    cp = _control_plane()
    spec = ShortDeploymentSpec('PostgreSQL', image_version_tag='15.3', image_version_build='def456')

    cp.set_default_image_version_build(spec)
    assert spec.image_version_build == 'def456'

    cp.set_default_image_version_build(spec, overwrite=True)
    assert spec.image_version_build == 'abc123'


@pytest.mark.unit
def test_deploy_deployment_spec_body():
    cp = _control_plane()
    cp.api.post.return_value = {'id': 'd-1', 'name': 'pg-test'}

    deployment_id = cp.deploy_deployment_spec(ShortDeploymentSpec('PostgreSQL', image_version_tag='14.8',
                                                                  name_prefix='pg-test'))

    assert deployment_id == 'd-1'
    path, body = cp.api.post.call_args.args
    assert path == 'projects/project-1/deployments'
    assert body == {
        'name': 'pg-test',
        'image_id': 'img-3',
        'deployment_target_id': 'dt-1',
        'namespace_id': 'ns-1',
        'node_count': 1,
        'service_type': 'ClusterIP',
        'storage_options_template_id': 'st-1',
        'tls_enabled': False,
        'resource_settings_template_id': 'rs-1',
        'application_configuration_template_id': 'ac-1',
    }


@pytest.mark.unit
def test_deploy_generates_name_and_scheduled_backup():
    cp = _control_plane()
    cp.api.list_data.side_effect = [
        [{'id': 'bp-1', 'name': 'hourly'}],
        [{'id': 'bt-1', 'name': 'bucket-target'}],
    ]
    cp.api.post.return_value = {'id': 'd-2'}
    spec = ShortDeploymentSpec('PostgreSQL', node_count=3, backup_policy_name='hourly',
                               backup_target_name='bucket-target')

    cp.deploy_deployment_spec(spec, namespace_id='ns-2')

    body = cp.api.post.call_args.args[1]
    assert body['name'].startswith('postgresql-')
    assert len(body['name']) == len('postgresql-') + 6
    assert body['namespace_id'] == 'ns-2'
    assert body['node_count'] == 3
    assert body['scheduled_backup'] == {'backup_policy_id': 'bp-1', 'backup_target_id': 'bt-1'}


@pytest.mark.unit
def test_must_deploy_without_image():
    cp = _control_plane()

    with pytest.raises(RequirementFailed):
        cp.must_deploy_deployment_spec(ShortDeploymentSpec('Redis'))
    cp.api.post.assert_not_called()


@pytest.mark.unit
@pytest.mark.parametrize('policy,target', [('hourly', ''), ('', 'bucket-target')])
def test_update_requires_policy_and_target_together(policy, target):
    cp = _control_plane()

    with pytest.raises(RequirementFailed):
        cp.must_update_deployment('d-1', ShortDeploymentSpec('PostgreSQL', backup_policy_name=policy,
                                                             backup_target_name=target))
    cp.api.put.assert_not_called()


@pytest.mark.unit
def test_update_image_and_node_count():
    cp = _control_plane()
    cp.api.get.return_value = {'id': 'd-1', 'data_service_id': 'ds-pg'}

    cp.must_update_deployment('d-1', ShortDeploymentSpec('PostgreSQL', image_version_tag='15.3',
                                                         image_version_build='def456', node_count=2))

    cp.api.put.assert_called_once_with('deployments/d-1', {'image_id': 'img-2', 'node_count': 2})


@pytest.mark.unit
def test_fail_update_deployment_returns_expected_error():
    cp = _control_plane()
    cp.api.get.return_value = {'id': 'd-1', 'data_service_id': 'ds-pg'}
    cp.api.put.side_effect = ApiError(400, 'PUT', 'deployments/d-1', 'node count exceeds limit')

    error = cp.fail_update_deployment('d-1', ShortDeploymentSpec('PostgreSQL'))

    assert error.status == 400
    assert cp.api.put.call_args.args[1] == {'node_count': 10}


@pytest.mark.unit
def test_fail_update_deployment_wrong_status():
    cp = _control_plane()
    cp.api.get.return_value = {'id': 'd-1'}
    cp.api.put.side_effect = ApiError(500, 'PUT', 'deployments/d-1')

    with pytest.raises(AssertionError):
        cp.fail_update_deployment('d-1', ShortDeploymentSpec('PostgreSQL'))


@pytest.mark.unit
def test_fail_update_deployment_when_update_succeeds():
    cp = _control_plane()
    cp.api.get.return_value = {'id': 'd-1'}
    cp.api.put.return_value = {'id': 'd-1'}

    with pytest.raises(RequirementFailed):
        cp.fail_update_deployment('d-1', ShortDeploymentSpec('PostgreSQL', node_count=4))


@pytest.mark.unit
def test_wait_for_deployment_healthy():
    cp = _control_plane()
    cp.api.get.side_effect = [{'id': 'd-1', 'node_count': 1}, {'health': 'Healthy'}]

    cp.must_wait_for_deployment_healthy('d-1')

    assert cp.api.get.call_args.args[0] == 'deployments/d-1/status'


@pytest.mark.unit
def test_remove_deployment_if_exists():
    cp = _control_plane()
    cp.api.get.side_effect = NotFoundError(404, 'GET', 'deployments/d-1')

    cp.must_remove_deployment_if_exists('d-1')
    cp.api.delete.assert_not_called()

    cp.api.get.side_effect = None
    cp.api.get.return_value = {'id': 'd-1'}
    cp.must_remove_deployment_if_exists('d-1')
    cp.api.delete.assert_called_once_with('deployments/d-1')


@pytest.mark.unit
def test_deployment_events_sorted_newest_first():
    cp = _control_plane()
    cp.api.get.return_value = [
        {'name': 'e3', 'timestamp': '2023-05-01T10:00:02Z'},
        {'name': 'e2', 'timestamp': '2023-05-01T10:00:01Z'},
        {'name': 'e1', 'timestamp': '2023-05-01T10:00:01Z'},
    ]
    cp.must_have_deployment_events_sorted('d-1')
    cp.must_have_no_duplicate_deployment_events('d-1')

    cp.api.get.return_value = [
        {'name': 'e1', 'timestamp': '2023-05-01T10:00:00Z'},
        {'name': 'e1', 'timestamp': '2023-05-01T10:00:05Z'},
    ]
    with pytest.raises(AssertionError):
        cp.must_have_deployment_events_sorted('d-1')
    with pytest.raises(AssertionError):
        cp.must_have_no_duplicate_deployment_events('d-1')


@pytest.mark.unit
def test_events_belong_to_deployment():
    cp = _control_plane()
    cp.api.get.side_effect = [
        {'id': 'd-1', 'cluster_resource_name': 'pg-abc'},
        [{'name': 'e1', 'resource_name': 'pg-abc-0'}, {'name': 'e2', 'resource_name': 'redis-xyz-0'}],
    ]

    with pytest.raises(AssertionError):
        cp.must_have_deployment_events_for_correct_deployment('d-1')


@pytest.mark.unit
def test_events_of_removed_deployment_error():
    cp = _control_plane()
    cp.api.get.side_effect = NotFoundError(404, 'GET', 'deployments/d-1/events')
    cp.must_get_error_on_deployment_events_get('d-1')

    cp.api.get.side_effect = None
    cp.api.get.return_value = []
    with pytest.raises(RequirementFailed):
        cp.must_get_error_on_deployment_events_get('d-1')


@pytest.mark.unit
def test_backup_endpoints():
    cp = _control_plane()
    cp.api.post.return_value = {'id': 'b-1'}

    assert cp.must_create_backup('d-1', 'bt-1') == {'id': 'b-1'}
    cp.api.post.assert_called_with('deployments/d-1/backups', {
        'backup_level': 'snapshot', 'backup_target_id': 'bt-1', 'backup_type': 'adhoc',
    })

    cp.delete_backup('b-1', local_only=True)
    cp.api.delete.assert_called_with('backups/b-1', params={'local_only': 'true'})

    cp.must_create_backup_policy('hourly', '0 * * * *', 5)
    cp.api.post.assert_called_with('tenants/tenant-1/backup-policies', {
        'name': 'hourly', 'schedules': [{'schedule': '0 * * * *', 'retention_count': 5, 'type': 'full'}],
    })


@pytest.mark.unit
def test_backup_credentials_bodies():
    cp = _control_plane()

    cp.must_create_s3_backup_credentials('creds', 'AKIA', 'secret', 's3.amazonaws.com')
    cp.api.post.assert_called_with('tenants/tenant-1/backup-credentials', {
        'name': 'creds',
        'credentials': {'s3': {'access_key': 'AKIA', 'secret_key': 'secret', 'endpoint': 's3.amazonaws.com'}},
    })

    assert AzureCredentials('acct', 'key').to_dict() == {'azure': {'account_name': 'acct', 'account_key': 'key'}}
    assert 's3_compatible' in S3CompatibleCredentials('a', 'b', 'minio:9000').to_dict()


@pytest.mark.unit
def test_delete_backup_credentials_if_exists():
    cp = _control_plane()
    cp.api.delete.side_effect = NotFoundError(404, 'DELETE', 'backup-credentials/c-1')
    cp.must_delete_backup_credentials_if_exists('c-1')

    cp.api.delete.side_effect = ApiError(409, 'DELETE', 'backup-credentials/c-1', 'in use')
    with pytest.raises(AssertionError):
        cp.must_delete_backup_credentials_if_exists('c-1')


@pytest.mark.unit
def test_backup_target_state_for_test_target():
    cp = _control_plane()
    cp.api.list_data.return_value = [
        {'deployment_target_id': 'dt-other', 'state': 'failed_to_create'},
        {'deployment_target_id': 'dt-1', 'state': 'successful'},
    ]

    assert cp.must_ensure_backup_target_created_in_tc('bt-1')['state'] == 'successful'
    cp.api.list_data.assert_called_with('backup-targets/bt-1/states')

    with pytest.raises(LookupError):
        cp.get_backup_target_state('bt-1', deployment_target_id='dt-missing')


@pytest.mark.unit
def test_count_successful_backup_jobs():
    cp = _control_plane()
    cp.api.list_data.return_value = [
        {'id': 'j1', 'status': 'Succeeded'},
        {'id': 'j2', 'status': 'Failed'},
        {'id': 'j3', 'status': 'Succeeded'},
    ]

    assert cp.count_successful_backup_jobs('b-1') == 2
    assert cp.api.list_data.call_args.kwargs['params']['backup_id'] == 'b-1'
    cp.must_ensure_n_backup_jobs_success_from_schedule('b-1', 2)
    with pytest.raises(WaitTimeout):
        cp.must_ensure_n_backup_jobs_success_from_schedule('b-1', 3, timeout=0)


@pytest.mark.unit
def test_schedule_backup_skips_previous_schedule():
    cp = _control_plane()
    old = {'id': 'old-backup', 'cluster_resource_name': 'pg-old'}
    new = {'id': 'new-backup', 'cluster_resource_name': 'pg-new'}
    cp.api.list_data.side_effect = [[old], [old], [old, new]]

    with mock.patch('pds_integration.controlplane.backups.RETRY_INTERVAL', 0.01):
        rescheduled = cp.must_get_schedule_backup('d-1', exclude_ids=[old['id']], timeout=5)

    assert rescheduled['id'] == 'new-backup'
    assert cp.api.list_data.call_count == 3
    cp.api.list_data.assert_called_with('deployments/d-1/backups', params={'sort_by': 'created_at'})


@pytest.mark.unit
def test_schedule_backup_times_out_without_new_backup():
    cp = _control_plane()
    cp.api.list_data.return_value = [{'id': 'old-backup'}]

    assert cp.must_get_schedule_backup('d-1')['id'] == 'old-backup'
    with pytest.raises(WaitTimeout):
        cp.must_get_schedule_backup('d-1', exclude_ids=['old-backup'], timeout=0)


@pytest.mark.unit
def test_restore_endpoints():
    cp = _control_plane()
    cp.api.post.return_value = {'id': 'r-1'}

    cp.must_create_restore('j-1', 'restored-pg')
    cp.api.post.assert_called_with('backup-jobs/j-1/restore', {
        'deployment_target_id': 'dt-1', 'name': 'restored-pg', 'namespace_id': 'ns-1',
    })

    cp.must_retry_restore('r-1')
    cp.api.post.assert_called_with('restores/r-1/retry', {})

    cp.api.get.return_value = {'id': 'r-1', 'status': 'Failed'}
    assert cp.must_wait_for_restore_failed('r-1')['status'] == 'Failed'
