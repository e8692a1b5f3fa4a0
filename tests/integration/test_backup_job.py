"""
Backup job listing and deletion
"""
import pytest
from rich.console import Console

from pds_integration.dataservices import POSTGRESQL

console = Console()


@pytest.fixture
def backed_up_deployment(orchestrator, spec_for, s3_settings, deferrals):
    """(deployment ID, backup, backup job) of a PostgreSQL deployment with one ad-hoc backup"""
    deployment_id = orchestrator.deploy_data_service(deferrals, spec_for(POSTGRESQL))
    _, target = orchestrator.ensure_backup_target(deferrals)
    backup, job = orchestrator.adhoc_backup_job(deferrals, deployment_id, target['id'])
    return deployment_id, backup, job


@pytest.mark.integration
def test_backup_job_listing_filters(control_plane, deployment_target_id, backed_up_deployment):
    """The job shows up under every filter that matches it."""
    deployment_id, backup, job = backed_up_deployment

    for filters in ({'backup_id': backup['id']}, {'deployment_id': deployment_id},
                    {'deployment_target_id': deployment_target_id},
                    {'namespace_id': control_plane.namespace_id}):
        listed = [j['id'] for j in control_plane.list_backup_jobs_in_project(**filters)]
        assert job['id'] in listed, f"Backup job {job['id']} not listed with {filters}"

    assert [j['id'] for j in control_plane.list_backup_jobs_of_backup(backup['id'])] == [job['id']]
    assert control_plane.wait_for_backup_job_status(job['id'])['status'] == 'Succeeded'


@pytest.mark.integration
def test_delete_backup_job_by_id(control_plane, backed_up_deployment):
    _, _, job = backed_up_deployment

    control_plane.must_delete_backup_job(job['id'])

    control_plane.must_wait_for_backup_job_id_removed(job['id'])


@pytest.mark.integration
def test_delete_backup_job_by_name(control_plane, backed_up_deployment):
    _, backup, job = backed_up_deployment

    control_plane.must_delete_backup_job_by_name(backup['id'], job['name'])

    control_plane.must_wait_for_backup_job_removed(backup['id'], job['name'])


@pytest.mark.integration
def test_target_cluster_deletion_cascades(orchestrator, control_plane, cross_cluster, backed_up_deployment):
    """Deleting the Backup CR on the target cluster removes the job on both sides and its snapshot."""
    deployment_id, backup, job = backed_up_deployment
    _, namespace = cross_cluster.deployment_context(deployment_id)

    job_cr_name = orchestrator.delete_tc_backup_job(deployment_id, backup)

    control_plane.must_wait_for_backup_job_id_removed(job['id'])
    cross_cluster.must_not_have_backup_job_cr(namespace, job_cr_name)
    cross_cluster.must_not_have_volume_snapshot(namespace, job_cr_name)
    console.print(f"[green]✓ Backup job {job['id']} removed from both sides[/green]")
