"""
Scenario primitives.

Each primitive drives the control plane, waits for both sides to converge
and registers the cleanup of whatever it created on the scenario's deferral
stack, so teardown runs even when a later step fails.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from rich.console import Console

from pds_integration.cleanup import DeferralStack
from pds_integration.config import Settings
from pds_integration.controlplane import ControlPlane, ShortDeploymentSpec
from pds_integration.controlplane.restores import ERROR_CODE_PX_CREDENTIALS_NOT_FOUND
from pds_integration.crosscluster import CrossCluster, adhoc_name
from pds_integration.naming import random_name
from pds_integration.targetcluster import TELEPORT_DEPLOYMENT, TargetCluster

console = Console()
logger = logging.getLogger(__name__)

# Slack on top of N schedule intervals when counting scheduled backups
SCHEDULE_SLACK = 5 * 60

FAKE_API_ENDPOINT = 'https://ci.pds-dev.io/api'


class Orchestrator:
    def __init__(self, control_plane: ControlPlane, target_cluster: TargetCluster, cross_cluster: CrossCluster,
                 settings: Settings):
        self.control_plane = control_plane
        self.target_cluster = target_cluster
        self.cross_cluster = cross_cluster
        self.settings = settings

    # Deployments

    def _remove_deployment(self, deployment_id: str) -> None:
        self.control_plane.must_remove_deployment_if_exists(deployment_id)
        self.control_plane.must_wait_for_deployment_removed(deployment_id)

    def deploy_data_service(self, deferrals: DeferralStack, spec: ShortDeploymentSpec,
                            namespace_id: str = '') -> str:
        """Create the deployment and wait until both sides report it ready"""
        console.print(f"[cyan]Deploying {spec.data_service_name} {spec.image_version_string()}...[/cyan]")
        deployment_id = self.control_plane.must_deploy_deployment_spec(spec, namespace_id)
        deferrals.push('remove deployment', self._remove_deployment, deployment_id)
        self.cross_cluster.must_wait_for_deployment_converged(deployment_id)
        console.print(f"[green]✓ Deployment {deployment_id} is healthy[/green]")
        return deployment_id

    def update_deployment(self, deployment_id: str, spec: ShortDeploymentSpec) -> None:
        self.control_plane.must_update_deployment(deployment_id, spec)
        self.control_plane.must_wait_for_deployment_manifest_initial_change(deployment_id)
        self.cross_cluster.must_wait_for_deployment_converged(deployment_id)

    def fail_update_deployment(self, deployment_id: str, spec: ShortDeploymentSpec, expected_status: int = 400):
        return self.control_plane.fail_update_deployment(deployment_id, spec, expected_status)

    # Backup targets

    def ensure_backup_target(self, deferrals: DeferralStack, name: str = '') -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """S3 credentials and a target created on the target cluster; returns (credentials, target)"""
        settings = self.settings
        credentials = self.control_plane.must_create_s3_backup_credentials(
            name or random_name('backup-creds'), settings.s3_access_key, settings.s3_secret_key, settings.s3_endpoint,
        )
        deferrals.push('delete backup credentials', self.control_plane.must_delete_backup_credentials_if_exists,
                       credentials['id'])
        target = self.control_plane.must_create_s3_backup_target(credentials['id'], settings.s3_bucket,
                                                                 settings.s3_region)
        deferrals.push('delete backup target', self.control_plane.must_delete_backup_target_if_exists, target['id'])
        self.control_plane.must_ensure_backup_target_created_in_tc(target['id'])
        return credentials, target

    def ensure_backup_policy(self, deferrals: DeferralStack, schedule: str, retention: int = 10,
                             name: str = '') -> Dict[str, Any]:
        policy = self.control_plane.must_create_backup_policy(name or random_name('backup-policy'), schedule,
                                                              retention)
        deferrals.push('delete backup policy', self.control_plane.delete_backup_policy, policy['id'])
        return policy

    # Backups

    def _delete_backup(self, backup_id: str, namespace: str, cluster_resource_name: str, local_only: bool) -> None:
        self.control_plane.delete_backup(backup_id, local_only=local_only)
        if local_only:
            self.target_cluster.delete_pds_backup_if_exists(namespace, cluster_resource_name)
        self.control_plane.must_wait_for_backup_removed(backup_id)

    def adhoc_backup(self, deferrals: DeferralStack, deployment_id: str, backup_target_id: str,
                     local_only_cleanup: bool = False) -> Dict[str, Any]:
        """Take an ad-hoc backup and wait for its BackupJob to succeed on the target cluster"""
        backup = self.control_plane.must_create_backup(deployment_id, backup_target_id)
        _, namespace = self.cross_cluster.deployment_context(deployment_id)
        deferrals.push('delete backup', self._delete_backup, backup['id'], namespace,
                       backup['cluster_resource_name'], local_only_cleanup)
        self.cross_cluster.must_ensure_backup_successful(deployment_id, backup['cluster_resource_name'])
        return backup

    def adhoc_backup_job(self, deferrals: DeferralStack, deployment_id: str,
                         backup_target_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Ad-hoc backup plus its correlated control-plane backup job"""
        backup = self.adhoc_backup(deferrals, deployment_id, backup_target_id)
        job = self.cross_cluster.must_correlate_adhoc_backup_job(deployment_id, backup)
        return backup, job

    def cleanup_scheduled_backups(self, deployment_id: str) -> None:
        """Delete the jobs and backups a backup schedule produced"""
        for backup in self.control_plane.list_backups_by_deployment(deployment_id):
            for job in self.control_plane.list_backup_jobs_in_project(backup_id=backup['id']):
                self.control_plane.must_delete_backup_job(job['id'])
            self.control_plane.delete_backup(backup['id'])

    def ensure_n_backup_jobs_success_from_schedule(self, backup_id: str, count: int,
                                                   schedule_interval: float = 60) -> None:
        self.control_plane.must_ensure_n_backup_jobs_success_from_schedule(
            backup_id, count, schedule_interval, timeout=count * schedule_interval + SCHEDULE_SLACK,
        )

    # Restores

    def restore_from_backup_job(self, deferrals: DeferralStack, backup_job_id: str, name: str = '',
                                namespace_id: str = '') -> Dict[str, Any]:
        """Restore into a new deployment and wait until it is ready on both sides"""
        restore = self.control_plane.must_create_restore(backup_job_id, name or random_name('restore'), namespace_id)
        restore = self.control_plane.must_wait_for_restore_successful(restore['id'])
        deployment_id = restore.get('deployment_id')
        assert deployment_id, f"Restore {restore['id']} has no deployment."
        deferrals.push('remove restored deployment', self._remove_deployment, deployment_id)
        self.cross_cluster.must_wait_for_deployment_converged(deployment_id)
        return restore

    def restore_expecting_failure(self, deferrals: DeferralStack, backup_job_id: str, name: str = '',
                                  namespace_id: str = '',
                                  expected_error_code: str = ERROR_CODE_PX_CREDENTIALS_NOT_FOUND) -> Dict[str, Any]:
        """Create a restore, wait for it to fail and check the error code it failed with"""
        restore = self.control_plane.must_create_restore(backup_job_id, name or random_name('restore'), namespace_id)
        restore = self.control_plane.must_wait_for_restore_failed(restore['id'])
        if restore.get('deployment_id'):
            deferrals.push('remove restored deployment', self._remove_deployment, restore['deployment_id'])
        assert restore.get('error_code') == expected_error_code, (
            f"Restore {restore['id']} failed with {restore.get('error_code')!r}, expected {expected_error_code!r}.")
        return restore

    def retry_restore(self, deferrals: DeferralStack, restore: Dict[str, Any], name: str = '',
                      px_credentials_name: str = '') -> Dict[str, Any]:
        """
        Re-submit a failed restore; the restore ID is preserved.

        When the restore failed because the PX cloud credential was missing,
        the credential named px_credentials_name is re-created first.
        """
        if restore.get('error_code') == ERROR_CODE_PX_CREDENTIALS_NOT_FOUND:
            self.recreate_px_credential(px_credentials_name)
        retried = self.control_plane.must_retry_restore(restore['id'], name)
        assert retried['id'] == restore['id'], "Retry must keep the restore ID."
        retried = self.control_plane.must_wait_for_restore_successful(restore['id'])
        deployment_id = retried.get('deployment_id')
        assert deployment_id, f"Restore {restore['id']} has no deployment."
        deferrals.push('remove restored deployment', self._remove_deployment, deployment_id)
        self.cross_cluster.must_wait_for_deployment_converged(deployment_id)
        return retried

    def recreate_px_credential(self, name: str, if_missing: bool = False) -> None:
        """
        Create the PX cloud credential a test removed.

        The credential must still be absent; with if_missing an existing
        credential is only reported, for cleanup after the target cluster
        may have re-synced it.
        """
        assert name, "PX cloud credential name is required."
        settings = self.settings
        if self.target_cluster.px.has_cloud_credential(name):
            assert if_missing, f"PX cloud credential {name} exists although it was removed."
            console.print(f"[yellow]⚠ PX cloud credential {name} already exists, not re-creating[/yellow]")
            return
        self.target_cluster.px.create_cloud_credential_for_s3(name, settings.s3_bucket, settings.s3_access_key,
                                                              settings.s3_secret_key, settings.s3_endpoint)

    def delete_backup_px_credential(self, deployment_id: str, backup: Dict[str, Any]) -> str:
        """Remove the PX credential the backup was uploaded with; returns its name"""
        _, namespace = self.cross_cluster.deployment_context(deployment_id)
        return self.cross_cluster.must_delete_backup_px_credential(namespace, backup['cluster_resource_name'])

    # Target connectivity

    def disconnect_target(self, deferrals: DeferralStack) -> int:
        """Scale teleport to zero; reconnect is deferred. Returns the original replica count"""
        replicas = self.target_cluster.get_deployment_replicas(self.target_cluster.pds_namespace, TELEPORT_DEPLOYMENT)
        self.target_cluster.scale_teleport(0)
        deferrals.push('reconnect target', self.reconnect_target, replicas)
        return replicas

    def reconnect_target(self, replicas: int) -> None:
        self.target_cluster.scale_teleport(replicas)

    def redirect_operators(self, deferrals: DeferralStack, endpoint: str = FAKE_API_ENDPOINT) -> str:
        """Point the PDS operators at another endpoint; the original is restored on cleanup"""
        original = self.target_cluster.get_operator_api_endpoint()
        self.target_cluster.patch_operator_api_endpoint(endpoint)
        deferrals.push('restore operator endpoint', self.target_cluster.patch_operator_api_endpoint, original)
        return original

    def delete_tc_backup_job(self, deployment_id: str, backup: Dict[str, Any]) -> Optional[str]:
        """Delete the Backup CR on the target cluster; returns the ad-hoc job CR name"""
        _, namespace = self.cross_cluster.deployment_context(deployment_id)
        self.target_cluster.delete_pds_backup_if_exists(namespace, backup['cluster_resource_name'])
        return adhoc_name(backup['cluster_resource_name'])
