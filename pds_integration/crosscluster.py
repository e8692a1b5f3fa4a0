"""
Checks that span the control plane and the target cluster.

A control-plane deployment, backup or restore is mapped to the custom
resources, pods and volumes that represent it on the target cluster, and both
views are asserted to agree. Checks that only need one side live on
ControlPlane or TargetCluster instead.
"""
import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client
from rich.console import Console

from pds_integration.cluster import is_not_found
from pds_integration.controlplane import ControlPlane
from pds_integration.dataservices import CONTAINER_NAMES, healthy_timeout
from pds_integration.errors import NoPodsForJob, PDSTestError, PortworxError, must
from pds_integration.storage import S3StorageProvider, cloudsnap_path_prefix
from pds_integration.targetcluster import PDS_DEPLOYMENT_ID_LABEL, TargetCluster
from pds_integration.wait import RETRY_INTERVAL, STANDARD_TIMEOUT, wait_for

console = Console()
logger = logging.getLogger(__name__)

BACKUP_FINISHED_TIMEOUT = 300
STATEFULSET_READY_TIMEOUT = 10 * 60

TC_RESTORE_SUCCESSFUL = 'Successful'
TC_RESTORE_FAILED = 'Failed'


def adhoc_name(cluster_resource_name: str) -> str:
    """Name of the BackupJob CR and VolumeSnapshot of an ad-hoc backup"""
    return f"{cluster_resource_name}-adhoc"


def _is_job_succeeded(job: client.V1Job) -> bool:
    completions = job.spec.completions if job.spec.completions is not None else 1
    return (job.status.succeeded or 0) == completions


class CrossCluster:
    """
    Correlates control-plane identifiers with target-cluster resources.

    Methods take identifiers rather than holding scenario state, so one
    instance can serve concurrent scenarios.
    """

    def __init__(self, control_plane: ControlPlane, target_cluster: TargetCluster,
                 start_time: Optional[datetime.datetime] = None):
        self.control_plane = control_plane
        self.target_cluster = target_cluster
        self.start_time = start_time or datetime.datetime.now(datetime.timezone.utc)

    @property
    def cancel(self):
        return self.control_plane.cancel

    def deployment_context(self, deployment_id: str) -> Tuple[Dict[str, Any], str]:
        """The CP deployment and the name of its namespace on the target cluster"""
        with must(f"Getting deployment {deployment_id}"):
            deployment = self.control_plane.get_deployment(deployment_id)
            namespace = self.control_plane.get_namespace(deployment['namespace_id'])
        return deployment, namespace['name']

    # Deployments

    def must_wait_for_deployment_initialized(self, deployment_id: str) -> None:
        """The cluster-init and node-init jobs of the deployment succeed"""
        deployment, namespace = self.deployment_context(deployment_id)
        resource_name = deployment['cluster_resource_name']
        job_names = [f"{resource_name}-cluster-init", f"{resource_name}-node-init"]

        def initialized():
            for job_name in job_names:
                job = self.target_cluster.get_job(namespace, job_name)
                assert _is_job_succeeded(job), (
                    f"Job {namespace}/{job_name} for deployment {deployment_id} not successful.")
            return True

        wait_for(initialized, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel,
                 f"deployment {deployment_id} to be initialized")

    def must_wait_for_statefulset_ready(self, deployment_id: str) -> None:
        """Ready and updated replicas both equal the CP node count"""
        deployment, namespace = self.deployment_context(deployment_id)
        resource_name = deployment['cluster_resource_name']
        node_count = deployment.get('node_count') or 1

        def ready():
            status = self.target_cluster.get_statefulset(namespace, resource_name).status
            assert (status.ready_replicas or 0) == node_count, (
                f"ReadyReplicas {status.ready_replicas} don't match desired node count {node_count}.")
            assert (status.updated_replicas or 0) == node_count, (
                f"UpdatedReplicas {status.updated_replicas} don't match desired node count {node_count}.")
            return True

        wait_for(ready, STATEFULSET_READY_TIMEOUT, RETRY_INTERVAL, self.cancel,
                 f"statefulset {namespace}/{resource_name} to be ready")

    def must_wait_for_deployment_converged(self, deployment_id: str) -> None:
        """Healthy on the control plane, initialized and ready on the target cluster"""
        self.control_plane.must_wait_for_deployment_healthy(deployment_id)
        self.must_wait_for_deployment_initialized(deployment_id)
        self.must_wait_for_statefulset_ready(deployment_id)

    def must_ensure_statefulset_image(self, deployment_id: str, image_tag: str) -> None:
        deployment, namespace = self.deployment_context(deployment_id)
        resource_name = deployment['cluster_resource_name']
        with must(f"Getting data service of deployment {deployment_id}"):
            data_service = self.control_plane.api.get(f"data-services/{deployment['data_service_id']}")
        container_name = CONTAINER_NAMES.get(data_service.get('name'))
        assert container_name, f"unknown database type: {data_service.get('name')}"

        def has_image():
            statefulset = self.target_cluster.get_statefulset(namespace, resource_name)
            images = [c.image for c in statefulset.spec.template.spec.containers if c.name == container_name]
            assert images, f"container {container_name!r} is not found in statefulset {resource_name}"
            assert image_tag in images[0], f"StatefulSet {resource_name} does not contain image tag {image_tag!r}."
            return True

        wait_for(has_image, healthy_timeout(deployment.get('node_count') or 1), RETRY_INTERVAL, self.cancel,
                 f"statefulset {resource_name} to run image {image_tag}")

    def must_get_storage_classes_for_deployment(self, deployment_id: str) -> List[client.V1StorageClass]:
        deployment, namespace = self.deployment_context(deployment_id)
        resource_name = deployment['cluster_resource_name']
        names = [f"{resource_name}-{namespace}", f"{resource_name}-sharedbackups-{namespace}"]
        storage_classes = []
        for name in names:
            try:
                storage_classes.append(self.target_cluster.get_storage_class(name))
            except client.exceptions.ApiException as e:
                raise AssertionError(f"Getting storage class {name}: {e.reason}") from e
        return storage_classes

    def delete_deployment_volumes(self, deployment_id: str) -> None:
        """Best effort: PVCs and PVs labelled with the deployment ID"""
        labels = f"{PDS_DEPLOYMENT_ID_LABEL}={deployment_id}"
        core_v1 = self.target_cluster.core_v1
        try:
            pvs = core_v1.list_persistent_volume(label_selector=labels)
        except client.exceptions.ApiException as e:
            console.print(f"[yellow]Failed to list volumes of {deployment_id}: {e.reason}[/yellow]")
            return
        for pv in pvs.items:
            claim = pv.spec.claim_ref
            if claim is not None:
                try:
                    core_v1.delete_namespaced_persistent_volume_claim(claim.name, claim.namespace)
                except client.exceptions.ApiException as e:
                    console.print(f"[yellow]Delete PVC {claim.namespace}/{claim.name}: {e.reason}[/yellow]")
            try:
                core_v1.delete_persistent_volume(pv.metadata.name)
            except client.exceptions.ApiException as e:
                console.print(f"[yellow]Delete PV {pv.metadata.name}: {e.reason}[/yellow]")

    def must_delete_deployment_custom_resource(self, deployment_id: str, resource: str) -> None:
        """Delete the dataservice CR; `resource` is its kind, plural or short name"""
        deployment, namespace = self.deployment_context(deployment_id)
        resource_name = deployment['cluster_resource_name']
        with must(f"Resolving dataservice resource {resource}"):
            plural = self.target_cluster.pds_deployment_plural(resource)
        try:
            self.target_cluster.delete_pds_deployment(namespace, plural, resource_name)
        except client.exceptions.ApiException as e:
            raise AssertionError(f"Deleting {plural}/{resource_name}: {e.reason}") from e

        def deleted():
            try:
                self.target_cluster.get_pds_deployment(namespace, plural, resource_name)
            except client.exceptions.ApiException as e:
                if is_not_found(e):
                    return True
                raise
            return False, PDSTestError(f"deployment CR {plural}/{resource_name} is not deleted.")

        wait_for(deleted, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"{plural}/{resource_name} to be deleted")

    def must_have_deployment_events_matching(self, deployment_id: str) -> None:
        """Every resource event on the Database CR is reported by the control plane"""
        with must(f"Getting events of deployment {deployment_id}"):
            cp_events = {e.get('name') for e in self.control_plane.get_deployment_events(deployment_id)}
        deployment, namespace = self.deployment_context(deployment_id)
        resource_name = deployment['cluster_resource_name']
        try:
            database = self.target_cluster.get_pds_deployment(namespace, 'databases', resource_name)
        except client.exceptions.ApiException as e:
            raise AssertionError(f"Getting database {resource_name} from target cluster failed: {e.reason}") from e
        missing = []
        for resource_events in (database.get('status') or {}).get('resourceEvents') or []:
            for event in resource_events.get('events') or []:
                if event.get('name') not in cp_events:
                    missing.append(event.get('name'))
        assert not missing, f"No events {missing} found in get deployments event response"

    # Backups

    def must_ensure_backup_successful(self, deployment_id: str, backup_name: str) -> None:
        """Wait for the Backup CR to finish; a failure attaches the backup job logs"""
        _, namespace = self.deployment_context(deployment_id)

        def finished():
            backup = self.target_cluster.get_pds_backup(namespace, backup_name)
            status = backup.get('status') or {}
            assert (status.get('succeeded') or 0) > 0 or (status.get('failed') or 0) > 0, (
                f"Backup {backup_name} for the deployment {deployment_id} did not finish.")
            return True

        wait_for(finished, BACKUP_FINISHED_TIMEOUT, RETRY_INTERVAL, self.cancel, f"backup {backup_name} to finish")

        status = self.target_cluster.get_pds_backup(namespace, backup_name).get('status') or {}
        if (status.get('failed') or 0) > 0:
            jobs = status.get('backupJobs') or []
            job_name = jobs[0].get('name', '') if jobs else ''
            try:
                logs = self.target_cluster.get_job_logs(namespace, job_name, self.start_time)
            except (NoPodsForJob, client.exceptions.ApiException):
                raise AssertionError(f"Backup '{backup_name}' failed.")
            raise AssertionError(f"Backup job '{job_name}' failed. See job logs for more details:\n{logs}")
        assert (status.get('succeeded') or 0) > 0, f"Backup {backup_name} did not succeed."

    def must_get_adhoc_backup_job_id(self, namespace: str, backup: Dict[str, Any]) -> str:
        """UID of the ad-hoc BackupJob CR, which is the CP backup job ID"""
        name = adhoc_name(backup['cluster_resource_name'])
        try:
            job_cr = self.target_cluster.get_pds_backup_job(namespace, name)
        except client.exceptions.ApiException as e:
            raise AssertionError(f"Getting backup job {namespace}/{name}: {e.reason}") from e
        uid = (job_cr.get('metadata') or {}).get('uid', '')
        assert uid, "backupJob id is empty"
        return uid

    def must_correlate_adhoc_backup_job(self, deployment_id: str, backup: Dict[str, Any]) -> Dict[str, Any]:
        """The ad-hoc BackupJob CR matches a CP backup job of this backup with a cloudsnap ID"""
        _, namespace = self.deployment_context(deployment_id)
        job_id = self.must_get_adhoc_backup_job_id(namespace, backup)
        job = self.control_plane.must_get_backup_job(job_id)
        assert job.get('backup_id') == backup['id'], (
            f"Backup job {job_id} belongs to backup {job.get('backup_id')}, expected {backup['id']}.")
        assert job.get('cloud_snap_id'), f"Backup job {job_id} has no cloudsnap ID."
        return job

    def must_have_volume_snapshot(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return self.target_cluster.get_volume_snapshot(namespace, name)
        except client.exceptions.ApiException as e:
            raise AssertionError(f"VolumeSnapshot {namespace}/{name}: {e.reason}") from e

    def must_not_have_volume_snapshot(self, namespace: str, name: str) -> None:
        def absent():
            try:
                self.target_cluster.get_volume_snapshot(namespace, name)
            except client.exceptions.ApiException as e:
                if is_not_found(e):
                    return True
                raise
            return False, PDSTestError(f"VolumeSnapshot {namespace}/{name} still exists.")

        wait_for(absent, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"volume snapshot {name} to be deleted")

    def must_not_have_backup_job_cr(self, namespace: str, name: str) -> None:
        def absent():
            try:
                self.target_cluster.get_pds_backup_job(namespace, name)
            except client.exceptions.ApiException as e:
                if is_not_found(e):
                    return True
                raise
            return False, PDSTestError(f"BackupJob {namespace}/{name} still exists.")

        wait_for(absent, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"backup job CR {name} to be deleted")

    def count_backup_objects(self, storage: S3StorageProvider, cloudsnap_id: str) -> int:
        return storage.count_objects_with_prefix(cloudsnap_path_prefix(cloudsnap_id))

    # Backup targets

    def px_credentials_name(self, backup_target_id: str) -> str:
        with must(f"Getting state of backup target {backup_target_id}"):
            state = self.control_plane.get_backup_target_state(backup_target_id)
        name = state.get('px_credentials_name', '')
        assert name, f"Backup target {backup_target_id} has no PX credentials on the target cluster."
        return name

    def must_ensure_backup_target_px_credential(self, backup_target_id: str, bucket: str, region: str,
                                                access_key: str, endpoint: str) -> None:
        """The PX cloud credential synthesized for the target carries the supplied settings"""
        name = self.px_credentials_name(backup_target_id)
        with must(f"Finding PX cloud credential {name}"):
            credential = self.target_cluster.px.find_cloud_credential_by_name(name)
        assert credential.bucket == bucket, f"PX credential bucket {credential.bucket!r}, expected {bucket!r}."
        aws = credential.aws_credential
        assert aws.access_key == access_key, "PX credential access key does not match."
        assert aws.endpoint == endpoint, f"PX credential endpoint {aws.endpoint!r}, expected {endpoint!r}."
        assert aws.region == region, f"PX credential region {aws.region!r}, expected {region!r}."

    def must_wait_for_px_credential_removed(self, name: str) -> None:
        def removed():
            return not self.target_cluster.px.has_cloud_credential(name)

        wait_for(removed, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"PX cloud credential {name} to be removed")

    def must_delete_px_credential(self, name: str) -> None:
        with must(f"Deleting PX cloud credential {name}"):
            credential = self.target_cluster.px.find_cloud_credential_by_name(name)
            self.target_cluster.px.delete_cloud_credential(credential.id)

    def must_not_have_px_credential(self, name: str) -> None:
        try:
            self.target_cluster.px.find_cloud_credential_by_name(name)
        except PortworxError:
            return
        raise AssertionError(f"PX cloud credential {name} exists.")

    # Target-cluster restores

    def must_create_tc_restore(self, namespace: str, backup_name: str, restore_name: str) -> Dict[str, Any]:
        """Restore CR from a Backup CR's cloud credential and snapshot"""
        try:
            backup = self.target_cluster.get_pds_backup(namespace, backup_name)
        except client.exceptions.ApiException as e:
            raise AssertionError(f"Getting backup {namespace}/{backup_name}: {e.reason}") from e
        credential_name = (backup.get('spec') or {}).get('cloudCredentialName', '')
        jobs = (backup.get('status') or {}).get('backupJobs') or []
        snapshot_id = jobs[0].get('cloudSnapID', '') if jobs else ''
        assert snapshot_id, f"Backup {backup_name} has no snapshot ID."
        return self.target_cluster.create_pds_restore(namespace, restore_name, credential_name, snapshot_id)

    def must_ensure_tc_restore_successful(self, namespace: str, restore_name: str,
                                          timeout: float = STANDARD_TIMEOUT) -> None:
        def finished():
            restore = self.target_cluster.get_pds_restore(namespace, restore_name)
            status = (restore.get('status') or {}).get('completionStatus')
            assert status in (TC_RESTORE_SUCCESSFUL, TC_RESTORE_FAILED), f"Restore {restore_name} did not finish."
            return True

        wait_for(finished, timeout, RETRY_INTERVAL, self.cancel, f"restore {restore_name} to finish")
        restore = self.target_cluster.get_pds_restore(namespace, restore_name)
        status = (restore.get('status') or {}).get('completionStatus')
        assert status == TC_RESTORE_SUCCESSFUL, f"Restore {restore_name} finished with {status}."

    def must_wait_for_tc_restore_failed(self, namespace: str, restore_name: str, error_code: str) -> None:
        """The Restore CR fails with the given error code"""
        def failed():
            status = self.target_cluster.get_pds_restore(namespace, restore_name).get('status') or {}
            assert status.get('completionStatus') == TC_RESTORE_FAILED, (
                f"Restore {restore_name} status must be failed, got {status.get('completionStatus')}.")
            assert status.get('errorCode') == error_code, (
                f"Expected error code {error_code} for restore {restore_name}, got {status.get('errorCode')}.")
            return True

        wait_for(failed, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"restore {restore_name} to fail")

    def must_delete_backup_px_credential(self, namespace: str, backup_name: str) -> str:
        """Delete the PX cloud credential a Backup CR uploads with; returns its name"""
        try:
            backup = self.target_cluster.get_pds_backup(namespace, backup_name)
        except client.exceptions.ApiException as e:
            raise AssertionError(f"Getting backup {namespace}/{backup_name}: {e.reason}") from e
        name = (backup.get('spec') or {}).get('cloudCredentialName', '')
        assert name, f"Backup {backup_name} has no cloud credential."
        self.must_delete_px_credential(name)
        return name
