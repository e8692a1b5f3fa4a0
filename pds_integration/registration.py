"""
Registering a target cluster with the control plane and tearing it down.

Registration: cert-manager chart, labelled PDS namespace, PDS chart, then
wait for the control plane to see a healthy deployment target.
"""
import logging
from typing import Optional

from kubernetes import client
from rich.console import Console

from pds_integration.cluster import is_not_found
from pds_integration.config import Settings
from pds_integration.controlplane import ControlPlane
from pds_integration.errors import HelmError, NotFoundError, error_contains_any, must
from pds_integration.helm import ERR_ALREADY_DELETED, ERR_NAME_IN_USE, ERR_RELEASE_NOT_FOUND
from pds_integration.naming import random_name
from pds_integration.targetcluster import CertManagerChartConfig, PDSChartConfig, TargetCluster
from pds_integration.wait import SHORT_RETRY_INTERVAL, STANDARD_TIMEOUT, wait_for

console = Console()
logger = logging.getLogger(__name__)

PDS_AVAILABLE_LABEL = 'pds.portworx.com/available'
TEST_NAMESPACE_PREFIX = 'ns'


def ensure_pds_namespace(target_cluster: TargetCluster, name: str) -> None:
    """Create the namespace with the PDS label, or label it if it already exists"""
    labels = {PDS_AVAILABLE_LABEL: 'true'}
    try:
        namespace = target_cluster.get_namespace(name)
    except client.exceptions.ApiException as e:
        if not is_not_found(e):
            raise
        target_cluster.create_namespace(name, labels)
        console.print(f"[green]✓ Created namespace {name}[/green]")
        return
    current = namespace.metadata.labels or {}
    if current.get(PDS_AVAILABLE_LABEL) != 'true':
        target_cluster.patch_namespace_labels(name, labels)
        console.print(f"[green]✓ Labelled namespace {name}[/green]")


def install_cert_manager(target_cluster: TargetCluster, version: str) -> None:
    target_cluster.cert_manager_chart_config = CertManagerChartConfig(version)
    try:
        target_cluster.install_cert_manager_chart()
    except HelmError as e:
        if not error_contains_any(e, ERR_NAME_IN_USE):
            raise
        console.print("[yellow]cert-manager is already installed[/yellow]")


def uninstall_cert_manager(target_cluster: TargetCluster) -> None:
    try:
        target_cluster.uninstall_cert_manager_chart()
    except HelmError as e:
        if not error_contains_any(e, ERR_ALREADY_DELETED, ERR_RELEASE_NOT_FOUND):
            raise
        console.print("[yellow]cert-manager is already uninstalled[/yellow]")
    ensure_namespace_cleanup(target_cluster, target_cluster.cert_manager_namespace)


def resolve_pds_chart_version(control_plane: ControlPlane, version: str) -> str:
    """Empty means the version the control plane advertises, without a leading 'v'"""
    if version:
        return version
    with must("Getting control plane metadata"):
        metadata = control_plane.api.get_metadata()
    chart_version = metadata.get('helm_chart_version', '')
    assert chart_version, "Control plane metadata has no helm_chart_version."
    return chart_version.lstrip('v')


def install_pds_chart(control_plane: ControlPlane, target_cluster: TargetCluster, settings: Settings) -> None:
    version = resolve_pds_chart_version(control_plane, settings.pds_helm_chart_version)
    token = control_plane.must_get_service_account_token(settings.service_account_name)
    target_cluster.pds_chart_config = PDSChartConfig(
        version=version,
        tenant_id=control_plane.tenant_id,
        token=token,
        control_plane_api=settings.control_plane_api,
        deployment_target_name=settings.deployment_target_name,
        data_service_tls_enabled=settings.data_service_tls_enabled,
    )
    target_cluster.install_pds_chart()


def register_target(control_plane: ControlPlane, target_cluster: TargetCluster, settings: Settings) -> str:
    """Install everything the agent needs and wait until the target is healthy; returns its ID"""
    console.print(f"[cyan]Registering target cluster {settings.deployment_target_name}...[/cyan]")
    install_cert_manager(target_cluster, settings.cert_manager_chart_version)
    ensure_pds_namespace(target_cluster, target_cluster.pds_namespace)
    install_pds_chart(control_plane, target_cluster, settings)
    target_id = control_plane.must_wait_for_deployment_target(settings.deployment_target_name)
    control_plane.set_test_deployment_target(target_id)
    console.print(f"[green]✓ Deployment target {settings.deployment_target_name} registered ({target_id})[/green]")
    return target_id


def uninstall_pds_agents(target_cluster: TargetCluster) -> None:
    """Remove the PDS chart and everything it leaves behind"""
    console.print("[cyan]Uninstalling PDS agents...[/cyan]")
    deleted = target_cluster.delete_pds_crds()
    logger.info("Deleted CRDs: %s", deleted)
    try:
        target_cluster.uninstall_pds_chart()
    except HelmError as e:
        if not error_contains_any(e, ERR_ALREADY_DELETED, ERR_RELEASE_NOT_FOUND):
            raise
        console.print("[yellow]PDS chart is already uninstalled[/yellow]")
    target_cluster.delete_cluster_roles()
    target_cluster.delete_pvcs(target_cluster.pds_namespace)
    target_cluster.delete_storage_classes()
    target_cluster.delete_released_pvs()
    deleted = target_cluster.delete_pds_px_credentials()
    logger.info("Deleted PX credentials: %s", deleted)
    deleted = target_cluster.delete_detached_px_volumes()
    logger.info("Deleted detached PX volumes: %s", deleted)
    console.print("[green]✓ PDS agents uninstalled[/green]")


def cleanup_deployments_for_cluster(control_plane: ControlPlane, deployment_target_id: str) -> None:
    """Delete backup jobs, backups and deployments that still reference the target"""
    with must(f"Listing backup jobs of deployment target {deployment_target_id}"):
        jobs = control_plane.list_backup_jobs_in_project(deployment_target_id=deployment_target_id)
    for job in jobs:
        try:
            control_plane.delete_backup_job(job['id'])
        except NotFoundError:
            pass

    with must(f"Listing deployments of deployment target {deployment_target_id}"):
        deployments = control_plane.list_deployments_in_project(deployment_target_id=deployment_target_id)
    for deployment in deployments:
        for backup in control_plane.list_backups_by_deployment(deployment['id']):
            try:
                control_plane.delete_backup(backup['id'], local_only=True)
            except NotFoundError:
                pass
        control_plane.must_remove_deployment_if_exists(deployment['id'])
        control_plane.must_wait_for_deployment_removed(deployment['id'])
    console.print(f"[green]✓ Cleaned up {len(deployments)} deployments of target {deployment_target_id}[/green]")


def deregister_target(control_plane: ControlPlane, target_cluster: TargetCluster) -> None:
    target_id = control_plane.deployment_target_id
    if target_id:
        cleanup_deployments_for_cluster(control_plane, target_id)
    uninstall_pds_agents(target_cluster)
    uninstall_cert_manager(target_cluster)
    if target_id:
        control_plane.delete_test_deployment_target()


def ensure_namespace_cleanup(target_cluster: TargetCluster, name: str, timeout: float = STANDARD_TIMEOUT) -> None:
    """Delete the namespace and wait until it is gone"""
    def gone():
        try:
            target_cluster.delete_namespace(name)
        except client.exceptions.ApiException as e:
            if is_not_found(e):
                return True
            raise
        return False, AssertionError(f"namespace {name} still exists")

    wait_for(gone, timeout, SHORT_RETRY_INTERVAL, target_cluster.cancel, f"namespace {name} to be deleted")


def create_test_namespace(target_cluster: TargetCluster, suite: str, name: Optional[str] = None) -> str:
    name = name or random_name(f"{TEST_NAMESPACE_PREFIX}-{suite}")
    ensure_pds_namespace(target_cluster, name)
    return name


def delete_test_namespace(target_cluster: TargetCluster, name: str) -> None:
    ensure_namespace_cleanup(target_cluster, name)
    console.print(f"[green]✓ Deleted test namespace {name}[/green]")
