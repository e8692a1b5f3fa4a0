"""
Target cluster registration and namespace discovery
"""
import pytest
from rich.console import Console

from pds_integration.naming import random_name
from pds_integration.registration import PDS_AVAILABLE_LABEL, ensure_namespace_cleanup

console = Console()


@pytest.mark.integration
def test_deployment_target_healthy(control_plane, deployment_target_id):
    """The registered target cluster reports healthy to the control plane."""
    control_plane.check_deployment_target_health(deployment_target_id)
    console.print(f"[green]✓ Deployment target {deployment_target_id} is healthy[/green]")


@pytest.mark.integration
def test_pds_namespace_available(settings, target_cluster, deployment_target_id):
    namespace = target_cluster.get_namespace(settings.pds_namespace)
    labels = namespace.metadata.labels or {}
    assert labels.get(PDS_AVAILABLE_LABEL) == 'true', (
        f"Namespace {settings.pds_namespace} is missing label {PDS_AVAILABLE_LABEL}=true")


@pytest.mark.integration
def test_test_namespace_available(control_plane, test_namespace):
    """The session's test namespace is known to the control plane."""
    namespace = control_plane.get_namespace_by_name(test_namespace)
    assert namespace is not None
    assert namespace['id'] == control_plane.namespace_id


@pytest.mark.integration
def test_unlabelled_namespace_not_discovered(control_plane, target_cluster, deployment_target_id, deferrals):
    """Namespaces without the PDS label never show up in the control plane."""
    name = random_name('ns-unlabelled')
    target_cluster.create_namespace(name)
    deferrals.push('delete namespace', ensure_namespace_cleanup, target_cluster, name)

    control_plane.must_never_get_namespace_by_name(name)


@pytest.mark.integration
def test_upgrade_pds_chart(settings, control_plane, target_cluster, deployment_target_id):
    """Upgrading the agent chart in place keeps the target registered and healthy."""
    if not settings.should_register():
        pytest.skip("Target cluster is registered outside of this session")

    target_cluster.upgrade_pds_chart()

    control_plane.must_wait_for_deployment_target(target_cluster.pds_chart_config.deployment_target_name)
