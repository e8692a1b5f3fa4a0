"""
Deployments on a target cluster that requires TLS
"""
import pytest
from rich.console import Console

from pds_integration.dataservices import POSTGRESQL
from pds_integration.errors import ApiError
from pds_integration.naming import random_name

console = Console()

TLS_REQUIRED_MESSAGE = 'policy requires enabling TLS'


@pytest.fixture
def tls_required_target(settings, control_plane, target_cluster, deployment_target_id, deferrals):
    """Self-signed issuer on the target cluster, TLS required by the deployment target"""
    if not settings.data_service_tls_enabled:
        pytest.skip("Data service TLS is not enabled (PDS_DATA_SERVICE_TLS_ENABLED)")
    issuer = random_name('issuer')
    target_cluster.create_self_signed_cluster_issuer(issuer)
    deferrals.push('delete cluster issuer', target_cluster.delete_cluster_issuer, issuer)
    assert target_cluster.get_cluster_issuer(issuer)['spec']['selfSigned'] == {}

    control_plane.patch_deployment_target(deployment_target_id, tls_issuer=issuer, tls_required=True)
    deferrals.push('reset TLS policy', control_plane.patch_deployment_target, deployment_target_id,
                   tls_issuer='', tls_required=False)
    return issuer


@pytest.mark.integration
def test_deploy_without_tls_rejected(tls_required_target, control_plane, spec_for):
    """A deployment without TLS is refused once the target requires it."""
    spec = spec_for(POSTGRESQL, tls_enabled=False)

    with pytest.raises(ApiError) as exc_info:
        control_plane.deploy_deployment_spec(spec)

    assert TLS_REQUIRED_MESSAGE in str(exc_info.value)


@pytest.mark.integration
def test_deploy_with_tls(tls_required_target, orchestrator, spec_for, deferrals):
    spec = spec_for(POSTGRESQL, tls_enabled=True)

    deployment_id = orchestrator.deploy_data_service(deferrals, spec)

    console.print(f"[green]✓ TLS deployment {deployment_id} issued by {tls_required_target}[/green]")
