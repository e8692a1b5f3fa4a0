"""
PDS target cluster: a K8sCluster plus the PDS and cert-manager charts and
the Portworx proxy.
"""
import base64
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from kubernetes import client
from rich.console import Console

from pds_integration.cluster import K8sCluster, is_not_found
from pds_integration.errors import MultiError
from pds_integration.helm import ChartConfig, ChartProvider, HelmDriver, InstallableChart
from pds_integration.portworx import PDS_CREDENTIALS_PREFIX, PXProxy
from pds_integration.restclient import MemoryRESTClientGetter
from pds_integration.wait import RETRY_INTERVAL, SHORT_RETRY_INTERVAL, STANDARD_TIMEOUT, wait_for

console = Console()
logger = logging.getLogger(__name__)

PDS_ENVIRONMENT_LABEL = 'pds/environment'
PDS_DEPLOYMENT_ID_LABEL = 'pds/deployment-id'

PDS_REPO_NAME = 'pds'
PDS_REPO_URL = 'https://portworx.github.io/pds-charts'
PDS_CHART_NAME = 'pds-target'
PDS_CHART_RELEASE_NAME = 'pds'
PDS_CHART_NAMESPACE = 'pds-system'

CERT_MANAGER_REPO_NAME = 'jetstack'
CERT_MANAGER_REPO_URL = 'https://charts.jetstack.io'
CERT_MANAGER_CHART_NAME = 'cert-manager'
CERT_MANAGER_RELEASE_NAME = 'cert-manager'
CERT_MANAGER_NAMESPACE = 'cert-manager'

TELEPORT_DEPLOYMENT = 'pds-teleport'
OPERATOR_CONTAINER = 'manager'
API_ENDPOINT_ENV = 'PDS_API_ENDPOINT'

# name -> operator deployment in the PDS namespace
PDS_OPERATORS = {
    'backup': 'pds-backup-controller-manager',
    'deployment': 'pds-deployment-controller-manager',
    'target': 'pds-operator-target-controller-manager',
}

COREDNS_NAMESPACE = 'kube-system'
COREDNS_LABELS = {'k8s-app': 'kube-dns'}
COREDNS_RESTARTED_TIMEOUT = 30


@dataclass
class PDSChartConfig:
    version: str
    tenant_id: str
    token: str
    control_plane_api: str
    deployment_target_name: str
    data_service_tls_enabled: bool = False

    def to_chart_config(self) -> ChartConfig:
        values = {
            'tenantId': self.tenant_id,
            'bearerToken': self.token,
            'apiEndpoint': self.control_plane_api,
            'clusterName': self.deployment_target_name,
        }
        if self.data_service_tls_enabled:
            values['dataServiceTLSEnabled'] = 'true'
        return ChartConfig(version_constraints=self.version, release_name=PDS_CHART_RELEASE_NAME,
                           chart_values=values)


@dataclass
class CertManagerChartConfig:
    version: str

    def to_chart_config(self) -> ChartConfig:
        return ChartConfig(version_constraints=self.version, release_name=CERT_MANAGER_RELEASE_NAME,
                           chart_values={'installCRDs': 'true'})


class TargetCluster(K8sCluster):
    """Target cluster handle shared by a test session"""

    def __init__(self, getter: MemoryRESTClientGetter, helm: Optional[HelmDriver] = None,
                 pds_namespace: str = PDS_CHART_NAMESPACE, cert_manager_namespace: str = CERT_MANAGER_NAMESPACE,
                 cancel: Optional[threading.Event] = None):
        super().__init__(getter)
        self.helm = helm or HelmDriver()
        self.pds_namespace = pds_namespace
        self.cert_manager_namespace = cert_manager_namespace
        self.cancel = cancel
        self.pds_chart_config: Optional[PDSChartConfig] = None
        self.cert_manager_chart_config: Optional[CertManagerChartConfig] = None
        self._px: Optional[PXProxy] = None
        self._px_lock = threading.Lock()
        self._providers: Dict[str, ChartProvider] = {}

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str = '', **kwargs) -> 'TargetCluster':
        return cls(MemoryRESTClientGetter.from_kubeconfig(kubeconfig, persistent=True), **kwargs)

    @property
    def px(self) -> PXProxy:
        """Portworx proxy, discovered on first use"""
        with self._px_lock:
            if self._px is None:
                self._px = PXProxy.discover(self.api_client)
            return self._px

    def component_selectors(self) -> List[Tuple[str, Dict[str, str]]]:
        """(namespace, labels) of the PDS agent pods, for log dumps"""
        return [(self.pds_namespace, {}), (self.cert_manager_namespace, {})]

    # Charts

    def _namespaced_getter(self, namespace: str) -> MemoryRESTClientGetter:
        return MemoryRESTClientGetter(self.getter.to_rest_config(), kubeconfig=self.getter.kubeconfig,
                                      context=self.getter.context, namespace=namespace, persistent=True)

    def _provider(self, repo_name: str, repo_url: str, chart_name: str) -> ChartProvider:
        if repo_name not in self._providers:
            self._providers[repo_name] = ChartProvider(self.helm, repo_name, repo_url, chart_name)
        return self._providers[repo_name]

    def pds_chart_installer(self) -> InstallableChart:
        if self.pds_chart_config is None:
            raise ValueError("PDS chart is not configured")
        provider = self._provider(PDS_REPO_NAME, PDS_REPO_URL, PDS_CHART_NAME)
        return provider.installer(self._namespaced_getter(self.pds_namespace), self.pds_chart_config.to_chart_config())

    def cert_manager_chart_installer(self) -> InstallableChart:
        if self.cert_manager_chart_config is None:
            raise ValueError("cert-manager chart is not configured")
        provider = self._provider(CERT_MANAGER_REPO_NAME, CERT_MANAGER_REPO_URL, CERT_MANAGER_CHART_NAME)
        return provider.installer(self._namespaced_getter(self.cert_manager_namespace),
                                  self.cert_manager_chart_config.to_chart_config())

    def install_pds_chart(self) -> None:
        self.pds_chart_installer().install(self.cancel)

    def upgrade_pds_chart(self) -> None:
        self.pds_chart_installer().upgrade(self.cancel)

    def uninstall_pds_chart(self) -> None:
        """Uninstall by release name; no chart repository is consulted"""
        self.helm.uninstall(self._namespaced_getter(self.pds_namespace), PDS_CHART_RELEASE_NAME, self.cancel)

    def install_cert_manager_chart(self) -> None:
        self.cert_manager_chart_installer().install(self.cancel)

    def uninstall_cert_manager_chart(self) -> None:
        self.helm.uninstall(self._namespaced_getter(self.cert_manager_namespace), CERT_MANAGER_RELEASE_NAME,
                            self.cancel)

    # PDS agent cleanup

    def delete_pds_crds(self) -> List[str]:
        return self.delete_crds_by_group_suffix('pds.io')

    def delete_cluster_roles(self) -> None:
        self.rbac_v1.delete_collection_cluster_role(label_selector=PDS_ENVIRONMENT_LABEL)

    def delete_pvcs(self, namespace: str) -> None:
        self.core_v1.delete_collection_namespaced_persistent_volume_claim(namespace,
                                                                          label_selector=PDS_ENVIRONMENT_LABEL)

    def delete_storage_classes(self) -> None:
        self.storage_v1.delete_collection_storage_class(label_selector=PDS_ENVIRONMENT_LABEL)

    def delete_released_pvs(self) -> None:
        """Switch Released volumes to the Delete reclaim policy"""
        errors = MultiError()
        for pv in self.list_pvs().items:
            if pv.status is None or pv.status.phase != 'Released':
                continue
            try:
                self.set_pv_reclaim_policy(pv.metadata.name, 'Delete')
            except client.exceptions.ApiException as e:
                errors.append(e)
        errors.raise_if_any()

    def delete_detached_px_volumes(self) -> List[str]:
        return self.px.delete_detached_volumes()

    def delete_pds_px_credentials(self) -> List[str]:
        return self.px.delete_cloud_credentials_by_prefix(PDS_CREDENTIALS_PREFIX)

    # Deployments and pods

    def must_delete_deployment_pods(self, namespace: str, deployment_id: str) -> None:
        try:
            self.delete_pods_by_selector(namespace, {PDS_DEPLOYMENT_ID_LABEL: deployment_id})
        except client.exceptions.ApiException as e:
            raise AssertionError(f"Cannot delete pods: {e.reason}") from e

    def must_flush_dns_cache(self) -> List[str]:
        """Restart CoreDNS and return the IPs of the new ready pods"""
        try:
            self.delete_pods_by_selector(COREDNS_NAMESPACE, COREDNS_LABELS)
        except client.exceptions.ApiException as e:
            raise AssertionError(f"Failed to delete CoreDNS pods: {e.reason}") from e

        def restarted():
            deployments = self.list_deployments(COREDNS_NAMESPACE, COREDNS_LABELS).items
            assert len(deployments) == 1, "Expected a single CoreDNS deployment."
            status = deployments[0].status
            replicas = status.replicas or 0
            assert replicas == (status.ready_replicas or 0), "Not all CoreDNS replicas are ready."
            assert replicas == (status.updated_replicas or 0), "Not all CoreDNS replicas are updated."
            return True

        wait_for(restarted, COREDNS_RESTARTED_TIMEOUT, SHORT_RETRY_INTERVAL, self.cancel, "CoreDNS to restart")

        ips = []
        for pod in self.list_pods(COREDNS_NAMESPACE, COREDNS_LABELS).items:
            statuses = pod.status.container_statuses or []
            if pod.status.pod_ip and statuses and statuses[0].ready:
                ips.append(pod.status.pod_ip)
        return ips

    def get_db_password(self, namespace: str, deployment_name: str) -> str:
        secret = self.get_secret(namespace, f"{deployment_name}-creds")
        return base64.b64decode((secret.data or {}).get('password', '')).decode()

    # Jobs

    def must_wait_for_job_success(self, namespace: str, job_name: str) -> None:
        def succeeded():
            status = self.get_job(namespace, job_name).status
            assert (status.succeeded or 0) > 0, (
                f"Job did not succeed (Succeeded: {status.succeeded}, Failed: {status.failed})")
            return True

        wait_for(succeeded, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"job {namespace}/{job_name} to succeed")

    def must_wait_for_job_failure(self, namespace: str, job_name: str) -> None:
        def failed():
            status = self.get_job(namespace, job_name).status
            assert (status.failed or 0) > 0, (
                f"Job did not fail (Succeeded: {status.succeeded}, Failed: {status.failed})")
            return True

        wait_for(failed, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"job {namespace}/{job_name} to fail")

    # Backups

    def must_wait_for_pds_backup_with_updated_schedule(self, namespace: str, name: str, schedule: str) -> None:
        """The CronJob behind a scheduled Backup CR must run on the given schedule"""
        def updated():
            cronjob = self.get_cronjob(namespace, name)
            assert cronjob.spec.schedule == schedule, (
                f"CronJob {namespace}/{name} has schedule {cronjob.spec.schedule!r}, expected {schedule!r}.")
            return True

        wait_for(updated, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"backup {name} schedule {schedule}")

    def delete_pds_backup_if_exists(self, namespace: str, name: str) -> None:
        try:
            self.delete_pds_backup(namespace, name)
        except client.exceptions.ApiException as e:
            if not is_not_found(e):
                raise

    # Connectivity

    def get_deployment_replicas(self, namespace: str, name: str) -> int:
        return self.get_deployment(namespace, name).spec.replicas or 0

    def scale_teleport(self, replicas: int) -> None:
        console.print(f"[cyan]Scaling {TELEPORT_DEPLOYMENT} to {replicas} replicas...[/cyan]")
        self.scale_deployment(self.pds_namespace, TELEPORT_DEPLOYMENT, replicas)

    def patch_operator_api_endpoint(self, endpoint: str) -> None:
        """Point every PDS operator at another control-plane endpoint"""
        body = {'spec': {'template': {'spec': {'containers': [
            {'name': OPERATOR_CONTAINER, 'env': [{'name': API_ENDPOINT_ENV, 'value': endpoint}]},
        ]}}}}
        for deployment in PDS_OPERATORS.values():
            logger.info("Setting %s=%s on %s", API_ENDPOINT_ENV, endpoint, deployment)
            self.patch_deployment(self.pds_namespace, deployment, body)

    def get_operator_api_endpoint(self, operator: str = 'backup') -> str:
        deployment = self.get_deployment(self.pds_namespace, PDS_OPERATORS[operator])
        for container in deployment.spec.template.spec.containers:
            if container.name != OPERATOR_CONTAINER:
                continue
            for env in container.env or []:
                if env.name == API_ENDPOINT_ENV:
                    return env.value
        return ''

