"""
Typed operations on a Kubernetes cluster.

Wraps the kubernetes client APIs for the resources the suites touch, including
the PDS custom resources, volume snapshots and ExternalDNS endpoints.
"""
import datetime
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from kubernetes import client
from rich.console import Console

from pds_integration.errors import MultiError, NoPodsForJob
from pds_integration.portforward import Tunnel
from pds_integration.restclient import MemoryRESTClientGetter

console = Console()
logger = logging.getLogger(__name__)

JOB_NAME_LABEL = 'job-name'
JOB_LOGS_SEPARATOR = '\n--------\n'

BACKUPS_GROUP = 'backups.pds.io'
DEPLOYMENTS_GROUP = 'deployments.pds.io'
PDS_API_VERSION = 'v1'
VOLUME_SNAPSHOT_GROUP = 'volumesnapshot.external-storage.k8s.io'
VOLUME_SNAPSHOT_VERSION = 'v1'
EXTERNAL_DNS_GROUP = 'externaldns.k8s.io'
EXTERNAL_DNS_VERSION = 'v1alpha1'
CERT_MANAGER_GROUP = 'cert-manager.io'
CERT_MANAGER_VERSION = 'v1'


def format_labels(labels: Optional[Dict[str, str]]) -> str:
    """Canonical label selector: sorted k=v pairs joined by commas"""
    if not labels:
        return ''
    return ','.join(f"{k}={v}" for k, v in sorted(labels.items()))


def is_not_found(e: client.exceptions.ApiException) -> bool:
    return e.status == 404


class K8sCluster:
    """Kubernetes operations against one cluster"""

    def __init__(self, getter: MemoryRESTClientGetter):
        self.getter = getter
        self.api_client = getter.to_api_client()
        self.core_v1 = client.CoreV1Api(self.api_client)
        self.apps_v1 = client.AppsV1Api(self.api_client)
        self.batch_v1 = client.BatchV1Api(self.api_client)
        self.custom_objects = client.CustomObjectsApi(self.api_client)
        self.storage_v1 = client.StorageV1Api(self.api_client)
        self.rbac_v1 = client.RbacAuthorizationV1Api(self.api_client)
        self.apiextensions_v1 = client.ApiextensionsV1Api(self.api_client)

    # Tunnels and logs

    def portforward_pod(self, namespace: str, name: str, port: int) -> Tunnel:
        """Open a tunnel; the caller closes it"""
        tunnel = Tunnel(namespace, name, port, kubeconfig=self.getter.kubeconfig, context=self.getter.context)
        tunnel.forward_port()
        return tunnel

    def get_pod_logs(self, pod: client.V1Pod, since: Optional[datetime.datetime] = None,
                     container: Optional[str] = None) -> str:
        """Stream a pod's logs since a point in time into a string"""
        kwargs = {'_preload_content': False}
        if since is not None:
            now = datetime.datetime.now(datetime.timezone.utc)
            if since.tzinfo is None:
                since = since.replace(tzinfo=datetime.timezone.utc)
            kwargs['since_seconds'] = max(1, int((now - since).total_seconds()) + 1)
        if container:
            kwargs['container'] = container
        response = self.core_v1.read_namespaced_pod_log(pod.metadata.name, pod.metadata.namespace, **kwargs)
        chunks: List[bytes] = []
        try:
            for chunk in response.stream(4096):
                chunks.append(chunk)
        finally:
            response.release_conn()
        return b''.join(chunks).decode('utf-8', errors='replace')

    def get_job_logs(self, namespace: str, job_name: str, since: Optional[datetime.datetime] = None) -> str:
        pods = self.list_pods(namespace, {JOB_NAME_LABEL: job_name})
        if not pods.items:
            raise NoPodsForJob(f"no pod found for job '{job_name}'")
        logs = []
        for pod in pods.items:
            pod_logs = self.get_pod_logs(pod, since)
            if pod_logs:
                logs.append(pod_logs)
        return JOB_LOGS_SEPARATOR.join(logs)

    def log_components(self, selectors: Sequence[Tuple[str, Dict[str, str]]],
                       since: Optional[datetime.datetime] = None) -> Dict[str, str]:
        """Collect logs per pod for (namespace, labels) component selectors"""
        collected: Dict[str, str] = {}
        for namespace, labels in selectors:
            try:
                pods = self.list_pods(namespace, labels)
            except client.exceptions.ApiException as e:
                console.print(f"[yellow]Cannot list pods {format_labels(labels)} in {namespace}: {e.reason}[/yellow]")
                continue
            for pod in pods.items:
                key = f"{namespace}/{pod.metadata.name}"
                try:
                    collected[key] = self.get_pod_logs(pod, since)
                except client.exceptions.ApiException as e:
                    collected[key] = f"<failed to read logs: {e.reason}>"
        return collected

    # Core resources

    def list_pods(self, namespace: str, labels: Optional[Dict[str, str]] = None) -> client.V1PodList:
        return self.core_v1.list_namespaced_pod(namespace, label_selector=format_labels(labels))

    def list_services(self, namespace: str, labels: Optional[Dict[str, str]] = None) -> client.V1ServiceList:
        return self.core_v1.list_namespaced_service(namespace, label_selector=format_labels(labels))

    def list_deployments(self, namespace: str, labels: Optional[Dict[str, str]] = None) -> client.V1DeploymentList:
        return self.apps_v1.list_namespaced_deployment(namespace, label_selector=format_labels(labels))

    def delete_pods_by_selector(self, namespace: str, labels: Dict[str, str]) -> None:
        self.core_v1.delete_collection_namespaced_pod(namespace, label_selector=format_labels(labels))

    def get_secret(self, namespace: str, name: str) -> client.V1Secret:
        return self.core_v1.read_namespaced_secret(name, namespace)

    def get_job(self, namespace: str, name: str) -> client.V1Job:
        return self.batch_v1.read_namespaced_job(name, namespace)

    def get_statefulset(self, namespace: str, name: str) -> client.V1StatefulSet:
        return self.apps_v1.read_namespaced_stateful_set(name, namespace)

    def get_deployment(self, namespace: str, name: str) -> client.V1Deployment:
        return self.apps_v1.read_namespaced_deployment(name, namespace)

    def get_cronjob(self, namespace: str, name: str) -> client.V1CronJob:
        return self.batch_v1.read_namespaced_cron_job(name, namespace)

    def scale_deployment(self, namespace: str, name: str, replicas: int) -> None:
        self.apps_v1.patch_namespaced_deployment_scale(name, namespace, {'spec': {'replicas': replicas}})

    def patch_deployment(self, namespace: str, name: str, body: Dict) -> client.V1Deployment:
        return self.apps_v1.patch_namespaced_deployment(name, namespace, body)

    def get_namespace(self, name: str) -> client.V1Namespace:
        return self.core_v1.read_namespace(name)

    def create_namespace(self, name: str, labels: Optional[Dict[str, str]] = None) -> client.V1Namespace:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
        return self.core_v1.create_namespace(body)

    def patch_namespace_labels(self, name: str, labels: Dict[str, str]) -> client.V1Namespace:
        return self.core_v1.patch_namespace(name, {'metadata': {'labels': labels}})

    def delete_namespace(self, name: str) -> None:
        self.core_v1.delete_namespace(name)

    def list_pvs(self) -> client.V1PersistentVolumeList:
        return self.core_v1.list_persistent_volume()

    def set_pv_reclaim_policy(self, name: str, policy: str) -> None:
        self.core_v1.patch_persistent_volume(name, {'spec': {'persistentVolumeReclaimPolicy': policy}})

    def get_storage_class(self, name: str) -> client.V1StorageClass:
        return self.storage_v1.read_storage_class(name)

    def list_crds(self) -> client.V1CustomResourceDefinitionList:
        return self.apiextensions_v1.list_custom_resource_definition()

    def delete_crd(self, name: str) -> None:
        self.apiextensions_v1.delete_custom_resource_definition(name)

    def delete_crds_by_group_suffix(self, suffix: str) -> List[str]:
        """Delete every CRD whose group ends with suffix; visits all of them"""
        errors = MultiError()
        deleted = []
        for crd in self.list_crds().items:
            if not crd.spec.group.endswith(suffix):
                continue
            try:
                self.delete_crd(crd.metadata.name)
                deleted.append(crd.metadata.name)
            except client.exceptions.ApiException as e:
                if not is_not_found(e):
                    errors.append(e)
        errors.raise_if_any()
        return deleted

    # Jobs

    def create_job(self, namespace: str, name: str, image: str, env: Optional[List[client.V1EnvVar]] = None,
                   command: Optional[List[str]] = None) -> client.V1Job:
        """One-off job: no restarts, no retries, removed 30s after it finishes"""
        container = client.V1Container(
            name='main',
            image=image,
            env=env,
            command=command,
            security_context=client.V1SecurityContext(
                allow_privilege_escalation=False,
                capabilities=client.V1Capabilities(drop=['ALL']),
            ),
        )
        job = client.V1Job(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            spec=client.V1JobSpec(
                template=client.V1PodTemplateSpec(
                    spec=client.V1PodSpec(
                        containers=[container],
                        restart_policy='Never',
                        security_context=client.V1PodSecurityContext(
                            run_as_non_root=True,
                            run_as_user=1000,
                            seccomp_profile=client.V1SeccompProfile(type='RuntimeDefault'),
                        ),
                    ),
                ),
                backoff_limit=0,
                ttl_seconds_after_finished=30,
            ),
        )
        return self.batch_v1.create_namespaced_job(namespace, job)

    # PDS custom resources

    def _get_custom(self, group: str, version: str, namespace: str, plural: str, name: str) -> Dict:
        return self.custom_objects.get_namespaced_custom_object(group, version, namespace, plural, name)

    def get_pds_backup(self, namespace: str, name: str) -> Dict:
        return self._get_custom(BACKUPS_GROUP, PDS_API_VERSION, namespace, 'backups', name)

    def delete_pds_backup(self, namespace: str, name: str) -> None:
        self.custom_objects.delete_namespaced_custom_object(BACKUPS_GROUP, PDS_API_VERSION, namespace, 'backups', name)

    def get_pds_backup_job(self, namespace: str, name: str) -> Dict:
        return self._get_custom(BACKUPS_GROUP, PDS_API_VERSION, namespace, 'backupjobs', name)

    def get_pds_restore(self, namespace: str, name: str) -> Dict:
        return self._get_custom(BACKUPS_GROUP, PDS_API_VERSION, namespace, 'restores', name)

    def create_pds_restore(self, namespace: str, name: str, credential_name: str, snap_id: str) -> Dict:
        body = {
            'apiVersion': f"{BACKUPS_GROUP}/{PDS_API_VERSION}",
            'kind': 'Restore',
            'metadata': {'name': name, 'namespace': namespace},
            'spec': {
                'deploymentName': name,
                'cloudCredentialName': credential_name,
                'pxCloudSnapID': snap_id,
            },
        }
        return self.custom_objects.create_namespaced_custom_object(BACKUPS_GROUP, PDS_API_VERSION, namespace,
                                                                   'restores', body)

    def delete_pds_restore(self, namespace: str, name: str) -> None:
        self.custom_objects.delete_namespaced_custom_object(BACKUPS_GROUP, PDS_API_VERSION, namespace, 'restores', name)

    def pds_deployment_plural(self, name: str) -> str:
        """Plural of a dataservice CR from its kind, plural or short name"""
        return self.getter.to_rest_mapper().plural_for(name, DEPLOYMENTS_GROUP, PDS_API_VERSION)

    def get_pds_deployment(self, namespace: str, plural: str, name: str) -> Dict:
        """Dataservice CR, e.g. plural 'cassandras'"""
        return self._get_custom(DEPLOYMENTS_GROUP, PDS_API_VERSION, namespace, plural, name)

    def delete_pds_deployment(self, namespace: str, plural: str, name: str) -> None:
        self.custom_objects.delete_namespaced_custom_object(DEPLOYMENTS_GROUP, PDS_API_VERSION, namespace, plural, name)

    def get_volume_snapshot(self, namespace: str, name: str) -> Dict:
        return self._get_custom(VOLUME_SNAPSHOT_GROUP, VOLUME_SNAPSHOT_VERSION, namespace, 'volumesnapshots', name)

    def get_dns_endpoints(self, namespace: str, name_filter: str, record_type_filter: str = '') -> List[str]:
        """DNS names of DNSEndpoints labelled name=<name_filter>, optionally of one record type"""
        endpoints = self.custom_objects.list_namespaced_custom_object(
            EXTERNAL_DNS_GROUP, EXTERNAL_DNS_VERSION, namespace, 'dnsendpoints',
            label_selector=f"name={name_filter}",
        )
        dns_names = []
        for item in endpoints.get('items', []):
            for endpoint in item.get('spec', {}).get('endpoints') or []:
                if record_type_filter and endpoint.get('recordType') != record_type_filter:
                    continue
                dns_names.append(endpoint.get('dnsName'))
        return dns_names

    # cert-manager

    def create_self_signed_cluster_issuer(self, name: str) -> Dict:
        body = {
            'apiVersion': f"{CERT_MANAGER_GROUP}/{CERT_MANAGER_VERSION}",
            'kind': 'ClusterIssuer',
            'metadata': {'name': name},
            'spec': {'selfSigned': {}},
        }
        return self.custom_objects.create_cluster_custom_object(CERT_MANAGER_GROUP, CERT_MANAGER_VERSION,
                                                                'clusterissuers', body)

    def get_cluster_issuer(self, name: str) -> Dict:
        return self.custom_objects.get_cluster_custom_object(CERT_MANAGER_GROUP, CERT_MANAGER_VERSION,
                                                             'clusterissuers', name)

    def delete_cluster_issuer(self, name: str) -> None:
        self.custom_objects.delete_cluster_custom_object(CERT_MANAGER_GROUP, CERT_MANAGER_VERSION,
                                                         'clusterissuers', name)
