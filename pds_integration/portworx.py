"""
Portworx REST calls tunneled through the Kubernetes service proxy
(services/portworx-api:9021/proxy/<path>).
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kubernetes import client
from rich.console import Console

from pds_integration.errors import MultiError, NoPXServiceFound, PortworxError

console = Console()
logger = logging.getLogger(__name__)

PX_SERVICE_NAME = 'portworx-api'
PX_SERVICE_PORT = 9021
PDS_CREDENTIALS_PREFIX = 'pdscreds-'
PX_CREDENTIALS_REGION = 'us-west-2'

DETACHED_ATTACH_STATES = ('ATTACH_STATE_INTERNAL', 'ATTACH_STATE_INTERNAL_SWITCH')


@dataclass
class AWSCredential:
    access_key: str = ''
    endpoint: str = ''
    region: str = ''


@dataclass
class PXCloudCredential:
    id: str
    name: str
    bucket: str = ''
    aws_credential: AWSCredential = field(default_factory=AWSCredential)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PXCloudCredential':
        aws = data.get('aws_credential') or {}
        return cls(
            id=data.get('credential_id', ''),
            name=data.get('name', ''),
            bucket=data.get('bucket', ''),
            aws_credential=AWSCredential(
                access_key=aws.get('access_key', ''),
                endpoint=aws.get('endpoint', ''),
                region=aws.get('region', ''),
            ),
        )


def find_px_namespace(core_v1: client.CoreV1Api) -> str:
    services = core_v1.list_service_for_all_namespaces(field_selector=f"metadata.name={PX_SERVICE_NAME}")
    if not services.items:
        raise NoPXServiceFound("no PX service found")
    return services.items[0].metadata.namespace


class PXProxy:
    """Portworx API client that goes through the API server's service proxy"""

    def __init__(self, api_client: client.ApiClient, namespace: str):
        self.api_client = api_client
        self.namespace = namespace

    @classmethod
    def discover(cls, api_client: client.ApiClient) -> 'PXProxy':
        namespace = find_px_namespace(client.CoreV1Api(api_client))
        console.print(f"[dim]Portworx API found in namespace {namespace}[/dim]")
        return cls(api_client, namespace)

    def _path(self, suffix: str) -> str:
        return (f"/api/v1/namespaces/{self.namespace}/services/"
                f"{PX_SERVICE_NAME}:{PX_SERVICE_PORT}/proxy/{suffix}")

    def request(self, method: str, suffix: str, body: Optional[Dict[str, Any]] = None) -> bytes:
        """Issue a proxied call and return the raw response body"""
        response = self.api_client.call_api(
            self._path(suffix), method,
            header_params={'Accept': 'application/json', 'Content-Type': 'application/json'},
            body=body,
            auth_settings=['BearerToken'],
            _preload_content=False,
            _return_http_data_only=True,
        )
        try:
            return response.data
        finally:
            response.release_conn()

    # Cloud credentials

    def get_cloud_credential(self, credential_id: str) -> PXCloudCredential:
        raw = self.request('GET', f"v1/credentials/inspect/{credential_id}")
        return PXCloudCredential.from_dict(json.loads(raw))

    def list_cloud_credentials(self) -> List[PXCloudCredential]:
        """All credentials; any failed inspect fails the whole listing"""
        raw = self.request('GET', 'v1/credentials')
        ids = json.loads(raw).get('credential_ids') or []
        return [self.get_cloud_credential(credential_id) for credential_id in ids]

    def find_cloud_credential_by_name(self, name: str) -> PXCloudCredential:
        for credential in self.list_cloud_credentials():
            if credential.name == name:
                return credential
        raise PortworxError(f"cloud credential '{name}' not found")

    def has_cloud_credential(self, name: str) -> bool:
        return any(c.name == name for c in self.list_cloud_credentials())

    def create_cloud_credential_for_s3(self, name: str, bucket: str, access_key: str, secret_key: str,
                                       endpoint: str) -> None:
        body = {
            'name': name,
            'bucket': bucket,
            'aws_credential': {
                'access_key': access_key,
                'secret_key': secret_key,
                'region': PX_CREDENTIALS_REGION,
                'endpoint': endpoint,
            },
        }
        self.request('POST', 'v1/credentials', body)
        console.print(f"[green]✓ Created PX cloud credential {name}[/green]")

    def delete_cloud_credential(self, credential_id: str) -> None:
        self.request('DELETE', f"v1/credentials/{credential_id}")

    def delete_cloud_credentials_by_prefix(self, prefix: str = PDS_CREDENTIALS_PREFIX) -> List[str]:
        """Delete every credential whose name starts with prefix, attempting all of them"""
        errors = MultiError()
        deleted = []
        for credential in self.list_cloud_credentials():
            if not credential.name.startswith(prefix):
                continue
            try:
                self.delete_cloud_credential(credential.id)
                deleted.append(credential.name)
            except client.exceptions.ApiException as e:
                errors.append(PortworxError(f"deleting cloud credential {credential.name}: {e.status} {e.reason}"))
        errors.raise_if_any()
        return deleted

    # Volumes

    def get_volumes(self) -> bytes:
        return self.request('POST', 'v1/volumes/inspectwithfilters', {})

    def delete_volume(self, volume_id: str) -> bytes:
        return self.request('DELETE', f"v1/volumes/{volume_id}")

    def delete_detached_volumes(self) -> List[str]:
        """Delete volumes left attached to nothing (internal attach states)"""
        volumes = json.loads(self.get_volumes()).get('volumes') or []
        errors = MultiError()
        deleted = []
        for entry in volumes:
            volume = entry.get('volume') or {}
            if volume.get('attached_state') not in DETACHED_ATTACH_STATES:
                continue
            volume_id = volume.get('id')
            try:
                self.delete_volume(volume_id)
                deleted.append(volume_id)
            except client.exceptions.ApiException as e:
                errors.append(PortworxError(f"deleting volume {volume_id}: {e.status} {e.reason}"))
        errors.raise_if_any()
        return deleted
