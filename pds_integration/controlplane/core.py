"""
Control-plane state and initialization: account/tenant/project resolution,
image versions, templates, namespaces and deployment targets.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from rich.console import Console

from pds_integration.api import PDSClient
from pds_integration.controlplane.models import DataServiceTemplateInfo, ImageReference, TemplateInfo
from pds_integration.dataservices import templates_for
from pds_integration.errors import NotFoundError, PDSTestError, must
from pds_integration.wait import (
    RETRY_INTERVAL, SHORT_RETRY_INTERVAL, poll, wait_for,
)

console = Console()
logger = logging.getLogger(__name__)

DEPLOYMENT_TARGET_NAME_EXISTS_TIMEOUT = 90
DEPLOYMENT_TARGET_HEALTHY_TIMEOUT = 10 * 60
DEPLOYMENT_TARGET_UNHEALTHY_TIMEOUT = 5 * 60
NAMESPACE_EXISTS_TIMEOUT = 30

DEPLOYMENT_TARGET_HEALTHY = 'healthy'
NAMESPACE_AVAILABLE = 'available'


class ControlPlaneCore:
    """Identifiers of the test account/tenant/project and the shared test fixtures"""

    def __init__(self, api: PDSClient, cancel: Optional[threading.Event] = None):
        self.api = api
        self.cancel = cancel
        self.account_id = ''
        self.tenant_id = ''
        self.project_id = ''
        self.namespace_id = ''
        self.deployment_target_id = ''
        self.storage_template_id = ''
        self.storage_template_name = ''
        self.templates: Dict[str, DataServiceTemplateInfo] = {}
        self.image_versions: List[ImageReference] = []

    # Initialization

    def must_have_account(self, name: str) -> None:
        with must(f"PDS account {name} not found"):
            self.account_id = self.api.get_account(name)['id']

    def must_have_tenant(self, name: str) -> None:
        with must(f"PDS tenant {name} not found"):
            self.tenant_id = self.api.get_tenant(self.account_id, name)['id']

    def must_have_project(self, name: str) -> None:
        with must(f"PDS project {name} not found"):
            self.project_id = self.api.get_project(self.tenant_id, name)['id']

    def load_image_versions(self) -> List[ImageReference]:
        """Join images with their data services and versions"""
        data_services = {ds['id']: ds.get('name', '') for ds in self.api.list_data('data-services')}
        images = self.api.list_data('images', params={'latest': 'false', 'limit': '1000'})
        references = []
        for image in images:
            ds_id = image.get('data_service_id', '')
            references.append(ImageReference(
                data_service_name=data_services.get(ds_id, ''),
                data_service_id=ds_id,
                version_id=image.get('version_id', ''),
                image_version_tag=image.get('tag', ''),
                image_version_build=image.get('build', ''),
                image_id=image.get('id', ''),
            ))
        return references

    def must_load_image_versions(self) -> None:
        with must("Error while reading image versions"):
            self.image_versions = self.load_image_versions()
        assert self.image_versions, "No image versions found."

    def get_all_images_for_data_service(self, data_service_id: str) -> List[Dict[str, Any]]:
        return self.api.list_data('images', params={
            'data_service_id': data_service_id, 'sort_by': '-created_at', 'latest': 'false', 'limit': '1000',
        })

    def must_create_storage_options(self, name_prefix: str) -> None:
        body = {'name': name_prefix, 'repl': 1, 'secure': False, 'fs': 'xfs', 'fg': False}
        with must("Creating storage options template"):
            template = self.api.post(f"tenants/{self.tenant_id}/storage-options-templates", body)
        self.storage_template_id = template['id']
        self.storage_template_name = template['name']

    def must_create_application_templates(self, name_prefix: str) -> None:
        """One set of app-config and resource templates per data service with images"""
        created: Dict[str, DataServiceTemplateInfo] = {}
        for image in self.image_versions:
            if not image.data_service_name or image.data_service_name in created:
                continue
            spec = templates_for(image.data_service_name)
            info = DataServiceTemplateInfo()
            with must(f"Creating templates for {image.data_service_name}"):
                for config_template in spec.app_config:
                    body = config_template.to_dict()
                    body['name'] = f"{name_prefix}-{config_template.name}"
                    body['data_service_id'] = image.data_service_id
                    result = self.api.post(f"tenants/{self.tenant_id}/application-configuration-templates", body)
                    info.app_config_templates.append(TemplateInfo(result['id'], result['name']))
                for resource_template in spec.resources:
                    body = resource_template.to_dict()
                    body['name'] = f"{name_prefix}-{resource_template.name}"
                    body['data_service_id'] = image.data_service_id
                    result = self.api.post(f"tenants/{self.tenant_id}/resource-settings-templates", body)
                    info.resource_templates.append(TemplateInfo(result['id'], result['name']))
            created[image.data_service_name] = info
        self.templates = created

    def initialize(self, account_name: str, tenant_name: str, project_name: str, name_prefix: str = '') -> None:
        """Resolve the test account/tenant/project, then optionally create templates"""
        self.must_have_account(account_name)
        self.must_have_tenant(tenant_name)
        self.must_have_project(project_name)
        if name_prefix:
            self.must_load_image_versions()
            self.must_create_storage_options(name_prefix)
            self.must_create_application_templates(name_prefix)
        console.print(f"[green]✓[/green] Control plane ready (tenant {self.tenant_id}, project {self.project_id})")

    def delete_test_templates(self) -> None:
        """Remove templates and storage options created by initialize()"""
        for info in self.templates.values():
            for template in info.app_config_templates:
                self._delete_ignoring_not_found(f"application-configuration-templates/{template.id}")
            for template in info.resource_templates:
                self._delete_ignoring_not_found(f"resource-settings-templates/{template.id}")
        self.templates = {}
        if self.storage_template_id:
            self._delete_ignoring_not_found(f"storage-options-templates/{self.storage_template_id}")
            self.storage_template_id = ''

    def _delete_ignoring_not_found(self, path: str) -> None:
        try:
            self.api.delete(path)
        except NotFoundError:
            console.print(f"[yellow]{path} already deleted[/yellow]")

    def get_resource_settings_template_by_name(self, name: str, data_service_id: str) -> Dict[str, Any]:
        for template in self.api.list_data(f"tenants/{self.tenant_id}/resource-settings-templates",
                                           params={'name': name, 'data_service_id': data_service_id}):
            if template.get('name') == name:
                return template
        raise LookupError(f"resource settings template {name!r} not found")

    def get_app_config_template_by_name(self, name: str, data_service_id: str) -> Dict[str, Any]:
        for template in self.api.list_data(f"tenants/{self.tenant_id}/application-configuration-templates",
                                           params={'name': name, 'data_service_id': data_service_id}):
            if template.get('name') == name:
                return template
        raise LookupError(f"application configuration template {name!r} not found")

    # Service accounts

    def must_get_service_account_token(self, name: str) -> str:
        with must(f"Getting service account {name} under tenant {self.tenant_id}"):
            accounts = self.api.list_data(f"tenants/{self.tenant_id}/service-accounts")
            account_id = next((a['id'] for a in accounts if a.get('name') == name), '')
            assert account_id, f"PDS service account {name} not found."
            token = self.api.get(f"service-accounts/{account_id}/token")
        return token['token']

    # Deployment targets

    def set_test_deployment_target(self, target_id: str) -> None:
        self.deployment_target_id = target_id

    def get_deployment_target(self, target_id: str) -> Dict[str, Any]:
        return self.api.get(f"deployment-targets/{target_id}")

    def get_deployment_target_id_by_name(self, name: str) -> str:
        for target in self.api.list_data(f"tenants/{self.tenant_id}/deployment-targets", params={'name': name}):
            if target.get('name') == name:
                return target['id']
        raise LookupError(f"PDS deployment target {name!r} does not exist")

    def check_deployment_target_health(self, target_id: str) -> None:
        status = self.get_deployment_target(target_id).get('status')
        if status != DEPLOYMENT_TARGET_HEALTHY:
            raise PDSTestError(f"deployment target {target_id} is {status!r}")

    def patch_deployment_target(self, target_id: str, tls_issuer: Optional[str] = None,
                                tls_required: Optional[bool] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if tls_issuer is not None:
            body['tls_issuer'] = tls_issuer
        if tls_required is not None:
            body['tls_required'] = tls_required
        return self.api.patch(f"deployment-targets/{target_id}", body)

    def delete_deployment_target(self, target_id: str) -> None:
        self.api.request('DELETE', f"deployment-targets/{target_id}", expected=(204,))

    def must_wait_for_deployment_target(self, name: str) -> str:
        """Wait until the target registers and reports healthy; returns its ID"""
        found: Dict[str, str] = {}

        def exists() -> bool:
            found['id'] = self.get_deployment_target_id_by_name(name)
            return True

        wait_for(exists, DEPLOYMENT_TARGET_NAME_EXISTS_TIMEOUT, RETRY_INTERVAL, self.cancel,
                 f"deployment target {name} to exist")
        target_id = found['id']

        def healthy() -> bool:
            self.check_deployment_target_health(target_id)
            return True

        wait_for(healthy, DEPLOYMENT_TARGET_HEALTHY_TIMEOUT, RETRY_INTERVAL, self.cancel,
                 f"deployment target {name} to be healthy")
        return target_id

    def delete_test_deployment_target(self) -> None:
        """Delete the registered test target once the control plane sees it unhealthy"""
        target_id = self.deployment_target_id

        def unhealthy():
            try:
                self.check_deployment_target_health(target_id)
            except PDSTestError:
                return True
            return False, PDSTestError(f"deployment target {target_id} is still healthy")

        wait_for(unhealthy, DEPLOYMENT_TARGET_UNHEALTHY_TIMEOUT, RETRY_INTERVAL, self.cancel,
                 f"deployment target {target_id} to become unhealthy")
        with must(f"Deleting deployment target {target_id}"):
            self.delete_deployment_target(target_id)

    # Namespaces

    def get_namespace(self, namespace_id: str) -> Dict[str, Any]:
        return self.api.get(f"namespaces/{namespace_id}")

    def get_namespace_by_name(self, name: str, target_id: str = '') -> Optional[Dict[str, Any]]:
        target_id = target_id or self.deployment_target_id
        for namespace in self.api.list_data(f"deployment-targets/{target_id}/namespaces", params={'name': name}):
            if namespace.get('name') == name:
                return namespace
        return None

    def must_wait_for_namespace_status(self, name: str, expected_status: str) -> Dict[str, Any]:
        found: Dict[str, Any] = {}

        def has_status():
            namespace = self.get_namespace_by_name(name)
            assert namespace is not None, f"Could not find namespace {name}."
            status = namespace.get('status')
            assert status == expected_status, f"Namespace {name} in status {status}, expected {expected_status}."
            found.update(namespace)
            return True

        wait_for(has_status, NAMESPACE_EXISTS_TIMEOUT, SHORT_RETRY_INTERVAL, self.cancel,
                 f"namespace {name} to be {expected_status}")
        return found

    def must_wait_for_test_namespace(self, name: str) -> str:
        namespace = self.must_wait_for_namespace_status(name, NAMESPACE_AVAILABLE)
        self.namespace_id = namespace['id']
        return self.namespace_id

    def must_never_get_namespace_by_name(self, name: str) -> None:
        """The namespace must stay unknown to the control plane for the whole window"""
        ok, _ = poll(lambda: self.get_namespace_by_name(name) is not None, NAMESPACE_EXISTS_TIMEOUT,
                     SHORT_RETRY_INTERVAL, self.cancel, f"namespace {name} to appear", quiet=True)
        assert not ok, f"Namespace {name} was not expected to be found in control plane."
