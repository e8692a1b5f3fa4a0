"""
Deployment operations on the control plane
"""
import datetime
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console

from pds_integration.controlplane.models import ImageReference, ShortDeploymentSpec
from pds_integration.dataservices import healthy_timeout
from pds_integration.errors import ApiError, NotFoundError, PDSTestError, RequirementFailed, must
from pds_integration.naming import random_string
from pds_integration.wait import (
    LONG_TIMEOUT, RETRY_INTERVAL, SHORT_RETRY_INTERVAL, SHORT_TIMEOUT, STANDARD_TIMEOUT, wait_for,
)

console = Console()

HEALTH_HEALTHY = 'Healthy'
MANIFEST_HEALTH_AVAILABLE = 'Available'
MANIFEST_HEALTH_UNAVAILABLE = 'Unavailable'
MANIFEST_STATE_AVAILABLE = 'Available'
MANIFEST_STATE_DEPLOYING = 'Deploying'

DEFAULT_SERVICE_TYPE = 'ClusterIP'
FAIL_UPDATE_NODE_COUNT = 10


def _parse_timestamp(value: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))


class DeploymentsMixin:
    """Requires the attributes of ControlPlaneCore"""

    def find_image_version(self, spec: ShortDeploymentSpec) -> Optional[ImageReference]:
        for image in self.image_versions:
            found = image.data_service_name == spec.data_service_name
            if spec.image_version_tag:
                found = found and image.image_version_tag == spec.image_version_tag
            if spec.image_version_build:
                found = found and image.image_version_build == spec.image_version_build
            if found:
                return image
        return None

    def set_default_image_version_build(self, spec: ShortDeploymentSpec, overwrite: bool = False) -> None:
        """Fill in the build of the first matching image"""
        if spec.image_version_build and not overwrite:
            return
        if overwrite:
            spec.image_version_build = ''
        image = self.find_image_version(spec)
        if image is not None:
            spec.image_version_build = image.image_version_build

    def set_deployment_defaults(self, spec: ShortDeploymentSpec) -> None:
        if not spec.service_type:
            spec.service_type = DEFAULT_SERVICE_TYPE
        if not spec.storage_option_name:
            spec.storage_option_name = self.storage_template_name
        templates = self.templates.get(spec.data_service_name)
        if templates is not None:
            if not spec.resource_settings_template_name and templates.resource_templates:
                spec.resource_settings_template_name = templates.resource_templates[0].name
            if not spec.app_config_template_name and templates.app_config_templates:
                spec.app_config_template_name = templates.app_config_templates[0].name

    def _template_id(self, kind: str, name: str) -> str:
        for info in self.templates.values():
            for template in getattr(info, kind):
                if template.name == name:
                    return template.id
        raise LookupError(f"template {name!r} not found")

    def get_backup_policy_by_name(self, name: str) -> Dict[str, Any]:
        for policy in self.api.list_data(f"tenants/{self.tenant_id}/backup-policies", params={'name': name}):
            if policy.get('name') == name:
                return policy
        raise LookupError(f"backup policy {name!r} not found")

    def get_backup_target_by_name(self, name: str) -> Dict[str, Any]:
        for target in self.api.list_data(f"tenants/{self.tenant_id}/backup-targets", params={'name': name}):
            if target.get('name') == name:
                return target
        raise LookupError(f"backup target {name!r} not found")

    def deploy_deployment_spec(self, spec: ShortDeploymentSpec, namespace_id: str = '') -> str:
        """Create a deployment and return its ID"""
        image = self.find_image_version(spec)
        if image is None:
            raise PDSTestError(f"no image found for deployment {spec.data_service_name} "
                               f"{spec.image_version_tag} {spec.image_version_build}")
        self.set_deployment_defaults(spec)

        body: Dict[str, Any] = {
            'name': spec.name_prefix or f"{spec.data_service_name.lower().replace(' ', '')}-{random_string(6)}",
            'image_id': image.image_id,
            'deployment_target_id': self.deployment_target_id,
            'namespace_id': namespace_id or self.namespace_id,
            'node_count': spec.node_count or 1,
            'service_type': spec.service_type,
            'storage_options_template_id': self.storage_template_id,
            'tls_enabled': spec.tls_enabled,
        }
        if spec.resource_settings_template_name:
            body['resource_settings_template_id'] = self._template_id(
                'resource_templates', spec.resource_settings_template_name)
        if spec.app_config_template_name:
            body['application_configuration_template_id'] = self._template_id(
                'app_config_templates', spec.app_config_template_name)
        if spec.backup_policy_name and spec.backup_target_name:
            body['scheduled_backup'] = {
                'backup_policy_id': self.get_backup_policy_by_name(spec.backup_policy_name)['id'],
                'backup_target_id': self.get_backup_target_by_name(spec.backup_target_name)['id'],
            }
        deployment = self.api.post(f"projects/{self.project_id}/deployments", body)
        console.print(f"[green]✓ Created deployment {deployment.get('name')} ({deployment['id']})[/green]")
        return deployment['id']

    def must_deploy_deployment_spec(self, spec: ShortDeploymentSpec, namespace_id: str = '') -> str:
        with must(f"Error while creating deployment {spec.data_service_name}"):
            deployment_id = self.deploy_deployment_spec(spec, namespace_id)
        assert deployment_id, "Deployment ID is empty."
        return deployment_id

    def get_deployment(self, deployment_id: str, expand: str = '') -> Dict[str, Any]:
        return self.api.get(f"deployments/{deployment_id}", params={'expand': expand} if expand else None)

    def get_deployment_status(self, deployment_id: str) -> Dict[str, Any]:
        return self.api.get(f"deployments/{deployment_id}/status")

    def _update_request(self, deployment_id: str, spec: ShortDeploymentSpec,
                        default_node_count: Optional[int] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if spec.image_version_tag or spec.image_version_build:
            image = self.find_image_version(spec)
            if image is None:
                raise RequirementFailed(f"Update deployment: no image found for {spec.image_version_string()} version.")
            body['image_id'] = image.image_id
        if spec.node_count:
            body['node_count'] = spec.node_count
        elif default_node_count:
            body['node_count'] = default_node_count

        deployment = self.get_deployment(deployment_id)
        data_service_id = deployment.get('data_service_id', '')
        if spec.resource_settings_template_name:
            body['resource_settings_template_id'] = self.get_resource_settings_template_by_name(
                spec.resource_settings_template_name, data_service_id)['id']
        if spec.app_config_template_name:
            body['application_configuration_template_id'] = self.get_app_config_template_by_name(
                spec.app_config_template_name, data_service_id)['id']
        return body

    def must_update_deployment(self, deployment_id: str, spec: ShortDeploymentSpec) -> None:
        """
        Update image, node count, templates and the backup schedule.

        A backup policy and a backup target must be given together.
        """
        if bool(spec.backup_target_name) != bool(spec.backup_policy_name):
            raise RequirementFailed("backup target name and backup policy name both must be explicitly specified, "
                                    "and leaving either of them undefined is not allowed")
        with must(f"update {deployment_id} deployment"):
            body = self._update_request(deployment_id, spec)
            if spec.backup_policy_name and spec.backup_target_name:
                body['scheduled_backup'] = {
                    'backup_policy_id': self.get_backup_policy_by_name(spec.backup_policy_name)['id'],
                    'backup_target_id': self.get_backup_target_by_name(spec.backup_target_name)['id'],
                }
            self.api.put(f"deployments/{deployment_id}", body)

    def fail_update_deployment(self, deployment_id: str, spec: ShortDeploymentSpec,
                               expected_status: int = 400) -> ApiError:
        """The update must be rejected with expected_status; returns the error"""
        with must(f"preparing update of {deployment_id}"):
            body = self._update_request(deployment_id, spec, default_node_count=FAIL_UPDATE_NODE_COUNT)
        try:
            self.api.put(f"deployments/{deployment_id}", body)
        except ApiError as e:
            assert e.status == expected_status, f"Expected HTTP {expected_status} on update, got {e.status}: {e}"
            return e
        raise RequirementFailed(f"Update of deployment {deployment_id} unexpectedly succeeded.")

    # Waits

    def must_wait_for_deployment_healthy(self, deployment_id: str) -> None:
        with must(f"Getting deployment {deployment_id}"):
            node_count = self.get_deployment(deployment_id).get('node_count') or 1

        def healthy():
            health = self.get_deployment_status(deployment_id).get('health')
            assert health == HEALTH_HEALTHY, f"Deployment {deployment_id} is in state {health}."
            return True

        wait_for(healthy, healthy_timeout(node_count), RETRY_INTERVAL, self.cancel,
                 f"deployment {deployment_id} to be healthy")

    def must_wait_for_deployment_replicas(self, deployment_id: str, expected_replicas: int) -> None:
        def has_replicas():
            replicas = self.get_deployment_status(deployment_id).get('replicas')
            assert replicas == expected_replicas, f"Deployment {deployment_id} has {replicas} replicas."
            return True

        wait_for(has_replicas, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel,
                 f"deployment {deployment_id} to have {expected_replicas} replicas")

    def get_deployment_manifest_health_status(self, deployment_id: str):
        manifest = self.get_deployment(deployment_id, expand='deployment_manifest').get('deployment_manifest') or {}
        return manifest.get('health'), manifest.get('status')

    def must_wait_for_deployment_available(self, deployment_id: str) -> None:
        def available():
            health, _ = self.get_deployment_manifest_health_status(deployment_id)
            assert health == MANIFEST_HEALTH_AVAILABLE, f"Deployment {deployment_id} is in state {health}."
            return True

        wait_for(available, LONG_TIMEOUT, RETRY_INTERVAL, self.cancel, f"deployment {deployment_id} to be available")

    def must_wait_for_deployment_manifest_initial_change(self, deployment_id: str) -> None:
        def changed():
            health, status = self.get_deployment_manifest_health_status(deployment_id)
            assert health != MANIFEST_HEALTH_UNAVAILABLE, f"Deployment {deployment_id} has health {health}."
            assert status != MANIFEST_STATE_DEPLOYING, f"Deployment {deployment_id} is in state {status}."
            return True

        wait_for(changed, STANDARD_TIMEOUT, SHORT_RETRY_INTERVAL, self.cancel,
                 f"deployment {deployment_id} manifest to change")

    def must_deployment_manifest_status_health_available(self, deployment_id: str) -> None:
        health, status = self.get_deployment_manifest_health_status(deployment_id)
        assert health == MANIFEST_HEALTH_AVAILABLE, f"Deployment {deployment_id} has health {health}."
        assert status == MANIFEST_STATE_AVAILABLE, f"Deployment {deployment_id} is in state {status}."

    def must_deployment_manifest_status_health_unavailable(self, deployment_id: str) -> None:
        health, status = self.get_deployment_manifest_health_status(deployment_id)
        assert health == MANIFEST_HEALTH_UNAVAILABLE, f"Deployment {deployment_id} has health {health}."
        assert status == MANIFEST_STATE_DEPLOYING, f"Deployment {deployment_id} is in state {status}."

    # Removal

    def must_remove_deployment(self, deployment_id: str) -> None:
        with must(f"Removing deployment {deployment_id}"):
            self.api.delete(f"deployments/{deployment_id}")

    def must_remove_deployment_if_exists(self, deployment_id: str) -> None:
        try:
            self.get_deployment(deployment_id)
        except NotFoundError:
            return
        self.must_remove_deployment(deployment_id)

    def is_deployment_removed(self, deployment_id: str):
        try:
            self.get_deployment(deployment_id)
        except NotFoundError:
            return True
        return False, PDSTestError(f"Deployment {deployment_id} is not removed.")

    def must_wait_for_deployment_removed(self, deployment_id: str) -> None:
        wait_for(lambda: self.is_deployment_removed(deployment_id), STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel,
                 f"deployment {deployment_id} to be removed")

    def list_deployments_in_project(self, project_id: str = '', deployment_target_id: str = '') -> List[Dict[str, Any]]:
        params = {'deployment_target_id': deployment_target_id} if deployment_target_id else None
        return self.api.list_data(f"projects/{project_id or self.project_id}/deployments", params=params)

    # Events

    def get_deployment_events(self, deployment_id: str) -> List[Dict[str, Any]]:
        return self.api.get(f"deployments/{deployment_id}/events") or []

    def must_wait_for_deployment_event_condition(self, deployment_id: str,
                                                 predicate: Callable[[Dict[str, Any]], bool],
                                                 description: str) -> None:
        def has_event():
            events = self.get_deployment_events(deployment_id)
            assert any(predicate(e) for e in events), f"No event matches condition: {description}."
            return True

        wait_for(has_event, SHORT_TIMEOUT, RETRY_INTERVAL, self.cancel, f"deployment event: {description}")

    def must_have_deployment_events_sorted(self, deployment_id: str) -> None:
        """Events are listed newest first"""
        with must(f"Getting events of deployment {deployment_id}"):
            events = self.get_deployment_events(deployment_id)
        timestamps = [_parse_timestamp(e['timestamp']) for e in events]
        for previous, current in zip(timestamps, timestamps[1:]):
            assert previous >= current, "Events are not sorted based on timestamp"

    def must_have_no_duplicate_deployment_events(self, deployment_id: str) -> None:
        with must(f"Getting events of deployment {deployment_id}"):
            events = self.get_deployment_events(deployment_id)
        seen = set()
        for event in events:
            name = event.get('name')
            assert name not in seen, f"Duplicate event {name} found"
            seen.add(name)

    def must_have_deployment_events_for_correct_deployment(self, deployment_id: str) -> None:
        with must(f"Getting events of deployment {deployment_id}"):
            resource_name = self.get_deployment(deployment_id).get('cluster_resource_name', '')
            events = self.get_deployment_events(deployment_id)
        for event in events:
            assert resource_name in (event.get('resource_name') or ''), (
                f"Resource name does not contain deployment name: expected {resource_name} in "
                f"{event.get('resource_name')}")

    def must_get_error_on_deployment_events_get(self, deployment_id: str) -> None:
        try:
            self.get_deployment_events(deployment_id)
        except ApiError:
            return
        raise RequirementFailed(f"Expected an error getting events for deployment {deployment_id}.")
