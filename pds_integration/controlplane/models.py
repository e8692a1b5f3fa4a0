"""Request-side models used by the control-plane facade"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ImageReference:
    """Enough information about one image version to deploy it"""
    data_service_name: str
    data_service_id: str
    version_id: str
    image_version_tag: str
    image_version_build: str
    image_id: str


@dataclass
class ShortDeploymentSpec:
    data_service_name: str
    image_version_tag: str = ''
    image_version_build: str = ''
    app_config_template_name: str = ''
    backup_policy_name: str = ''
    storage_option_name: str = ''
    resource_settings_template_name: str = ''
    service_type: str = ''
    name_prefix: str = ''
    crd_name_plural: str = ''
    # 0 leaves the node count unchanged on update and means 1 on create
    node_count: int = 0
    backup_target_name: str = ''
    tls_enabled: bool = False

    def image_version_string(self) -> str:
        if self.image_version_tag:
            if self.image_version_build:
                return f"{self.image_version_tag}-{self.image_version_build}"
            return self.image_version_tag
        return self.image_version_build


@dataclass
class TemplateInfo:
    id: str
    name: str


@dataclass
class DataServiceTemplateInfo:
    app_config_templates: List[TemplateInfo] = field(default_factory=list)
    resource_templates: List[TemplateInfo] = field(default_factory=list)


@dataclass
class S3Credentials:
    access_key: str
    secret_key: str
    endpoint: str

    def to_dict(self) -> Dict[str, Any]:
        return {'s3': {'access_key': self.access_key, 'secret_key': self.secret_key, 'endpoint': self.endpoint}}


@dataclass
class S3CompatibleCredentials(S3Credentials):
    def to_dict(self) -> Dict[str, Any]:
        return {'s3_compatible': {'access_key': self.access_key, 'secret_key': self.secret_key,
                                  'endpoint': self.endpoint}}


@dataclass
class GoogleCredentials:
    project_id: str
    json_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {'google': {'project_id': self.project_id, 'json_key': self.json_key}}


@dataclass
class AzureCredentials:
    account_name: str
    account_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {'azure': {'account_name': self.account_name, 'account_key': self.account_key}}


def backup_schedule(schedule: Optional[str], retention: Optional[int]) -> Dict[str, Any]:
    return {'schedule': schedule, 'retention_count': retention, 'type': 'full'}
