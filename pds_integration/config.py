"""
Configuration for the integration suites.

Values come from the environment, optionally backed by a dotenv file, and are
overridden by pytest command-line options (see tests/conftest.py).
"""
import os
from dataclasses import dataclass, field, fields
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

from pds_integration.errors import ConfigError
from pds_integration.naming import random_name

DEFAULT_ACCOUNT_NAME = 'Portworx'
DEFAULT_TENANT_NAME = 'Default'
DEFAULT_PROJECT_NAME = 'Default'
DEFAULT_SERVICE_ACCOUNT_NAME = 'Default-AgentWriter'
DEFAULT_ISSUER_URL = 'https://apicentral.portworx.com/api'
DEFAULT_ISSUER_CLIENT_ID = '4'
DEFAULT_S3_ENDPOINT = 's3.amazonaws.com'
DEFAULT_AWS_REGION = 'us-west-2'
DEFAULT_CERT_MANAGER_CHART_VERSION = 'v1.11.0'
DEFAULT_PDS_NAMESPACE = 'pds-system'
DEFAULT_CERT_MANAGER_NAMESPACE = 'cert-manager'

# "0" keeps an already registered target; empty asks the control plane
SKIP_PDS_CHART_VERSION = '0'

# Settings field -> environment variable
ENV_VARS = {
    'control_plane_api': 'PDS_CONTROL_PLANE_API',
    'account_name': 'PDS_ACCOUNT_NAME',
    'tenant_name': 'PDS_TENANT_NAME',
    'project_name': 'PDS_PROJECT_NAME',
    'token': 'PDS_TOKEN',
    'issuer_url': 'PDS_ISSUER_URL',
    'issuer_client_id': 'PDS_ISSUER_CLIENT_ID',
    'issuer_client_secret': 'PDS_ISSUER_CLIENT_SECRET',
    'username': 'PDS_USERNAME',
    'password': 'PDS_PASSWORD',
    'kubeconfig': 'PDS_TARGET_KUBECONFIG',
    'deployment_target_name': 'PDS_DEPLOYMENT_TARGET_NAME',
    'service_account_name': 'PDS_SERVICE_ACCOUNT_NAME',
    'pds_helm_chart_version': 'PDS_HELM_CHART_VERSION',
    'cert_manager_chart_version': 'PDS_CERT_MANAGER_CHART_VERSION',
    'data_service_tls_enabled': 'PDS_DATA_SERVICE_TLS_ENABLED',
    'test_namespace': 'PDS_TEST_NAMESPACE',
    'pds_namespace': 'PDS_NAMESPACE',
    'cert_manager_namespace': 'PDS_CERT_MANAGER_NAMESPACE',
    's3_endpoint': 'PDS_S3_ENDPOINT',
    's3_bucket': 'PDS_S3_BUCKET',
    's3_region': 'PDS_S3_REGION',
    's3_access_key': 'PDS_S3_ACCESS_KEY',
    's3_secret_key': 'PDS_S3_SECRET_KEY',
    'ds_version_matrix_file': 'PDS_DS_VERSION_MATRIX_FILE',
}

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


@dataclass
class Settings:
    """Merged configuration for one test run"""

    # Control plane
    control_plane_api: str = ''
    account_name: str = DEFAULT_ACCOUNT_NAME
    tenant_name: str = DEFAULT_TENANT_NAME
    project_name: str = DEFAULT_PROJECT_NAME

    # Authentication
    token: str = ''
    issuer_url: str = DEFAULT_ISSUER_URL
    issuer_client_id: str = DEFAULT_ISSUER_CLIENT_ID
    issuer_client_secret: str = ''
    username: str = ''
    password: str = ''

    # Target cluster
    kubeconfig: str = ''
    deployment_target_name: str = field(default_factory=lambda: random_name('tc'))
    service_account_name: str = DEFAULT_SERVICE_ACCOUNT_NAME
    pds_helm_chart_version: str = SKIP_PDS_CHART_VERSION
    cert_manager_chart_version: str = DEFAULT_CERT_MANAGER_CHART_VERSION
    data_service_tls_enabled: bool = False
    test_namespace: str = ''
    pds_namespace: str = DEFAULT_PDS_NAMESPACE
    cert_manager_namespace: str = DEFAULT_CERT_MANAGER_NAMESPACE

    # Backup credentials
    s3_endpoint: str = DEFAULT_S3_ENDPOINT
    s3_bucket: str = ''
    s3_region: str = DEFAULT_AWS_REGION
    s3_access_key: str = ''
    s3_secret_key: str = ''

    ds_version_matrix_file: str = ''

    @classmethod
    def from_mapping(cls, values: Mapping[str, Optional[str]]) -> 'Settings':
        """Build settings from an env-style mapping (unset keys keep defaults)"""
        kwargs: Dict[str, object] = {}
        for f in fields(cls):
            env_name = ENV_VARS.get(f.name)
            if env_name is None:
                continue
            raw = values.get(env_name)
            if raw is None:
                continue
            kwargs[f.name] = parse_bool(raw) if f.type in (bool, 'bool') else raw
        return cls(**kwargs)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'Settings':
        """
        Read settings from the process environment.

        A dotenv file (argument or PDS_ENV_FILE) supplies values that the real
        environment does not set.
        """
        merged: Dict[str, Optional[str]] = {}
        env_file = env_file or os.getenv('PDS_ENV_FILE')
        if env_file:
            if not os.path.isfile(env_file):
                raise ConfigError(f"env file {env_file} does not exist")
            merged.update(dotenv_values(env_file))
        merged.update({k: v for k, v in os.environ.items() if k in ENV_VARS.values()})
        return cls.from_mapping(merged)

    def override(self, **values) -> 'Settings':
        """Apply non-None overrides (command-line options)"""
        for key, value in values.items():
            if value is None:
                continue
            if not hasattr(self, key):
                raise ConfigError(f"unknown setting {key}")
            setattr(self, key, value)
        return self

    def is_configured(self) -> bool:
        """False when no control plane is configured; end-to-end suites skip"""
        return bool(self.control_plane_api)

    def auth_mode(self) -> str:
        if self.token:
            return 'token'
        if self.username and self.password:
            return 'password'
        if self.issuer_client_secret:
            return 'client_credentials'
        return ''

    def should_register(self) -> bool:
        return self.pds_helm_chart_version != SKIP_PDS_CHART_VERSION

    def validate(self) -> None:
        """Raise ConfigError for settings no suite can run with"""
        if not self.control_plane_api:
            raise ConfigError(f"control plane API URL is required ({ENV_VARS['control_plane_api']})")
        if not self.control_plane_api.startswith(('http://', 'https://')):
            raise ConfigError(f"control plane API URL must be http(s): {self.control_plane_api}")
        if not self.auth_mode():
            raise ConfigError(
                "no authentication configured: set a token, a username and password, "
                "or an issuer client secret"
            )
        if not self.deployment_target_name:
            raise ConfigError("deployment target name must not be empty")

    def s3_configured(self) -> bool:
        return bool(self.s3_bucket and self.s3_access_key and self.s3_secret_key)
