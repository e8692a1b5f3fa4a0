"""
Pytest configuration and shared fixtures for the PDS integration suites
"""
import datetime
import os
import threading
import warnings
from dataclasses import fields

import pytest
from rich.console import Console

from pds_integration.cleanup import DeferralStack
from pds_integration.config import ENV_VARS, Settings, parse_bool
from pds_integration.controlplane import ControlPlane, ShortDeploymentSpec
from pds_integration.crosscluster import CrossCluster
from pds_integration.dataservices import DSVersionMatrix
from pds_integration.logs import configure_logging
from pds_integration.naming import random_name
from pds_integration.orchestrator import Orchestrator
from pds_integration.prometheus import PrometheusClient
from pds_integration.registration import (
    create_test_namespace, delete_test_namespace, deregister_target, register_target,
)
from pds_integration.storage import S3StorageProvider
from pds_integration.targetcluster import TargetCluster

# Suppress urllib3 warnings about OpenSSL
warnings.filterwarnings('ignore', category=UserWarning, module='urllib3')

console = Console()

# Settings fields that take a boolean from the command line
BOOL_SETTINGS = {f.name for f in fields(Settings) if f.type in (bool, 'bool')}


def _option_name(setting: str) -> str:
    return '--' + setting.replace('_', '-')


def pytest_addoption(parser):
    """Add one command-line option per setting, defaulting to its environment variable"""
    group = parser.getgroup('pds', 'PDS integration settings')
    group.addoption(
        '--env-file',
        action='store',
        default=os.getenv('PDS_ENV_FILE'),
        help='dotenv file with PDS_* settings',
    )
    for setting, env_name in ENV_VARS.items():
        group.addoption(
            _option_name(setting),
            action='store',
            dest=f"pds_{setting}",
            default=os.getenv(env_name),
            help=f"(env {env_name})",
        )


def pytest_configure(config):
    configure_logging()


def pytest_runtest_setup(item):
    """Print the test docstring in verbose mode"""
    doc = getattr(getattr(item, "function", None), "__doc__", None)
    if item.config.getoption("verbose", 0) > 0 and doc:
        console.print(f"\n[dim]{doc.strip()}[/dim]")


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """Attach PDS agent logs to failed tests that used the target cluster"""
    outcome = yield
    report = outcome.get_result()
    if report.when != "call" or not report.failed:
        return
    target_cluster = getattr(item, "funcargs", {}).get("target_cluster")
    if target_cluster is None:
        return
    since = datetime.datetime.fromtimestamp(call.start, datetime.timezone.utc)
    logs = target_cluster.log_components(target_cluster.component_selectors(), since)
    for pod, text in logs.items():
        report.sections.append((f"PDS logs {pod}", text))


@pytest.fixture(scope="session")
def settings(request):
    """Environment, dotenv file and command-line options merged"""
    values = Settings.from_env(request.config.getoption('--env-file'))
    overrides = {}
    for setting in ENV_VARS:
        value = request.config.getoption(f"pds_{setting}")
        if value is None:
            continue
        overrides[setting] = parse_bool(value) if setting in BOOL_SETTINGS else value
    return values.override(**overrides)


@pytest.fixture(scope="session")
def cancel():
    """Set on interrupt so blocking waits return promptly"""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture(scope="session")
def ds_versions(settings):
    return DSVersionMatrix.load(settings.ds_version_matrix_file or None)


@pytest.fixture(scope="session")
def control_plane(settings, cancel):
    """Control plane with the test account, tenant and project resolved and templates created"""
    if not settings.is_configured():
        pytest.skip("No PDS control plane configured (PDS_CONTROL_PLANE_API)")
    settings.validate()
    cp = ControlPlane.from_settings(settings, cancel)
    cp.initialize(settings.account_name, settings.tenant_name, settings.project_name,
                  name_prefix=random_name('tmpl'))
    yield cp
    cp.delete_test_templates()


@pytest.fixture(scope="session")
def target_cluster(settings, cancel):
    if not settings.is_configured():
        pytest.skip("No PDS control plane configured (PDS_CONTROL_PLANE_API)")
    return TargetCluster.from_kubeconfig(
        settings.kubeconfig,
        pds_namespace=settings.pds_namespace,
        cert_manager_namespace=settings.cert_manager_namespace,
        cancel=cancel,
    )


@pytest.fixture(scope="session")
def deployment_target_id(settings, control_plane, target_cluster):
    """Register the target cluster, or reuse the already registered one"""
    if not settings.should_register():
        target_id = control_plane.get_deployment_target_id_by_name(settings.deployment_target_name)
        control_plane.set_test_deployment_target(target_id)
        yield target_id
        return

    target_id = register_target(control_plane, target_cluster, settings)
    yield target_id
    deregister_target(control_plane, target_cluster)


@pytest.fixture(scope="session")
def test_namespace(settings, control_plane, target_cluster, deployment_target_id):
    """Namespace deployments go to; created per session unless configured"""
    if settings.test_namespace:
        name = settings.test_namespace
        created = False
    else:
        name = create_test_namespace(target_cluster, 'pds')
        created = True
    control_plane.must_wait_for_test_namespace(name)
    yield name
    if created:
        delete_test_namespace(target_cluster, name)


@pytest.fixture(scope="session")
def cross_cluster(control_plane, target_cluster, deployment_target_id):
    return CrossCluster(control_plane, target_cluster)


@pytest.fixture(scope="session")
def orchestrator(settings, control_plane, target_cluster, cross_cluster, test_namespace):
    return Orchestrator(control_plane, target_cluster, cross_cluster, settings)


@pytest.fixture
def deferrals():
    """Per-test cleanup stack, drained in reverse order at teardown"""
    stack = DeferralStack()
    yield stack
    stack.drain()


@pytest.fixture
def s3_settings(settings):
    if not settings.s3_configured():
        pytest.skip("No S3 bucket and credentials configured")
    return settings


@pytest.fixture(scope="session")
def spec_for(control_plane, ds_versions):
    """Build a deployment spec for the newest matrix version the control plane has an image for"""
    def build(data_service, version='', **kwargs):
        if not ds_versions.has_dataservice(data_service):
            pytest.skip(f"{data_service} is not in the dataservice version matrix")
        tag = version or ds_versions.get_latest_version(data_service)
        spec = ShortDeploymentSpec(data_service, image_version_tag=tag, **kwargs)
        control_plane.set_default_image_version_build(spec)
        if control_plane.find_image_version(spec) is None:
            pytest.skip(f"No {data_service} {spec.image_version_tag} image in the control plane")
        return spec
    return build


@pytest.fixture
def s3_storage(s3_settings):
    """Direct access to the backup bucket"""
    return S3StorageProvider(s3_settings.s3_bucket, s3_settings.s3_region, s3_settings.s3_access_key,
                             s3_settings.s3_secret_key, endpoint_url=f"https://{s3_settings.s3_endpoint}")


@pytest.fixture(scope="session")
def prometheus(settings, control_plane):
    """Prometheus behind the control-plane proxy, scoped to the test tenant"""
    return PrometheusClient.for_control_plane(settings.control_plane_api, control_plane.api.token_source,
                                              control_plane.tenant_id)
