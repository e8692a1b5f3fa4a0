"""
Unit tests for the in-memory REST client getter
"""
from unittest import mock

import pytest
from kubernetes import client

from pds_integration.errors import ConfigError
from pds_integration.restclient import MemoryRESTClientGetter


@pytest.mark.unit
def test_helm_args_carry_connection_overrides():
    getter = MemoryRESTClientGetter(client.Configuration(), kubeconfig='/tmp/kubeconfig', context='tc',
                                    namespace='pds-system', impersonate='ci-bot')

    assert getter.helm_args() == [
        '--kubeconfig', '/tmp/kubeconfig',
        '--kube-context', 'tc',
        '--kube-as-user', 'ci-bot',
        '-n', 'pds-system',
    ]


@pytest.mark.unit
def test_namespace_defaults_to_default():
    getter = MemoryRESTClientGetter(client.Configuration())
    assert getter.helm_args() == ['-n', 'default']


@pytest.mark.unit
def test_persistent_getter_caches_lazy_clients():
    getter = MemoryRESTClientGetter(client.Configuration(), persistent=True)

    with mock.patch('pds_integration.restclient.DynamicClient') as dynamic:
        first = getter.to_discovery_client()
        second = getter.to_discovery_client()
        mapper = getter.to_rest_mapper()

    assert first is second
    assert dynamic.call_count == 1
    assert mapper is getter.to_rest_mapper()
    assert getter.to_raw_kubeconfig_loader() is getter.to_raw_kubeconfig_loader()


@pytest.mark.unit
def test_non_persistent_getter_builds_fresh_clients():
    getter = MemoryRESTClientGetter(client.Configuration())

    with mock.patch('pds_integration.restclient.DynamicClient') as dynamic:
        getter.to_discovery_client()
        getter.to_discovery_client()

    assert dynamic.call_count == 2
    assert getter.to_raw_kubeconfig_loader() is not getter.to_raw_kubeconfig_loader()


@pytest.mark.unit
def test_missing_rest_config():
    with pytest.raises(ConfigError):
        MemoryRESTClientGetter(None).to_rest_config()


@pytest.mark.unit
def test_rest_mapper_resolves_short_names():
    statefulsets = mock.Mock(short_names=['sts'])
    statefulsets.name = 'statefulsets'
    discovery = mock.Mock()
    # kind, name and singular name miss; the shortcut scan finds it
    discovery.resources.search.side_effect = [[], [], [], [statefulsets], [], [], [], [statefulsets]]
    getter = MemoryRESTClientGetter(client.Configuration())

    with mock.patch('pds_integration.restclient.DynamicClient', return_value=discovery):
        mapper = getter.to_rest_mapper()

    assert mapper.plural_for('sts') == 'statefulsets'
    with pytest.raises(ConfigError):
        mapper.resource_for('bogus')


@pytest.mark.unit
def test_current_context():
    loader = MemoryRESTClientGetter(client.Configuration(), context='tc').to_raw_kubeconfig_loader()
    assert loader.current_context() == 'tc'

    loader = MemoryRESTClientGetter(client.Configuration()).to_raw_kubeconfig_loader()
    with mock.patch('pds_integration.restclient.config.list_kube_config_contexts',
                    return_value=([], {'name': 'kind-pds'})):
        assert loader.current_context() == 'kind-pds'
    with mock.patch('pds_integration.restclient.config.list_kube_config_contexts', side_effect=FileNotFoundError):
        assert loader.current_context() is None


@pytest.mark.unit
def test_rest_mapper_scopes_search_to_group():
    postgresqls = mock.Mock(short_names=['pg'])
    postgresqls.name = 'postgresqls'
    discovery = mock.Mock()
    discovery.resources.search.return_value = [postgresqls]
    getter = MemoryRESTClientGetter(client.Configuration())

    with mock.patch('pds_integration.restclient.DynamicClient', return_value=discovery):
        plural = getter.to_rest_mapper().plural_for('PostgreSQL', 'deployments.pds.io', 'v1')

    assert plural == 'postgresqls'
    discovery.resources.search.assert_called_once_with(kind='PostgreSQL', group='deployments.pds.io',
                                                       api_version='v1')


@pytest.mark.unit
def test_helm_args_pin_active_context():
    getter = MemoryRESTClientGetter(client.Configuration(), kubeconfig='/tmp/kubeconfig', namespace='pds-system')

    with mock.patch('pds_integration.restclient.config.list_kube_config_contexts',
                    return_value=([], {'name': 'kind-pds'})) as contexts:
        args = getter.helm_args()

    contexts.assert_called_once_with(config_file='/tmp/kubeconfig')
    assert args == ['--kubeconfig', '/tmp/kubeconfig', '--kube-context', 'kind-pds', '-n', 'pds-system']
