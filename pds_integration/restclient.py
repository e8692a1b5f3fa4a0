"""
In-memory REST client getter shared by the Helm driver and the cluster helpers.

Discovery and REST mapping are expensive against a real cluster, so a
persistent getter builds each of them once and hands out the cached instance.
Each lazy field is guarded by its own lock.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.dynamic import DynamicClient
from rich.console import Console

from pds_integration.errors import ConfigError

console = Console()
logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = 'default'


def load_rest_config(kubeconfig: str = '', context: Optional[str] = None) -> client.Configuration:
    """Load a client configuration: explicit kubeconfig, else in-cluster, else local kubeconfig"""
    cfg = client.Configuration()
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig, context=context, client_configuration=cfg)
        console.print(f"[green]✓[/green] Using kubeconfig {kubeconfig}")
        return cfg
    try:
        config.load_incluster_config(client_configuration=cfg)
        console.print("[green]✓[/green] Using in-cluster Kubernetes config")
    except config.ConfigException:
        try:
            config.load_kube_config(context=context, client_configuration=cfg)
            console.print("[green]✓[/green] Using local Kubernetes config")
        except (config.ConfigException, FileNotFoundError) as e:
            raise ConfigError(f"Could not load Kubernetes config: {e}") from e
    return cfg


class RESTMapper:
    """Resolves kinds, plurals and short names to API resources"""

    def __init__(self, discovery: DynamicClient):
        self._discovery = discovery

    def resource_for(self, name: str, group: Optional[str] = None, api_version: Optional[str] = None):
        kwargs: Dict[str, Any] = {}
        if group:
            kwargs['group'] = group
        if api_version:
            kwargs['api_version'] = api_version
        for key in ('kind', 'name', 'singular_name'):
            found = self._discovery.resources.search(**{key: name}, **kwargs)
            if found:
                return found[0]
        # Shortcut expansion (sts, pvc, ...)
        for resource in self._discovery.resources.search(**kwargs):
            if name in (getattr(resource, 'short_names', None) or []):
                return resource
        raise ConfigError(f"no resource found for {name!r}")

    def plural_for(self, name: str, group: Optional[str] = None, api_version: Optional[str] = None) -> str:
        return self.resource_for(name, group, api_version).name


class RawKubeConfig:
    """Kubeconfig view with namespace and impersonation overrides applied"""

    def __init__(self, kubeconfig: str, context: Optional[str], namespace: str, impersonate: str):
        self.kubeconfig = kubeconfig
        self.context = context
        self._namespace = namespace
        self.impersonate = impersonate

    def contexts(self):
        """(contexts, active context) as kubernetes.config reports them"""
        return config.list_kube_config_contexts(config_file=self.kubeconfig or None)

    def current_context(self) -> Optional[str]:
        if self.context:
            return self.context
        try:
            _, active = self.contexts()
        except (config.ConfigException, FileNotFoundError):
            return None
        return active.get('name') if active else None

    def namespace(self) -> str:
        return self._namespace


class MemoryRESTClientGetter:
    """
    REST client getter over an in-memory client configuration.

    With persistent=True the discovery client, REST mapper and raw kubeconfig
    loader are created on first use and reused afterwards.
    """

    def __init__(
        self,
        cfg: Optional[client.Configuration],
        kubeconfig: str = '',
        context: Optional[str] = None,
        namespace: str = '',
        impersonate: str = '',
        persistent: bool = False,
    ):
        self._cfg = cfg
        self.kubeconfig = kubeconfig
        self.context = context
        self.namespace = namespace or DEFAULT_NAMESPACE
        self.impersonate = impersonate
        self.persistent = persistent

        self._discovery: Optional[DynamicClient] = None
        self._discovery_lock = threading.Lock()
        self._mapper: Optional[RESTMapper] = None
        self._mapper_lock = threading.Lock()
        self._client_cfg: Optional[RawKubeConfig] = None
        self._client_cfg_lock = threading.Lock()

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str = '', context: Optional[str] = None, **kwargs) -> 'MemoryRESTClientGetter':
        return cls(load_rest_config(kubeconfig, context), kubeconfig=kubeconfig, context=context, **kwargs)

    def to_rest_config(self) -> client.Configuration:
        if self._cfg is None:
            raise ConfigError("MemoryRESTClientGetter has no REST config")
        return self._cfg

    def to_api_client(self) -> client.ApiClient:
        return client.ApiClient(self.to_rest_config())

    def to_discovery_client(self) -> DynamicClient:
        if not self.persistent:
            return self._new_discovery_client()
        with self._discovery_lock:
            if self._discovery is None:
                self._discovery = self._new_discovery_client()
            return self._discovery

    def _new_discovery_client(self) -> DynamicClient:
        logger.debug("Building discovery client")
        return DynamicClient(self.to_api_client())

    def to_rest_mapper(self) -> RESTMapper:
        if not self.persistent:
            return RESTMapper(self.to_discovery_client())
        with self._mapper_lock:
            if self._mapper is None:
                self._mapper = RESTMapper(self.to_discovery_client())
            return self._mapper

    def to_raw_kubeconfig_loader(self) -> RawKubeConfig:
        if not self.persistent:
            return self._new_raw_loader()
        with self._client_cfg_lock:
            if self._client_cfg is None:
                self._client_cfg = self._new_raw_loader()
            return self._client_cfg

    def _new_raw_loader(self) -> RawKubeConfig:
        return RawKubeConfig(self.kubeconfig, self.context, self.namespace, self.impersonate)

    def helm_args(self) -> List[str]:
        """Connection flags for the helm CLI"""
        loader = self.to_raw_kubeconfig_loader()
        args: List[str] = []
        if self.kubeconfig:
            args.extend(['--kubeconfig', self.kubeconfig])
        # Same context the kubernetes client loaded
        context = loader.current_context() if self.kubeconfig else self.context
        if context:
            args.extend(['--kube-context', context])
        if loader.impersonate:
            args.extend(['--kube-as-user', loader.impersonate])
        args.extend(['-n', loader.namespace()])
        return args
