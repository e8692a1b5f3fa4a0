"""
Helm driver: repo lookup, version selection and release install/upgrade/uninstall.

Helm is driven through its CLI. Every command gets its connection flags from a
MemoryRESTClientGetter and can be interrupted with a cancel event.
"""
import json
import logging
import os
import re
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml
from rich.console import Console

from pds_integration.errors import Cancelled, HelmError, ReleaseNotFound
from pds_integration.logs import mask_secrets
from pds_integration.restclient import MemoryRESTClientGetter
from pds_integration.versions import select_versions

console = Console()
logger = logging.getLogger(__name__)

HELM_BINARY = os.getenv('HELM_BINARY', 'helm')

# Messages helm prints for releases that are already gone or still present
ERR_NAME_IN_USE = 'cannot re-use a name that is still in use'
ERR_ALREADY_DELETED = 'is already deleted'
ERR_RELEASE_NOT_FOUND = 'release: not found'


def _convert_scalar(value: str) -> Any:
    """Type a --set style scalar the way helm does"""
    if value == 'true':
        return True
    if value == 'false':
        return False
    if value == 'null':
        return None
    if value.isdigit() or (value.startswith('-') and value[1:].isdigit()):
        # Leading zeros stay strings ("007")
        if len(value.lstrip('-')) > 1 and value.lstrip('-').startswith('0'):
            return value
        return int(value)
    return value


def _split_unescaped(text: str, sep: str) -> List[str]:
    """Split on sep; an escaped sep loses its backslash, other escapes are kept"""
    parts: List[str] = []
    current = []
    escaped = False
    for ch in text:
        if escaped:
            if ch != sep:
                current.append('\\')
            current.append(ch)
            escaped = False
        elif ch == '\\':
            escaped = True
        elif ch == sep:
            parts.append(''.join(current))
            current = []
        else:
            current.append(ch)
    parts.append(''.join(current))
    return parts


def _unescape(text: str) -> str:
    return re.sub(r"\\(.)", r"\1", text)


def parse_chart_values(values: str, into: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Parse "a.b=1,c=x" into {'a': {'b': 1}, 'c': 'x'}.

    Backslash escapes a comma or a dot inside a key or value.
    """
    result: Dict[str, Any] = into if into is not None else {}
    if not values:
        return result
    for pair in _split_unescaped(values, ','):
        if not pair:
            continue
        if '=' not in pair:
            raise HelmError(f"key {pair!r} has no value")
        key, value = pair.split('=', 1)
        path = [p for p in _split_unescaped(key, '.')]
        if not all(path):
            raise HelmError(f"invalid key {key!r}")
        node = result
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[path[-1]] = _convert_scalar(_unescape(value))
    return result


@dataclass
class ChartConfig:
    version_constraints: str
    release_name: str
    chart_values: Dict[str, str] = field(default_factory=dict)

    def comma_separated_values(self) -> str:
        return ','.join(f"{k}={v}" for k, v in sorted(self.chart_values.items()))


class HelmDriver:
    """Thin wrapper around the helm CLI"""

    def __init__(self, binary: str = HELM_BINARY):
        self.binary = binary

    def _run(self, args: List[str], cancel: Optional[threading.Event] = None, context: str = '') -> str:
        cmd = [self.binary] + args
        logger.debug("Running %s", ' '.join(cmd))
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        try:
            while True:
                try:
                    stdout, stderr = proc.communicate(timeout=1)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        proc.terminate()
                        try:
                            proc.wait(timeout=5)
                        except subprocess.TimeoutExpired:
                            proc.kill()
                        raise Cancelled(f"helm {context or args[0]} cancelled")
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
        if proc.returncode != 0:
            message = (stderr or stdout or '').strip()
            raise HelmError(f"helm {context or ' '.join(args[:2])}: {message}")
        return stdout

    # Repositories

    def list_repos(self) -> List[Dict[str, str]]:
        try:
            out = self._run(['repo', 'list', '-o', 'json'], context='repo list')
        except HelmError as e:
            if 'no repositories' in str(e):
                return []
            raise
        return json.loads(out or '[]')

    def has_repo(self, name: str, url: Optional[str] = None) -> bool:
        for repo in self.list_repos():
            if repo.get('name') == name:
                return url is None or repo.get('url', '').rstrip('/') == url.rstrip('/')
        return False

    def update_repo(self, name: str, cancel: Optional[threading.Event] = None) -> None:
        """Download and cache the index file of one repository"""
        self._run(['repo', 'update', name], cancel=cancel, context=f"repo update {name}")

    def get_chart_versions(self, repo_name: str, chart_name: str) -> List[str]:
        full_name = f"{repo_name}/{chart_name}"
        out = self._run(['search', 'repo', full_name, '--versions', '-o', 'json'], context=f"search {full_name}")
        entries = json.loads(out or '[]')
        versions = [e['version'] for e in entries if e.get('name') == full_name]
        if not versions:
            raise HelmError(f"chart {chart_name} not found in repo {repo_name}")
        return versions

    # Releases

    def _values_file(self, values: Union[str, Dict[str, Any], None]) -> Optional[str]:
        if not values:
            return None
        vals = parse_chart_values(values) if isinstance(values, str) else values
        logger.info("Chart values: %s", mask_secrets(vals))
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.dump(vals, f)
            return f.name

    def _release_command(self, action: str, getter: MemoryRESTClientGetter, repo_name: str, release_name: str,
                         chart_name: str, chart_version: str, values, cancel: Optional[threading.Event]) -> None:
        values_file = self._values_file(values)
        args = [action, release_name, f"{repo_name}/{chart_name}"] + getter.helm_args()
        if action == 'install':
            args.append('--create-namespace')
        # Empty version picks the newest, prereleases included
        args.extend(['--version', chart_version or '>0.0.0-0', '--dependency-update', '--wait'])
        if values_file:
            args.extend(['-f', values_file])
        console.print(f"[cyan]Helm {action} {release_name} ({repo_name}/{chart_name} {chart_version or 'latest'})...[/cyan]")
        try:
            self._run(args, cancel=cancel, context=f"{action} {release_name}")
        finally:
            if values_file:
                os.unlink(values_file)
        console.print(f"[green]✓ Helm {action} {release_name} done[/green]")

    def install(self, getter: MemoryRESTClientGetter, repo_name: str, release_name: str, chart_name: str,
                chart_version: str = '', values: Union[str, Dict[str, Any], None] = None,
                cancel: Optional[threading.Event] = None) -> None:
        """Install a chart; fails if the release name is already in use"""
        self._release_command('install', getter, repo_name, release_name, chart_name, chart_version, values, cancel)

    def release_exists(self, getter: MemoryRESTClientGetter, release_name: str) -> bool:
        try:
            self._run(['status', release_name] + getter.helm_args(), context=f"status {release_name}")
        except HelmError as e:
            if ERR_RELEASE_NOT_FOUND in str(e):
                return False
            raise
        return True

    def upgrade(self, getter: MemoryRESTClientGetter, repo_name: str, release_name: str, chart_name: str,
                chart_version: str = '', values: Union[str, Dict[str, Any], None] = None,
                cancel: Optional[threading.Event] = None) -> None:
        """Upgrade an existing release"""
        if not self.release_exists(getter, release_name):
            raise ReleaseNotFound(f"helm upgrade {release_name}: {ERR_RELEASE_NOT_FOUND}")
        self._release_command('upgrade', getter, repo_name, release_name, chart_name, chart_version, values, cancel)

    def uninstall(self, getter: MemoryRESTClientGetter, release_name: str,
                  cancel: Optional[threading.Event] = None) -> None:
        """Errors are returned verbatim; callers decide what counts as already gone"""
        console.print(f"[cyan]Helm uninstall {release_name}...[/cyan]")
        self._run(['uninstall', release_name, '--wait'] + getter.helm_args(), cancel=cancel,
                  context=f"uninstall {release_name}")
        console.print(f"[green]✓ Helm uninstall {release_name} done[/green]")


class InstallableChart:
    """A chart pinned to one version, ready to install against one cluster"""

    def __init__(self, driver: HelmDriver, getter: MemoryRESTClientGetter, repo_name: str, chart_name: str,
                 release_name: str, version: str, values: str):
        self.driver = driver
        self.getter = getter
        self.repo_name = repo_name
        self.chart_name = chart_name
        self.release_name = release_name
        self.version = version
        self.values = values

    def install(self, cancel: Optional[threading.Event] = None) -> None:
        self.driver.install(self.getter, self.repo_name, self.release_name, self.chart_name,
                            self.version, self.values, cancel)

    def upgrade(self, cancel: Optional[threading.Event] = None) -> None:
        self.driver.upgrade(self.getter, self.repo_name, self.release_name, self.chart_name,
                            self.version, self.values, cancel)


class ChartProvider:
    """
    Resolves versions of one chart from a configured repository.

    The repository must already be configured in helm; it is not added here.
    """

    def __init__(self, driver: HelmDriver, repo_name: str, repo_url: str, chart_name: str):
        self.driver = driver
        self.repo_name = repo_name
        self.repo_url = repo_url
        self.chart_name = chart_name
        if not driver.has_repo(repo_name, repo_url):
            raise HelmError(f"repo {repo_name} ({repo_url}) not found")
        driver.update_repo(repo_name)
        self.versions = driver.get_chart_versions(repo_name, chart_name)

    def installer(self, getter: MemoryRESTClientGetter, chart_config: ChartConfig) -> InstallableChart:
        version = select_versions(chart_config.version_constraints, self.versions)[0]
        return InstallableChart(self.driver, getter, self.repo_name, self.chart_name, chart_config.release_name,
                                version, chart_config.comma_separated_values())
