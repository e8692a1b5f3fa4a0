"""
Local port-forward tunnel to a pod, backed by `kubectl port-forward`
"""
import socket
import subprocess
import time
from typing import List, Optional

from rich.console import Console

from pds_integration.errors import PDSTestError

console = Console()

READY_TIMEOUT = 15


def free_local_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class Tunnel:
    """
    Forward a local port to a pod port.

    forward_port() must be called before use. close() releases the local port
    and is safe to call more than once; the tunnel is also a context manager.
    """

    def __init__(self, namespace: str, pod_name: str, remote_port: int, kubeconfig: str = '',
                 context: Optional[str] = None, local_port: Optional[int] = None):
        self.namespace = namespace
        self.pod_name = pod_name
        self.remote_port = remote_port
        self.kubeconfig = kubeconfig
        self.context = context
        self.local_port = local_port or 0
        self._process: Optional[subprocess.Popen] = None

    def _command(self) -> List[str]:
        cmd = ['kubectl', 'port-forward', '-n', self.namespace, f"pod/{self.pod_name}",
               f"{self.local_port}:{self.remote_port}"]
        if self.kubeconfig:
            cmd.extend(['--kubeconfig', self.kubeconfig])
        if self.context:
            cmd.extend(['--context', self.context])
        return cmd

    def _port_open(self) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.settimeout(1)
            return s.connect_ex(('127.0.0.1', self.local_port)) == 0

    def forward_port(self) -> int:
        if self._process is not None:
            return self.local_port
        if not self.local_port:
            self.local_port = free_local_port()
        self._process = subprocess.Popen(self._command(), stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            deadline = time.monotonic() + READY_TIMEOUT
            while time.monotonic() < deadline:
                if self._process.poll() is not None:
                    stderr = self._process.stderr.read().decode() if self._process.stderr else ''
                    raise PDSTestError(f"port-forward to {self.namespace}/{self.pod_name} failed to start: {stderr}")
                if self._port_open():
                    console.print(f"[green]✓[/green] Port-forward localhost:{self.local_port} -> "
                                  f"{self.pod_name}:{self.remote_port}")
                    return self.local_port
                time.sleep(0.5)
            raise PDSTestError(f"port-forward to {self.namespace}/{self.pod_name} not ready after {READY_TIMEOUT}s")
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        for stream in (process.stdout, process.stderr):
            if stream:
                stream.close()

    def __enter__(self) -> 'Tunnel':
        self.forward_port()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False
