"""
LIFO cleanup stack.

Every primitive that acquires a control-plane or target-cluster resource
pushes a deferral: a named operation plus its arguments. The stack is drained
in reverse order on every exit path, and a failing deferral does not stop the
ones below it.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from kubernetes import client
from rich.console import Console

from pds_integration.errors import MultiError, NotFoundError

console = Console()
logger = logging.getLogger(__name__)


def is_not_found(err: BaseException) -> bool:
    """Not-found on either side: CP 404 or Kubernetes 404"""
    if isinstance(err, NotFoundError):
        return True
    if isinstance(err, client.exceptions.ApiException) and err.status == 404:
        return True
    return False


@dataclass
class Deferral:
    name: str
    func: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        rendered = [repr(a) for a in self.args]
        rendered.extend(f"{k}={v!r}" for k, v in self.kwargs.items())
        return f"{self.name}({', '.join(rendered)})"

    def run(self) -> Any:
        return self.func(*self.args, **self.kwargs)


class DeferralStack:
    """Scenario-owned cleanup stack; usable as a context manager"""

    def __init__(self, tolerate: Optional[Callable[[BaseException], bool]] = None):
        self._stack: List[Deferral] = []
        self._tolerate = tolerate or is_not_found
        self.history: List[str] = []

    def __len__(self) -> int:
        return len(self._stack)

    def push(self, name: str, func: Callable[..., Any], *args, **kwargs) -> Deferral:
        deferral = Deferral(name=name, func=func, args=args, kwargs=kwargs)
        self._stack.append(deferral)
        logger.debug("Deferred %s", deferral.describe())
        return deferral

    def pending(self) -> List[str]:
        """Descriptions in the order they will run"""
        return [d.describe() for d in reversed(self._stack)]

    def drain(self, raise_errors: bool = True) -> MultiError:
        """
        Run every deferral in reverse order.

        Not-found failures count as already cleaned up. Other failures are
        collected and raised together once the stack is empty.
        """
        errors = MultiError()
        while self._stack:
            deferral = self._stack.pop()
            description = deferral.describe()
            self.history.append(description)
            console.print(f"[cyan]Cleanup: {description}[/cyan]")
            try:
                deferral.run()
            except Exception as e:
                if self._tolerate(e):
                    console.print(f"[yellow]Cleanup {deferral.name}: already gone ({e})[/yellow]")
                    continue
                console.print(f"[red]✗ Cleanup {deferral.name} failed: {e}[/red]")
                logger.error("Cleanup %s failed: %s", description, e)
                errors.append(e)
        if errors and raise_errors:
            raise errors
        return errors

    def __enter__(self) -> 'DeferralStack':
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]], exc, tb) -> bool:
        # A body failure takes precedence over cleanup failures
        self.drain(raise_errors=exc_type is None)
        return False
