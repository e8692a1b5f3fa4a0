"""
Bounded polling of a predicate with deadline, interval and cancellation.

Every convergence check in the harness goes through poll() so that the
control plane and the target cluster are reconciled the same way.
"""
import math
import threading
import time
from typing import Callable, Optional, Tuple, Union

from rich.console import Console

from pds_integration.errors import Cancelled, WaitTimeout

console = Console()

# Intervals
SHORT_RETRY_INTERVAL = 1
RETRY_INTERVAL = 10

# Timeouts
VERY_LONG_TIMEOUT = 20 * 60
LONG_TIMEOUT = 10 * 60
STANDARD_TIMEOUT = 5 * 60
SHORT_TIMEOUT = 60

PredicateResult = Union[bool, Tuple[bool, Optional[BaseException]]]
Predicate = Callable[[], PredicateResult]


def _evaluate(predicate: Predicate) -> Tuple[bool, Optional[BaseException]]:
    try:
        result = predicate()
    except Exception as e:
        return False, e
    if isinstance(result, tuple):
        ok, err = result
        return bool(ok), err
    return bool(result), None


def max_polls(timeout: float, interval: float) -> int:
    """Upper bound on predicate evaluations for a timeout/interval pair"""
    if timeout <= 0:
        return 1
    return math.ceil(timeout / interval) + 1


def poll(
    predicate: Predicate,
    timeout: float = STANDARD_TIMEOUT,
    interval: float = RETRY_INTERVAL,
    cancel: Optional[threading.Event] = None,
    description: str = "condition",
    quiet: bool = False,
) -> Tuple[bool, Optional[BaseException]]:
    """
    Evaluate a predicate until it holds or the deadline passes.

    The predicate may return a bool or an (ok, error) tuple. Exceptions raised
    by the predicate, including AssertionError, are recorded as the last error.
    An (True, error) result counts as success.

    Args:
        predicate: Idempotent check to evaluate
        timeout: Seconds until the deadline; <= 0 evaluates exactly once
        interval: Seconds between evaluations
        cancel: Optional event; once set, no further evaluation runs
        description: What we're waiting for, used in console output
        quiet: Suppress console output

    Returns:
        (ok, last_error)
    """
    if interval <= 0:
        raise ValueError("interval must be positive")

    start = time.monotonic()
    deadline = start + timeout
    last_error: Optional[BaseException] = None
    poll_count = 0

    if not quiet:
        console.print(f"[cyan]Polling for {description}...[/cyan]")
        console.print(f"[dim]Timeout: {timeout}s, Poll interval: {interval}s[/dim]")

    while True:
        if cancel is not None and cancel.is_set():
            return False, Cancelled(f"cancelled while waiting for {description}")

        poll_count += 1
        elapsed = time.monotonic() - start
        if not quiet and (poll_count % 4 == 0 or poll_count == 1):
            console.print(f"[dim]Poll #{poll_count} at {elapsed:.0f}s: Checking {description}...[/dim]")

        ok, err = _evaluate(predicate)
        if ok:
            if not quiet:
                elapsed = time.monotonic() - start
                console.print(f"[green]✓ Condition met: {description} (after {elapsed:.1f}s, {poll_count} polls)[/green]")
            return True, err
        if err is not None:
            last_error = err
            if not quiet:
                console.print(f"[yellow]Poll #{poll_count} error: {err}[/yellow]")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False, last_error

        # Final evaluation happens at the deadline when less than an interval remains
        sleep_for = min(interval, remaining)
        if cancel is not None:
            if cancel.wait(sleep_for):
                return False, Cancelled(f"cancelled while waiting for {description}")
        else:
            time.sleep(sleep_for)


def wait_for(
    predicate: Predicate,
    timeout: float = STANDARD_TIMEOUT,
    interval: float = RETRY_INTERVAL,
    cancel: Optional[threading.Event] = None,
    description: str = "condition",
    fail_message: Optional[str] = None,
) -> None:
    """
    Like poll() but raises on failure.

    Raises:
        Cancelled if the cancel event was set
        WaitTimeout (an AssertionError) carrying the last predicate error
    """
    start = time.monotonic()
    calls = [0]

    def counted():
        calls[0] += 1
        return predicate()

    ok, last_error = poll(counted, timeout, interval, cancel, description)
    if ok:
        return
    if isinstance(last_error, Cancelled):
        raise last_error
    elapsed = time.monotonic() - start
    err = WaitTimeout(description, elapsed, calls[0], last_error)
    console.print(f"[red]✗ {fail_message or err}[/red]")
    if fail_message:
        err.args = (f"{fail_message}: {err}",)
    raise err from last_error
