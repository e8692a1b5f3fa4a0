"""
Exception hierarchy shared by the control-plane client, the target-cluster
helpers and the Helm driver.
"""
import contextlib
from typing import Iterable, List, Optional


class PDSTestError(Exception):
    """Base class for every error raised by the harness"""


class ConfigError(PDSTestError):
    """Invalid or missing configuration; fatal at suite setup"""


class Cancelled(PDSTestError):
    """A cancel token was set while an operation was blocked"""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


class WaitTimeout(PDSTestError, AssertionError):
    """A wait deadline expired; carries the last predicate error"""

    def __init__(self, description: str, elapsed: float, polls: int, last_error: Optional[BaseException] = None):
        self.description = description
        self.elapsed = elapsed
        self.polls = polls
        self.last_error = last_error
        message = f"Timeout waiting for {description} after {elapsed:.1f}s ({polls} polls)"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


class ApiError(PDSTestError):
    """Non-success response from the control-plane API"""

    def __init__(self, status: int, method: str, url: str, body: str = ""):
        self.status = status
        self.method = method
        self.url = url
        self.body = body
        detail = f" ({body})" if body else ""
        super().__init__(f"{method} {url}: {status}{detail}")


class NotFoundError(ApiError):
    pass


class ConflictError(ApiError):
    pass


class UnprocessableError(ApiError):
    pass


class TransientRemoteError(ApiError):
    """5xx responses and dropped connections; safe to retry"""


_STATUS_ERRORS = {
    404: NotFoundError,
    409: ConflictError,
    422: UnprocessableError,
}


def api_error_for(status: int, method: str, url: str, body: str = "") -> ApiError:
    """Build the most specific ApiError for an HTTP status"""
    if status >= 500 or status == 0:
        return TransientRemoteError(status, method, url, body)
    cls = _STATUS_ERRORS.get(status, ApiError)
    return cls(status, method, url, body)


class HelmError(PDSTestError):
    """A helm invocation failed; the message carries helm's stderr verbatim"""


class NoMatchingVersion(HelmError):
    pass


class ReleaseNotFound(HelmError):
    pass


class PortworxError(PDSTestError):
    pass


class NoPXServiceFound(PortworxError):
    pass


class NoPodsForJob(PDSTestError):
    pass


class MultiError(PDSTestError):
    """Accumulates failures from loops that must visit every item"""

    def __init__(self, errors: Iterable[BaseException] = ()):
        self.errors: List[BaseException] = list(errors)
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.errors:
            return "no errors"
        lines = [f"{len(self.errors)} error(s) occurred:"]
        lines.extend(f"  * {err}" for err in self.errors)
        return "\n".join(lines)

    def append(self, err: BaseException) -> None:
        self.errors.append(err)
        self.args = (self._render(),)

    def __bool__(self) -> bool:
        return bool(self.errors)

    def raise_if_any(self) -> None:
        if self.errors:
            raise self


def error_contains_any(err: Optional[BaseException], *messages: str) -> bool:
    """True when the error text contains one of the messages"""
    if err is None:
        return False
    text = str(err)
    return any(msg in text for msg in messages)


class RequirementFailed(PDSTestError, AssertionError):
    """A must_ primitive failed; the underlying error is chained as __cause__"""


@contextlib.contextmanager
def must(description: str):
    """Turn library errors inside the block into a test failure"""
    try:
        yield
    except (RequirementFailed, WaitTimeout):
        raise
    except (PDSTestError, LookupError) as e:
        raise RequirementFailed(f"{description}: {e}") from e
