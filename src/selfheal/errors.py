# errors.py
# Exception taxonomy shared by drivers, the executor and the healing layer.
#
# Drivers raise these; ToolExecutor turns every one of them into a failed
# ToolExecutionResult. Nothing here is ever raised past ToolExecutor except
# programming errors.

from selfheal.models import ErrorCategory, ErrorInfo, FailureClass


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolError(Exception):
    """Base class for every failure a browser tool can report."""


class TransientToolError(ToolError):
    """Expected to possibly succeed on retry."""


class AttemptTimeoutError(TransientToolError):
    """A single attempt exceeded its deadline."""


class ElementNotReadyError(TransientToolError):
    """Element exists but is not visible, enabled or interactable yet."""


class StaleElementError(TransientToolError):
    """Element reference is no longer attached to the document."""


class ConnectionResetToolError(TransientToolError):
    """Connection to the browser or the page's server was reset."""


class TerminalToolError(ToolError):
    """Retrying the same operation will not help."""


class InvalidArgumentError(TerminalToolError):
    """A parameter is missing, malformed or of the wrong type."""


class PreconditionError(TerminalToolError):
    """The browser is not in a state where the tool can run."""


class ToolNotImplementedError(TerminalToolError):
    """The tool is declared in the registry but has no driver method."""


class TaskDeadlineExceededError(TerminalToolError):
    """The overall task budget ran out before the attempt could start."""


class ToolCancelledError(ToolError):
    """Cancellation was requested. Never retried."""


class PlanParseError(Exception):
    """Raised when plan generator output cannot be parsed or validated."""


class StrategyParseError(Exception):
    """Raised when strategy generator output cannot be parsed or validated."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "not attached",
    "not visible",
    "not interactable",
    "stale",
    "element not found",
    "connection reset",
    "econnreset",
    "err_connection_reset",
)


def categorize(exc: BaseException) -> ErrorCategory:
    """Map an exception raised during dispatch to its retry category."""
    if isinstance(exc, ToolCancelledError):
        return ErrorCategory.CANCELLED
    if isinstance(exc, TransientToolError):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, TerminalToolError):
        return ErrorCategory.TERMINAL
    # Foreign exceptions, e.g. from a third-party driver.
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, (ValueError, TypeError, KeyError, NotImplementedError)):
        return ErrorCategory.TERMINAL
    message = str(exc).lower()
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.TERMINAL


def classify_failure(error_type: str, message: str) -> FailureClass:
    """Coarse diagnosis used by the healing layer and the strategy prompt."""
    text = message.lower()
    if error_type == StaleElementError.__name__ or "stale" in text or "not attached" in text:
        return FailureClass.STALE_REFERENCE
    if (
        "not found" in text
        or "no such element" in text
        or "unable to locate" in text
        or "could not find" in text
        or "waiting for selector" in text
    ):
        return FailureClass.SELECTOR_NOT_FOUND
    if error_type in (AttemptTimeoutError.__name__, "TimeoutError") or "timeout" in text or "timed out" in text:
        return FailureClass.TIMEOUT
    if "navigat" in text or "net::err" in text or error_type == ConnectionResetToolError.__name__:
        return FailureClass.NAVIGATION_ERROR
    return FailureClass.UNKNOWN


def error_info(exc: BaseException, category: ErrorCategory | None = None) -> ErrorInfo:
    error_type = type(exc).__name__
    message = str(exc) or error_type
    return ErrorInfo(
        type=error_type,
        message=message,
        category=category or categorize(exc),
        classification=classify_failure(error_type, message).value,
    )
