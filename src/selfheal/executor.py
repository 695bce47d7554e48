# executor.py
# ToolExecutor: validated, retried, time-boxed dispatch of single tool calls.
#
# Control flow per call:
#   validate (registry + required params + coercion)
#   → attempt loop: cancel check → deadline → dispatch on the worker thread
#   → classify failure → backoff with jitter → next attempt
#   → record result in the bounded history
#
# Tool-level failures never raise. Every outcome is a ToolExecutionResult.

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable

from selfheal.cancellation import CancellationToken, call_interruptibly
from selfheal.config import ExecutorOptions
from selfheal.driver import BrowserDriver, dispatch
from selfheal.errors import (
    InvalidArgumentError,
    TaskDeadlineExceededError,
    ToolCancelledError,
    categorize,
    error_info,
)
from selfheal.history import HistoryStore
from selfheal.models import ErrorCategory, ErrorInfo, ToolCall, ToolExecutionResult
from selfheal.registry import DefaultToolRegistry, ToolRegistry, missing_parameters, normalize_parameters

logger = logging.getLogger(__name__)

JITTER = 0.25


class ToolExecutor:
    """
    Executes browser tool calls one at a time against a single driver.

    One executor serves one browser session. Dispatch happens on a dedicated
    worker thread so a per-attempt timeout can be enforced, and an internal
    lock guarantees at most one call in flight.

    Example:
        with ToolExecutor(driver) as executor:
            result = executor.execute_tool(
                ToolCall(tool_name="navigate", parameters={"url": "https://example.com"},
                         correlation_id="task-1")
            )
    """

    def __init__(
        self,
        driver: BrowserDriver,
        registry: ToolRegistry | None = None,
        options: ExecutorOptions | None = None,
        history: HistoryStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._driver = driver
        self._registry = registry or DefaultToolRegistry()
        self._options = options or ExecutorOptions()
        self._history = history or HistoryStore(self._options.max_history_size)
        self._rng = rng or random.Random()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="selfheal-tool")
        self._in_flight = threading.Lock()

    @property
    def options(self) -> ExecutorOptions:
        return self._options

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ToolExecutor":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def compute_backoff_delay(self, attempt: int, options: ExecutorOptions | None = None) -> float:
        """
        Delay in seconds after failed attempt number `attempt` (1-based).

        min(initial * 2^(attempt-1), max) with symmetric ±25% jitter, never negative.
        """
        base = (options or self._options).base_delay(attempt)
        jitter = self._rng.uniform(-JITTER * base, JITTER * base)
        return max(base + jitter, 0.0)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_tool_call(self, call: ToolCall) -> bool:
        """Registry existence and required-parameter presence. No dispatch."""
        _require_call(call)
        if not self._registry.exists(call.tool_name):
            return False
        return not missing_parameters(self._registry.get_schema(call.tool_name), call.parameters)

    def _prepare(self, call: ToolCall) -> tuple[dict | None, ErrorInfo | None, str | None]:
        if not self._registry.exists(call.tool_name):
            message = f"Tool '{call.tool_name}' not found in registry."
            logger.warning(message)
            return None, _validation_error("ToolNotFound", message), "tool_not_found"

        schema = self._registry.get_schema(call.tool_name)
        missing = missing_parameters(schema, call.parameters)
        if missing:
            message = f"Missing required parameters for tool '{call.tool_name}': {', '.join(missing)}"
            logger.warning(message)
            return None, _validation_error("MissingParameters", message), "missing_required_parameters"

        try:
            return normalize_parameters(schema, call.parameters), None, None
        except InvalidArgumentError as exc:
            logger.warning("Invalid parameters for tool '%s': %s", call.tool_name, exc)
            return None, _validation_error(type(exc).__name__, str(exc)), "invalid_parameter"

    # ------------------------------------------------------------------
    # Single call
    # ------------------------------------------------------------------

    def execute_tool(
        self,
        call: ToolCall,
        options: ExecutorOptions | None = None,
        cancel_token: CancellationToken | None = None,
        deadline: float | None = None,
    ) -> ToolExecutionResult:
        """
        Validate, dispatch and retry one tool call.

        `deadline` is an absolute time.monotonic() value for the whole task;
        each attempt gets min(remaining budget, timeout_per_attempt).
        """
        _require_call(call)
        options = options or self._options
        token = cancel_token or CancellationToken()
        started = time.monotonic()
        metadata: dict[str, Any] = {
            "correlation_id": call.correlation_id,
            "reasoning": call.reasoning,
        }

        params, invalid, validation_error = self._prepare(call)
        if invalid is not None:
            metadata["validation_error"] = validation_error
            result = ToolExecutionResult.failed(
                call.tool_name, invalid, time.monotonic() - started, 1, metadata
            )
            self._history.append(call.correlation_id, result)
            return result

        retry_reasons: list[str] = []
        retry_delays: list[float] = []
        retry_attempts: list[int] = []
        last_error: ErrorInfo | None = None
        attempts_made = 0

        with self._in_flight:
            for attempt in range(1, options.max_attempts + 1):
                if token.cancelled:
                    last_error = error_info(ToolCancelledError("Cancelled before attempt."))
                    break

                attempt_timeout = options.timeout_per_attempt
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        last_error = error_info(
                            TaskDeadlineExceededError("Task deadline reached before the attempt could start.")
                        )
                        break
                    attempt_timeout = min(attempt_timeout, remaining)

                attempts_made = attempt
                logger.debug("Executing %s (attempt %d/%d) [%s]",
                             call.tool_name, attempt, options.max_attempts, call.correlation_id)
                try:
                    value = call_interruptibly(
                        self._pool, dispatch, self._driver, call.tool_name, params,
                        timeout=attempt_timeout, token=token,
                    )
                except Exception as exc:
                    category = categorize(exc)
                    last_error = error_info(exc, category)

                    if category is ErrorCategory.CANCELLED:
                        logger.info("Execution of %s cancelled on attempt %d.", call.tool_name, attempt)
                        break
                    if category is not ErrorCategory.TRANSIENT:
                        logger.warning("Terminal error in %s: %s: %s",
                                       call.tool_name, last_error.type, last_error.message)
                        break
                    if attempt >= options.max_attempts:
                        break

                    delay = self.compute_backoff_delay(attempt, options)
                    if deadline is not None:
                        delay = min(delay, max(deadline - time.monotonic(), 0.0))
                    reason = f"{last_error.type}: {last_error.message}"
                    retry_reasons.append(reason)
                    retry_delays.append(delay)
                    retry_attempts.append(attempt)
                    logger.info("Retrying %s (attempt %d/%d) in %.3fs: %s",
                                call.tool_name, attempt + 1, options.max_attempts, delay, reason)

                    if token.sleep(delay):
                        last_error = error_info(ToolCancelledError("Cancelled during retry backoff."))
                        break
                    continue

                metadata["attempt_count"] = attempt
                if retry_reasons:
                    metadata.update(_retry_metadata(retry_reasons, retry_delays, retry_attempts))
                result = ToolExecutionResult.succeeded(
                    call.tool_name, value, time.monotonic() - started, attempt, metadata
                )
                self._history.append(call.correlation_id, result)
                return result

        attempt_count = max(attempts_made, 1)
        metadata["attempt_count"] = attempt_count
        metadata.update(_retry_metadata(retry_reasons, retry_delays, retry_attempts))
        if last_error is not None and last_error.cancelled:
            metadata["cancelled"] = True
        result = ToolExecutionResult.failed(
            call.tool_name,
            last_error or _validation_error("ToolExecutionFailed", "Tool execution failed."),
            time.monotonic() - started,
            attempt_count,
            metadata,
        )
        logger.warning("Tool %s failed after %d attempt(s): %s",
                       call.tool_name, attempt_count, result.error.message)
        self._history.append(call.correlation_id, result)
        return result

    def inspect(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """
        Run a read-only driver call, `fn(driver, *args)`, in the tool slot.

        Shares the worker thread and in-flight lock with execute_tool, so a
        page read never overlaps an action (or an abandoned attempt still
        running on the worker). No retries. Timeouts and cancellation raise
        AttemptTimeoutError / ToolCancelledError to the caller.
        """
        token = cancel_token or CancellationToken()
        token.raise_if_cancelled()
        with self._in_flight:
            return call_interruptibly(
                self._pool, fn, self._driver, *args,
                timeout=timeout or self._options.timeout_per_attempt, token=token,
            )

    # ------------------------------------------------------------------
    # Composites
    # ------------------------------------------------------------------

    def execute_sequence(
        self,
        calls: Iterable[ToolCall],
        options: ExecutorOptions | None = None,
        cancel_token: CancellationToken | None = None,
        deadline: float | None = None,
    ) -> list[ToolExecutionResult]:
        """Run calls in order, stopping at the first failure (fail-fast)."""
        calls = list(calls)
        if not calls:
            raise ValueError("Tool call sequence cannot be empty.")
        for call in calls:
            _require_call(call)

        results: list[ToolExecutionResult] = []
        for position, call in enumerate(calls, start=1):
            result = self.execute_tool(call, options, cancel_token, deadline)
            results.append(result)
            if not result.success:
                logger.warning("Sequence stopped at %d/%d (%s).", position, len(calls), call.tool_name)
                break
        return results

    def execute_with_fallback(
        self,
        primary: ToolCall,
        fallbacks: Iterable[ToolCall] | None = None,
        options: ExecutorOptions | None = None,
        cancel_token: CancellationToken | None = None,
        deadline: float | None = None,
    ) -> ToolExecutionResult:
        """Try `primary`, then each fallback in order, each with the full retry policy."""
        primary_result = self.execute_tool(primary, options, cancel_token, deadline)
        fallbacks = list(fallbacks or [])
        if primary_result.success or not fallbacks or primary_result.cancelled:
            return primary_result

        primary_error = primary_result.error.message if primary_result.error else "Unknown error"
        for index, fallback in enumerate(fallbacks):
            logger.info("Trying fallback %d/%d for %s: %s",
                        index + 1, len(fallbacks), primary.tool_name, fallback.tool_name)
            result = self.execute_tool(fallback, options, cancel_token, deadline)
            if result.success:
                return result.with_metadata(
                    fallback_used=True,
                    fallback_index=index,
                    primary_tool=primary.tool_name,
                    primary_error=primary_error,
                )
            if result.cancelled:
                break

        logger.warning("All %d fallback(s) failed for %s.", len(fallbacks), primary.tool_name)
        return primary_result.with_metadata(
            fallback_attempted=True,
            fallback_count=len(fallbacks),
            all_fallbacks_failed=True,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, correlation_id: str) -> list[ToolExecutionResult]:
        return self._history.get(correlation_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_call(call: Any) -> None:
    if not isinstance(call, ToolCall):
        raise TypeError(f"Expected ToolCall, got {type(call).__name__}.")


def _validation_error(error_type: str, message: str) -> ErrorInfo:
    return ErrorInfo(type=error_type, message=message, category=ErrorCategory.VALIDATION)


def _retry_metadata(reasons: list[str], delays: list[float], attempts: list[int]) -> dict[str, Any]:
    return {
        "retry_reasons": list(reasons),
        "retry_delays": list(delays),
        "retry_attempts": list(attempts),
    }
