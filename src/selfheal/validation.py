# validation.py
# Post-step validation rules, checked against live browser state.
#
# A failing rule turns a successful tool result into a failed one, which the
# runner then treats exactly like a tool failure. Page reads go through
# ToolExecutor.inspect so they share the tool slot and the run's token.

import logging
from typing import Any, Callable

from selfheal.cancellation import CancellationToken
from selfheal.errors import ToolCancelledError, classify_failure, error_info
from selfheal.executor import ToolExecutor
from selfheal.models import (
    ErrorCategory,
    ErrorInfo,
    ToolExecutionResult,
    ValidationRule,
    ValidationType,
)

logger = logging.getLogger(__name__)

ELEMENT_EXISTS_TIMEOUT = 5.0
# Headroom over the driver-side wait before the read itself is abandoned.
READ_GRACE = 1.0


def _check(rule: ValidationRule, read: Callable[..., Any], result: ToolExecutionResult) -> tuple[bool, str]:
    expected = rule.expected
    if rule.type is ValidationType.ELEMENT_EXISTS:
        read(lambda d, s, t: d.wait_for(s, t), str(expected or ""), ELEMENT_EXISTS_TIMEOUT,
             timeout=ELEMENT_EXISTS_TIMEOUT + READ_GRACE)
        return True, ""

    if rule.type is ValidationType.ELEMENT_TEXT:
        if isinstance(expected, dict):
            selector, wanted = str(expected.get("selector", "")), expected.get("text")
        else:
            selector, wanted = str(expected or ""), None
        actual = read(lambda d, s: d.read_text(s), selector) or ""
        if wanted is None:
            return bool(actual), f"element {selector!r} has no text"
        return str(wanted) in actual, f"element {selector!r} text {actual!r} lacks {wanted!r}"

    if rule.type is ValidationType.PAGE_TITLE:
        title = read(lambda d: d.page_state()).title or ""
        return str(expected or "").lower() in title.lower(), f"title {title!r} lacks {expected!r}"

    if rule.type is ValidationType.URL_CONTAINS:
        url = read(lambda d: d.page_state()).url or ""
        return str(expected or "") in url, f"url {url!r} lacks {expected!r}"

    if rule.type is ValidationType.DATA_EXTRACTED:
        data = result.result
        if isinstance(data, dict) and expected:
            return str(expected) in data, f"result has no key {expected!r}"
        return bool(data), "step produced no data"

    return False, f"validation type {rule.type} is not supported"


def check_rules(
    rules: list[ValidationRule],
    executor: ToolExecutor,
    result: ToolExecutionResult,
    cancel_token: CancellationToken | None = None,
) -> ToolExecutionResult:
    """
    Evaluate `rules` in order and return `result`, or a failed copy of it.

    The first failing rule stops evaluation. A rule that raises has failed,
    except for cancellation, which yields a cancelled result.
    """
    if not rules or not result.success:
        return result

    def read(fn: Callable[..., Any], *args: Any, timeout: float | None = None) -> Any:
        return executor.inspect(fn, *args, timeout=timeout, cancel_token=cancel_token)

    for rule in rules:
        name = rule.name or rule.type.value
        try:
            passed, detail = _check(rule, read, result)
        except ToolCancelledError as exc:
            logger.info("Validation rule '%s' cancelled.", name)
            return ToolExecutionResult.failed(
                result.tool_name,
                error_info(exc, ErrorCategory.CANCELLED),
                result.duration,
                result.attempt_count,
                {**result.metadata, "cancelled": True, "tool_result": result.result},
            )
        except Exception as exc:
            passed, detail = False, f"{type(exc).__name__}: {exc}"
            logger.warning("Validation rule '%s' raised: %s", name, detail)

        if not passed:
            error = ErrorInfo(
                type="ValidationFailed",
                message=f"Validation '{name}' failed: {detail}",
                category=ErrorCategory.TERMINAL,
                classification=classify_failure("ValidationFailed", detail).value,
            )
            return ToolExecutionResult.failed(
                result.tool_name,
                error,
                result.duration,
                result.attempt_count,
                {**result.metadata, "validation_failed": name, "tool_result": result.result},
            )
    return result
