# healing.py
# HealingCoordinator: turns an exhausted step failure into a decision.
#
# Control flow:
#   budget check → analyze (classify + healability gate) → page snapshot
#   → strategy generator
#   → confidence filter + ranking → Retry(mutated step) | Replan | GiveUp
#
# The coordinator reads RunState but never writes to it. Strategies live for
# one healing cycle only; every failure gets a fresh diagnosis.

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from selfheal import display
from selfheal.cancellation import CancellationToken, call_interruptibly
from selfheal.config import HealingOptions
from selfheal.errors import ToolCancelledError, classify_failure
from selfheal.executor import ToolExecutor
from selfheal.models import (
    DecisionKind,
    FailureAnalysis,
    FailureClass,
    FailureContext,
    HealingDecision,
    HealingStrategy,
    HealingStrategyType,
    PageSnapshot,
    PlanStep,
    RunState,
    ToolExecutionResult,
)

logger = logging.getLogger(__name__)

RECENT_RESULTS = 3


class StrategyGenerator(Protocol):
    def diagnose(self, context: FailureContext) -> list[HealingStrategy]: ...


class PlanGenerator(Protocol):
    def generate(self, goal: str, context: dict[str, Any]) -> list[PlanStep]: ...


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def select_strategy(strategies: list[HealingStrategy], min_confidence: float) -> HealingStrategy | None:
    """
    Highest priority wins, then highest confidence, then generator order.

    Strategies below `min_confidence` are discarded first.
    """
    eligible = [s for s in strategies if s.confidence >= min_confidence]
    if not eligible:
        return None
    # max() keeps the first of equal keys, which preserves generator order.
    return max(eligible, key=lambda s: (s.priority, s.confidence))


def locator_from_payload(payload: dict[str, Any]) -> str | None:
    if payload.get("selector"):
        return str(payload["selector"])
    value = payload.get("locator_value")
    if not value:
        return None
    kind = str(payload.get("locator_type", "css")).lower()
    if kind == "text":
        return f"text={value}"
    if kind == "xpath":
        return f"xpath={value}"
    if kind == "role":
        return f"role={value}"
    if kind == "testid":
        return f'[data-testid="{value}"]'
    return str(value)


def patch_step(step: PlanStep, strategy: HealingStrategy) -> PlanStep | None:
    """
    Build the replacement step for a Retry decision.

    Returns None when an alternative-locator strategy carries no locator.
    Raises ValueError when the parameter overrides are not a mapping.
    """
    params = dict(step.parameters)
    selector = locator_from_payload(strategy.parameters)
    if strategy.type is HealingStrategyType.ALTERNATIVE_LOCATOR and selector is None:
        return None
    if selector is not None:
        params["selector"] = selector
    extra = strategy.parameters.get("parameters") or {}
    if not isinstance(extra, dict):
        raise ValueError(f"strategy parameters must be an object, got {type(extra).__name__}")
    params.update(extra)

    label = strategy.name or strategy.type.value
    return step.model_copy(update={
        "parameters": params,
        "reasoning": f"{step.reasoning} [healed: {label}]".strip(),
    })


def wait_seconds(strategy: HealingStrategy, default: float, ceiling: float) -> float:
    payload = strategy.parameters
    if "wait_seconds" in payload:
        seconds = float(payload["wait_seconds"])
    elif "wait_ms" in payload:
        seconds = float(payload["wait_ms"]) / 1000
    else:
        seconds = default
    return min(max(seconds, 0.0), ceiling)


# ---------------------------------------------------------------------------
# Rule-based strategies
# ---------------------------------------------------------------------------

ROOT_CAUSES = {
    FailureClass.TIMEOUT: "The action did not finish within its time limit.",
    FailureClass.SELECTOR_NOT_FOUND: "The target element could not be located on the page.",
    FailureClass.STALE_REFERENCE: "The page changed under the action and the element went stale.",
    FailureClass.NAVIGATION_ERROR: "The page could not be reached.",
    FailureClass.UNKNOWN: "Unrecognised failure.",
}

# Errors that no strategy can repair.
UNHEALABLE_ERROR_TYPES = frozenset({"TaskDeadlineExceededError", "ToolCancelledError"})

FALLBACK_SELECTOR_PREFIX = "fallback-selector:"


def next_fallback_selector(step: PlanStep, tried: list[str]) -> str | None:
    """First of the step's fallback selectors that is neither current nor already tried."""
    current = step.parameters.get("selector")
    for selector in step.fallback_selectors:
        if selector != current and f"{FALLBACK_SELECTOR_PREFIX}{selector}" not in tried:
            return selector
    return None


class RuleBasedStrategyGenerator:
    """
    Deterministic strategies keyed on the failure class. Needs no model.

    selector_not_found  fallback selector (0.8, p9) then a longer wait (0.7, p7)
    timeout             doubled timeout_ms where the step has one, else a longer wait (0.75, p8)
    stale_reference     plain retry, which re-resolves the element (0.6, p5)
    anything else       plain retry (0.5, p4)
    """

    def __init__(self, extended_wait: float = 2.0) -> None:
        self._wait = extended_wait

    def diagnose(self, context: FailureContext) -> list[HealingStrategy]:
        kind = context.classification
        step = context.step

        if kind is FailureClass.SELECTOR_NOT_FOUND:
            strategies = []
            selector = next_fallback_selector(step, context.previous_strategies)
            if selector is not None:
                strategies.append(HealingStrategy(
                    type=HealingStrategyType.ALTERNATIVE_LOCATOR, confidence=0.8, priority=9,
                    parameters={"selector": selector},
                    name=f"{FALLBACK_SELECTOR_PREFIX}{selector}",
                    description="Try the next fallback selector.",
                ))
            strategies.append(HealingStrategy(
                type=HealingStrategyType.EXTENDED_WAIT, confidence=0.7, priority=7,
                parameters={"wait_seconds": self._wait},
                name="wait-longer", description="Give the element more time to appear.",
            ))
            return strategies

        if kind is FailureClass.TIMEOUT:
            timeout_ms = step.parameters.get("timeout_ms")
            if isinstance(timeout_ms, (int, float)) and not isinstance(timeout_ms, bool) and timeout_ms > 0:
                return [HealingStrategy(
                    type=HealingStrategyType.RETRY, confidence=0.75, priority=8,
                    parameters={"parameters": {"timeout_ms": int(timeout_ms * 2)}},
                    name="increase-timeout", description="Double the step's timeout.",
                )]
            return [HealingStrategy(
                type=HealingStrategyType.EXTENDED_WAIT, confidence=0.75, priority=8,
                parameters={"wait_seconds": self._wait * 2},
                name="increase-timeout", description="Wait out the slow page, then retry.",
            )]

        if kind is FailureClass.STALE_REFERENCE:
            return [HealingStrategy(
                type=HealingStrategyType.RETRY, confidence=0.6, priority=5,
                name="re-resolve-element", description="Retry so the element is looked up again.",
            )]

        return [HealingStrategy(
            type=HealingStrategyType.RETRY, confidence=0.5, priority=4,
            name="retry", description="Retry the step unchanged.",
        )]


class StrategyChain:
    """
    Ask each generator in turn. The first non-empty answer wins.

    A generator that raises is logged and skipped. If every generator raised,
    the last error propagates.
    """

    def __init__(self, *generators: StrategyGenerator) -> None:
        if not generators:
            raise ValueError("StrategyChain needs at least one generator.")
        self._generators = generators

    def diagnose(self, context: FailureContext) -> list[HealingStrategy]:
        failure: Exception | None = None
        for generator in self._generators:
            try:
                strategies = generator.diagnose(context)
            except Exception as exc:
                logger.warning("%s failed (%s: %s); trying the next generator.",
                               type(generator).__name__, type(exc).__name__, exc)
                failure = exc
                continue
            if strategies:
                return list(strategies)
            failure = None
        if failure is not None:
            raise failure
        return []


# ---------------------------------------------------------------------------
# HealingCoordinator
# ---------------------------------------------------------------------------


class HealingCoordinator:
    """
    Diagnoses failed steps and decides how the runner should continue.

    Page reads go through the executor, so they never overlap a tool call
    and they observe the run's cancellation token.

    Example:
        coordinator = HealingCoordinator(executor, OpenAIStrategyGenerator(...))
        decision = coordinator.heal(step, failed_result, run_state)
    """

    def __init__(
        self,
        executor: ToolExecutor,
        strategy_generator: StrategyGenerator,
        plan_generator: PlanGenerator | None = None,
        options: HealingOptions | None = None,
    ) -> None:
        self._executor = executor
        self._strategies = strategy_generator
        self._planner = plan_generator
        self._options = options or HealingOptions()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="selfheal-diagnose")

    @property
    def options(self) -> HealingOptions:
        return self._options

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Diagnosis
    # ------------------------------------------------------------------

    def classify(self, result: ToolExecutionResult) -> FailureClass:
        if result.error is None:
            return FailureClass.UNKNOWN
        try:
            known = FailureClass(result.error.classification)
        except ValueError:
            known = FailureClass.UNKNOWN
        if known is not FailureClass.UNKNOWN:
            return known
        return classify_failure(result.error.type, result.error.message)

    def analyze(self, result: ToolExecutionResult) -> FailureAnalysis:
        """Classify a failure and decide whether it is worth healing at all."""
        classification = self.classify(result)
        error = result.error
        cause = ROOT_CAUSES[classification]
        if error is not None:
            cause = f"{cause} ({error.type}: {error.message})"

        healable = classification not in self._options.unhealable_failures
        if error is not None and error.type in UNHEALABLE_ERROR_TYPES:
            healable = False
        return FailureAnalysis(classification=classification, healable=healable, root_cause=cause)

    def snapshot(self, cancel_token: CancellationToken | None = None) -> PageSnapshot | None:
        """Current page URL and title, or None if it cannot be read. Cancellation propagates."""
        try:
            return self._executor.inspect(
                lambda driver: driver.page_state(),
                timeout=self._options.snapshot_timeout,
                cancel_token=cancel_token,
            )
        except ToolCancelledError:
            raise
        except Exception as exc:
            logger.warning("Failed to capture page state for diagnosis: %s", exc)
            return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def heal(
        self,
        step: PlanStep,
        failure: ToolExecutionResult,
        state: RunState,
        cancel_token: CancellationToken | None = None,
    ) -> HealingDecision:
        token = cancel_token or CancellationToken()
        attempt = state.healing_attempts(step.index)
        ceiling = self._options.max_healing_attempts_per_step
        analysis = self.analyze(failure)
        classification = analysis.classification

        if attempt > ceiling:
            reason = f"Healing budget exhausted for step {step.index} ({ceiling} attempt(s))."
            logger.warning(reason)
            display.healing_gave_up(step.index, reason)
            return HealingDecision.give_up(reason, classification)

        if not analysis.healable:
            reason = f"Failure is not healable: {analysis.root_cause}"
            logger.warning("Step %d: %s", step.index, reason)
            display.healing_gave_up(step.index, reason)
            return HealingDecision.give_up(reason, classification)

        display.healing_started(step.index, attempt, ceiling, classification.value)

        try:
            snapshot = self.snapshot(token)
        except ToolCancelledError:
            return HealingDecision.give_up("Cancelled while reading page state.", classification,
                                           cancelled=True)

        context = FailureContext(
            goal=state.goal,
            step=step,
            error=failure.error,
            classification=classification,
            snapshot=snapshot,
            healing_attempt=attempt,
            previous_strategies=list(state.healing_log.get(step.index, [])),
            recent_results=state.step_results[-RECENT_RESULTS:],
        )

        try:
            strategies = call_interruptibly(
                self._pool, self._strategies.diagnose, context,
                timeout=self._options.strategy_timeout, token=token,
            )
        except ToolCancelledError:
            return HealingDecision.give_up("Cancelled during diagnosis.", classification, cancelled=True)
        except Exception as exc:
            reason = f"Strategy generator failed: {type(exc).__name__}: {exc}"
            logger.warning(reason)
            display.healing_gave_up(step.index, reason)
            return HealingDecision.give_up(reason, classification)

        strategy = select_strategy(list(strategies or []), self._options.min_healing_confidence)
        if strategy is None:
            reason = (
                f"No strategy at or above confidence {self._options.min_healing_confidence:.2f}."
            )
            logger.warning("Step %d: %s", step.index, reason)
            display.healing_gave_up(step.index, reason)
            return HealingDecision.give_up(reason, classification)

        display.strategy_selected(step.index, strategy)
        try:
            decision = self._apply(step, strategy, classification, context, token)
        except (TypeError, ValueError) as exc:
            label = strategy.name or strategy.type.value
            reason = f"Strategy '{label}' has an unusable payload: {exc}"
            logger.warning("Step %d: %s", step.index, reason)
            decision = HealingDecision.give_up(reason, classification, strategy)
        if decision.kind is DecisionKind.GIVE_UP and not decision.cancelled:
            display.healing_gave_up(step.index, decision.reason)
        return decision

    # ------------------------------------------------------------------
    # Strategy application
    # ------------------------------------------------------------------

    def _apply(
        self,
        step: PlanStep,
        strategy: HealingStrategy,
        classification: FailureClass,
        context: FailureContext,
        token: CancellationToken,
    ) -> HealingDecision:
        kind = strategy.type

        if kind in (HealingStrategyType.ALTERNATIVE_LOCATOR, HealingStrategyType.RETRY):
            patched = patch_step(step, strategy)
            if patched is None:
                return HealingDecision.give_up(
                    "Alternative-locator strategy carried no locator.", classification, strategy
                )
            return HealingDecision.retry(patched, strategy, classification)

        if kind is HealingStrategyType.EXTENDED_WAIT:
            seconds = wait_seconds(strategy, self._options.default_extended_wait,
                                   self._options.max_extended_wait)
            logger.info("Step %d: waiting %.2fs before retrying unchanged.", step.index, seconds)
            if token.sleep(seconds):
                return HealingDecision.give_up("Cancelled during extended wait.", classification,
                                               strategy, cancelled=True)
            return HealingDecision.retry(step, strategy, classification)

        if kind is HealingStrategyType.REPLAN:
            return self._replan(step, strategy, classification, context, token)

        return HealingDecision.give_up(
            strategy.description or "Fallback strategy selected.", classification, strategy
        )

    def _replan(
        self,
        step: PlanStep,
        strategy: HealingStrategy,
        classification: FailureClass,
        context: FailureContext,
        token: CancellationToken,
    ) -> HealingDecision:
        if self._planner is None:
            return HealingDecision.give_up("Replan requested but no plan generator is configured.",
                                           classification, strategy)

        planner_context = {
            "from_index": step.index,
            "failed_step": step.model_dump(mode="json"),
            "error": context.error.model_dump(mode="json") if context.error else None,
            "classification": classification.value,
            "snapshot": context.snapshot.model_dump() if context.snapshot else None,
            "strategy": strategy.model_dump(mode="json"),
        }
        try:
            steps = call_interruptibly(
                self._pool, self._planner.generate, context.goal, planner_context,
                timeout=self._options.strategy_timeout, token=token,
            )
        except ToolCancelledError:
            return HealingDecision.give_up("Cancelled during re-planning.", classification,
                                           strategy, cancelled=True)
        except Exception as exc:
            reason = f"Plan generator failed: {type(exc).__name__}: {exc}"
            logger.warning(reason)
            return HealingDecision.give_up(reason, classification, strategy)

        if not steps:
            return HealingDecision.give_up("Plan generator returned no steps.", classification, strategy)

        reindexed = [s.model_copy(update={"index": step.index + offset}) for offset, s in enumerate(steps)]
        return HealingDecision.replan(reindexed, strategy, classification)
