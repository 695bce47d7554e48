# runner.py
# StepRunner: drives a plan step by step, pausing, cancelling and healing.
#
# Control flow per step:
#   pause gate → cancel / deadline check → ToolExecutor.execute_tool
#   → validation rules → record and advance
#                      → optional step: record and advance
#                      → HealingCoordinator.heal → Retry | Replan | GiveUp
#
# RunState is written here and nowhere else. pause/resume/cancel may be
# called from any thread while run() is executing.

import logging
import threading
import time
import uuid

from selfheal import display
from selfheal.cancellation import CancellationToken, PauseGate
from selfheal.config import RunnerOptions
from selfheal.errors import TaskDeadlineExceededError, ToolCancelledError, error_info
from selfheal.executor import ToolExecutor
from selfheal.healing import HealingCoordinator
from selfheal.models import (
    DecisionKind,
    ErrorCategory,
    ErrorInfo,
    HealingDecision,
    Plan,
    PlanStep,
    RunResult,
    RunState,
    RunStatistics,
    RunStatus,
    ToolExecutionResult,
)
from selfheal.validation import check_rules

logger = logging.getLogger(__name__)


class StepRunner:
    """
    Executes a Plan against one ToolExecutor, healing failed steps.

    Example:
        runner = StepRunner(executor, HealingCoordinator(executor, strategies, planner))
        result = runner.run(plan, task_id="checkout-1")

        # from another thread
        runner.pause(); runner.resume(); runner.cancel()
    """

    def __init__(
        self,
        executor: ToolExecutor,
        healer: HealingCoordinator | None = None,
        options: RunnerOptions | None = None,
    ) -> None:
        self._executor = executor
        self._healer = healer
        self._options = options or RunnerOptions()
        self._lock = threading.Lock()
        self._gate = PauseGate()
        self._token: CancellationToken | None = None
        self._state: RunState | None = None
        self._running = False
        self._cancel_pending = False

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState | None:
        """Snapshot of the current (or last) run state."""
        with self._lock:
            return self._state.model_copy(deep=True) if self._state else None

    def pause(self) -> bool:
        """Hold the run at the next step boundary. Returns False if there is nothing to pause."""
        with self._lock:
            state = self._state
            if state is None or state.status not in (RunStatus.PENDING, RunStatus.EXECUTING,
                                                     RunStatus.HEALING):
                return False
            self._gate.close()
            state.status = RunStatus.PAUSED
            task_id = state.task_id
        logger.info("Task %s paused.", task_id)
        display.paused(task_id)
        return True

    def resume(self) -> bool:
        """Release a paused run. A no-op unless the run is paused."""
        with self._lock:
            state = self._state
            if state is None or state.status is not RunStatus.PAUSED:
                return False
            state.status = RunStatus.EXECUTING
            self._gate.open()
            task_id = state.task_id
        logger.info("Task %s resumed.", task_id)
        display.resumed(task_id)
        return True

    def cancel(self) -> bool:
        """
        Cancel the run. Idempotent; terminal runs are left as they are.

        Called before the first run() starts, the request is held and that
        run ends Cancelled without executing a step.
        """
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._gate.open()
            state = self._state
            if state is None and not self._running:
                self._cancel_pending = True
                logger.info("Cancellation requested before the run started.")
                return True
            if state is None or state.status.terminal:
                return False
            state.status = RunStatus.CANCELLED
            task_id = state.task_id
        logger.info("Task %s cancellation requested.", task_id)
        return True

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        plan: Plan | list[PlanStep],
        task_id: str | None = None,
        goal: str = "",
        options: RunnerOptions | None = None,
    ) -> RunResult:
        if isinstance(plan, Plan):
            steps, goal = list(plan.steps), goal or plan.goal
        else:
            steps = list(plan)
        if not steps:
            raise ValueError("Plan must contain at least one step.")

        options = options or self._options
        task_id = task_id or uuid.uuid4().hex[:12]

        with self._lock:
            if self._running:
                raise RuntimeError("This runner is already executing a plan.")
            self._running = True
            self._token = CancellationToken()
            if self._cancel_pending:
                self._token.cancel()
                self._cancel_pending = False
            self._gate.open()
            self._state = RunState(task_id=task_id, goal=goal, status=RunStatus.EXECUTING)
            state, token = self._state, self._token

        started = time.monotonic()
        deadline = started + options.task_timeout if options.task_timeout else None
        logger.info("Task %s started: %d step(s).", task_id, len(steps))
        display.run_started(task_id, len(steps))

        try:
            status, error = self._drive(steps, state, token, deadline, options)
        finally:
            with self._lock:
                self._running = False

        with self._lock:
            if not state.status.terminal:
                state.status = status
            final_status = state.status
            results = list(state.step_results)
            healing = dict(state.healing_attempts_by_step)

        if final_status is RunStatus.CANCELLED and error is None:
            error = error_info(ToolCancelledError("Run cancelled."))

        result = RunResult(
            task_id=task_id,
            final_status=final_status,
            step_results=results,
            statistics=RunStatistics.from_results(results),
            error=None if final_status is RunStatus.COMPLETED else error,
            duration=time.monotonic() - started,
            metadata={"goal": goal, "planned_steps": len(steps), "healing_attempts_by_step": healing},
        )
        logger.info("Task %s finished: %s (%d/%d steps ok).", task_id, final_status.value,
                    result.statistics.succeeded_steps, result.statistics.total_steps)
        display.run_summary(result)
        return result

    def _drive(
        self,
        steps: list[PlanStep],
        state: RunState,
        token: CancellationToken,
        deadline: float | None,
        options: RunnerOptions,
    ) -> tuple[RunStatus, ErrorInfo | None]:
        index = 0
        executed = 0

        while index < len(steps):
            if not self._gate.wait(token) or token.cancelled:
                return RunStatus.CANCELLED, None
            if _expired(deadline):
                return RunStatus.FAILED, error_info(
                    TaskDeadlineExceededError(f"Task deadline reached before step {index}.")
                )
            executed += 1
            if executed > options.max_steps:
                return RunStatus.FAILED, ErrorInfo(
                    type="StepLimitExceeded",
                    message=f"Run exceeded {options.max_steps} step executions.",
                    category=ErrorCategory.TERMINAL,
                )

            step = steps[index]
            self._set_status(state, RunStatus.EXECUTING, index)
            display.step_start(step, len(steps))

            result = self._executor.execute_tool(
                step.to_tool_call(state.task_id), cancel_token=token, deadline=deadline
            )
            if result.success:
                result = check_rules(step.validation_rules, self._executor, result, token)

            if result.cancelled or token.cancelled:
                self._record(state, index, result)
                return RunStatus.CANCELLED, result.error

            if result.success:
                result = self._mark_healed(state, index, result)
                self._record(state, index, result)
                display.step_succeeded(result)
                index += 1
                continue

            if step.is_optional:
                logger.info("Optional step %d (%s) failed; continuing.", index, step.tool_name)
                display.step_failed(result, optional=True)
                self._record(state, index, result)
                index += 1
                continue

            display.step_failed(result)
            if _expired(deadline):
                self._record(state, index, result)
                return RunStatus.FAILED, result.error

            decision = self._heal(state, step, result, token)

            if decision.kind is DecisionKind.RETRY and decision.step is not None:
                steps[index] = decision.step
                continue
            if decision.kind is DecisionKind.REPLAN and decision.steps:
                steps[index:] = decision.steps
                logger.info("Step %d re-planned into %d step(s).", index, len(decision.steps))
                display.replanned(decision.steps)
                continue

            self._record(state, index, self._give_up_result(state, index, result, decision))
            if decision.cancelled or token.cancelled:
                return RunStatus.CANCELLED, result.error
            logger.warning("Task %s failed at step %d: %s", state.task_id, index, decision.reason)
            return RunStatus.FAILED, result.error

        return RunStatus.COMPLETED, None

    # ------------------------------------------------------------------
    # Healing
    # ------------------------------------------------------------------

    def _heal(
        self,
        state: RunState,
        step: PlanStep,
        result: ToolExecutionResult,
        token: CancellationToken,
    ) -> HealingDecision:
        if self._healer is None:
            return HealingDecision.give_up("No healing coordinator configured.")

        with self._lock:
            attempts = state.healing_attempts_by_step.get(step.index, 0) + 1
            state.healing_attempts_by_step[step.index] = attempts
        self._set_status(state, RunStatus.HEALING, step.index)
        logger.info("Healing step %d (attempt %d).", step.index, attempts)

        decision = self._healer.heal(step, result, state, cancel_token=token)

        if decision.strategy is not None:
            label = decision.strategy.name or decision.strategy.type.value
            with self._lock:
                state.healing_log.setdefault(step.index, []).append(label)
        return decision

    def _mark_healed(self, state: RunState, index: int, result: ToolExecutionResult) -> ToolExecutionResult:
        attempts = state.healing_attempts(index)
        if not attempts:
            return result
        return result.with_metadata(
            healed=True,
            healing_attempts=attempts,
            healing_strategies=list(state.healing_log.get(index, [])),
        )

    def _give_up_result(
        self,
        state: RunState,
        index: int,
        result: ToolExecutionResult,
        decision: HealingDecision,
    ) -> ToolExecutionResult:
        return result.with_metadata(
            healing_attempts=state.healing_attempts(index),
            healing_strategies=list(state.healing_log.get(index, [])),
            last_classification=decision.classification.value,
            give_up_reason=decision.reason,
        )

    # ------------------------------------------------------------------
    # State writes
    # ------------------------------------------------------------------

    def _set_status(self, state: RunState, status: RunStatus, index: int) -> None:
        with self._lock:
            state.current_step_index = index
            # PAUSED and terminal states are owned by pause()/cancel().
            if state.status is RunStatus.PAUSED or state.status.terminal:
                return
            state.status = status

    def _record(self, state: RunState, index: int, result: ToolExecutionResult) -> None:
        with self._lock:
            if index < len(state.step_results):
                state.step_results[index] = result
            else:
                state.step_results.append(result)


def _expired(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


