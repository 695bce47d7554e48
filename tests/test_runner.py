import threading
import time
from unittest.mock import MagicMock

import pytest

from selfheal.config import ExecutorOptions, HealingOptions, RunnerOptions
from selfheal.errors import AttemptTimeoutError, InvalidArgumentError
from selfheal.executor import ToolExecutor
from selfheal.healing import HealingCoordinator, RuleBasedStrategyGenerator
from selfheal.llm import parse_strategies
from selfheal.models import (
    HealingStrategy,
    HealingStrategyType,
    PageSnapshot,
    Plan,
    PlanStep,
    RunStatus,
    ValidationRule,
    ValidationType,
)
from selfheal.runner import StepRunner


def _plan(*steps):
    return Plan(goal="Search the shop", steps=[
        PlanStep(index=i, tool_name=tool, parameters=params, **extra)
        for i, (tool, params, extra) in enumerate(steps)
    ])


CHECKOUT = _plan(
    ("navigate", {"url": "https://shop.test"}, {}),
    ("click", {"selector": "#missing"}, {}),
    ("type", {"selector": "#q", "text": "shoes"}, {}),
)


@pytest.fixture
def generator():
    return MagicMock()


@pytest.fixture
def healer(executor, generator):
    coordinator = HealingCoordinator(executor, generator, options=HealingOptions(max_healing_attempts_per_step=2))
    yield coordinator
    coordinator.close()


def _locator(selector, confidence=0.9):
    return HealingStrategy(type=HealingStrategyType.ALTERNATIVE_LOCATOR, confidence=confidence,
                           parameters={"selector": selector}, name="submit-button")


def _click_fails_on(*bad_selectors, error=AttemptTimeoutError):
    def click(selector, **kwargs):
        if selector in bad_selectors:
            raise error(f"Timeout 30000ms exceeded waiting for selector '{selector}'")
    return click


# ---------------------------------------------------------------------------
# Completion and healing
# ---------------------------------------------------------------------------

def test_all_steps_succeed(executor, driver):
    result = StepRunner(executor).run(CHECKOUT, task_id="task-1")

    assert result.final_status is RunStatus.COMPLETED
    assert result.error is None
    assert result.statistics.total_steps == 3
    assert result.statistics.success_rate == 1.0
    assert result.statistics.healed_steps == 0


def test_failed_step_is_healed_with_alternative_locator(executor, driver, generator, healer):
    driver.click.side_effect = _click_fails_on("#missing")
    generator.diagnose.return_value = [_locator("button[type=submit]")]

    result = StepRunner(executor, healer).run(CHECKOUT, task_id="task-1")

    assert result.final_status is RunStatus.COMPLETED
    assert result.statistics.healed_steps == 1
    assert len(result.step_results) == 3
    healed = result.step_results[1]
    assert healed.metadata["healed"] is True
    assert healed.metadata["healing_attempts"] == 1
    assert healed.metadata["healing_strategies"] == ["submit-button"]
    driver.click.assert_called_with("button[type=submit]", button="left", click_count=1, force=False)
    driver.type.assert_called_once_with("#q", "shoes", delay_ms=50, clear_first=False)
    # Pre-healing attempts stay in the executor history only.
    assert [r.success for r in executor.get_history("task-1")] == [True, False, True, True]


def test_give_up_fails_the_run(executor, driver, generator, healer):
    driver.click.side_effect = _click_fails_on("#missing")
    generator.diagnose.return_value = []

    result = StepRunner(executor, healer).run(CHECKOUT, task_id="task-1")

    assert result.final_status is RunStatus.FAILED
    assert len(result.step_results) == 2
    failed = result.step_results[1]
    assert failed.success is False
    assert failed.metadata["healing_attempts"] == 1
    assert failed.metadata["last_classification"] == "selector_not_found"
    assert result.error is not None
    driver.type.assert_not_called()


def test_healing_budget_is_enforced_per_step(executor, driver, generator, healer):
    driver.click.side_effect = _click_fails_on("#missing", "#still-missing")
    generator.diagnose.return_value = [_locator("#still-missing")]

    result = StepRunner(executor, healer).run(CHECKOUT, task_id="task-1")

    assert result.final_status is RunStatus.FAILED
    assert generator.diagnose.call_count == 2
    assert result.step_results[1].metadata["healing_strategies"] == ["submit-button", "submit-button"]


def test_run_without_healer_fails_on_first_error(executor, driver):
    driver.click.side_effect = _click_fails_on("#missing", error=InvalidArgumentError)

    result = StepRunner(executor).run(CHECKOUT)

    assert result.final_status is RunStatus.FAILED
    assert result.step_results[1].error.type == "InvalidArgumentError"


def test_optional_step_failure_continues_without_healing(executor, driver, generator, healer):
    driver.click.side_effect = _click_fails_on("#banner", error=InvalidArgumentError)
    plan = _plan(
        ("navigate", {"url": "https://shop.test"}, {}),
        ("click", {"selector": "#banner"}, {"is_optional": True}),
        ("type", {"selector": "#q", "text": "shoes"}, {}),
    )

    result = StepRunner(executor, healer).run(plan)

    assert result.final_status is RunStatus.COMPLETED
    assert [r.success for r in result.step_results] == [True, False, True]
    generator.diagnose.assert_not_called()


def test_validation_rule_failure_triggers_healing(executor, driver, generator, healer):
    driver.page_state.side_effect = lambda: PageSnapshot(
        url="https://shop.test/dashboard" if driver.navigate.call_count >= 2 else "https://shop.test/login",
        title="Shop",
    )
    generator.diagnose.return_value = [
        HealingStrategy(type=HealingStrategyType.RETRY, confidence=0.8, name="retry-login")
    ]
    plan = _plan(("navigate", {"url": "https://shop.test"},
                  {"validation_rules": [ValidationRule(type=ValidationType.URL_CONTAINS, expected="/dashboard")]}))

    result = StepRunner(executor, healer).run(plan)

    assert result.final_status is RunStatus.COMPLETED
    assert driver.navigate.call_count == 2
    assert result.step_results[0].metadata["healed"] is True


def test_replan_splices_new_tail(executor, driver, generator):
    driver.click.side_effect = _click_fails_on("#old", error=InvalidArgumentError)
    generator.diagnose.return_value = [
        HealingStrategy(type=HealingStrategyType.REPLAN, confidence=0.7, name="replan")
    ]
    planner = MagicMock()
    planner.generate.return_value = [
        PlanStep(index=0, tool_name="click", parameters={"selector": "#new"}),
        PlanStep(index=1, tool_name="extract_text", parameters={"selector": "#result"}),
    ]
    plan = _plan(
        ("navigate", {"url": "https://shop.test"}, {}),
        ("click", {"selector": "#old"}, {}),
        ("type", {"selector": "#q", "text": "shoes"}, {}),
    )
    healer = HealingCoordinator(executor, generator, planner)
    try:
        result = StepRunner(executor, healer).run(plan)
    finally:
        healer.close()

    assert result.final_status is RunStatus.COMPLETED
    assert [r.tool_name for r in result.step_results] == ["navigate", "click", "extract_text"]
    assert result.step_results[2].result == "Hello"
    driver.type.assert_not_called()


# ---------------------------------------------------------------------------
# Pause, resume, cancel
# ---------------------------------------------------------------------------

def _run_in_thread(runner, plan):
    outcome = {}
    thread = threading.Thread(target=lambda: outcome.setdefault("result", runner.run(plan, task_id="bg")))
    thread.start()
    return thread, outcome


def test_pause_holds_at_step_boundary_until_resume(executor, driver):
    entered, release = threading.Event(), threading.Event()

    def navigate(url, **kwargs):
        entered.set()
        release.wait(2)

    driver.navigate.side_effect = navigate
    runner = StepRunner(executor)
    thread, outcome = _run_in_thread(runner, CHECKOUT)

    assert entered.wait(2)
    assert runner.pause() is True
    assert runner.state.status is RunStatus.PAUSED
    release.set()
    time.sleep(0.2)

    driver.click.assert_not_called()
    assert thread.is_alive()

    assert runner.resume() is True
    thread.join(2)
    assert outcome["result"].final_status is RunStatus.COMPLETED
    assert runner.resume() is False


def test_cancel_while_paused(executor, driver):
    entered, release = threading.Event(), threading.Event()
    driver.navigate.side_effect = lambda url, **kwargs: (entered.set(), release.wait(2))
    runner = StepRunner(executor)
    thread, outcome = _run_in_thread(runner, CHECKOUT)

    assert entered.wait(2)
    runner.pause()
    release.set()
    assert runner.cancel() is True
    assert runner.cancel() is False
    thread.join(2)

    assert outcome["result"].final_status is RunStatus.CANCELLED
    driver.click.assert_not_called()


def test_cancel_interrupts_in_flight_step(executor, driver):
    driver.click.side_effect = lambda selector, **kwargs: time.sleep(0.2)
    plan = _plan(*[("click", {"selector": f"#b{i}"}, {}) for i in range(10)])
    runner = StepRunner(executor)
    threading.Timer(0.3, runner.cancel).start()

    started = time.monotonic()
    result = runner.run(plan)

    assert time.monotonic() - started < 1.5
    assert result.final_status is RunStatus.CANCELLED
    assert len(result.step_results) < 10
    assert result.error.category.value == "cancelled"


def test_cancel_after_completion_is_a_no_op(executor):
    runner = StepRunner(executor)
    result = runner.run(CHECKOUT)

    assert runner.cancel() is False
    assert runner.state.status is RunStatus.COMPLETED
    assert result.final_status is RunStatus.COMPLETED


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

def test_task_timeout_fails_the_run(executor, driver):
    driver.click.side_effect = lambda selector, **kwargs: time.sleep(0.15)
    plan = _plan(*[("click", {"selector": f"#b{i}"}, {}) for i in range(6)])

    result = StepRunner(executor, options=RunnerOptions(task_timeout=0.2)).run(plan)

    assert result.final_status is RunStatus.FAILED
    assert result.duration < 1.5
    assert len(result.step_results) < 6


def test_empty_step_list_is_rejected(executor):
    with pytest.raises(ValueError):
        StepRunner(executor).run([])


def test_cancel_before_run_is_honoured(executor, driver):
    runner = StepRunner(executor)

    assert runner.cancel() is True
    result = runner.run(CHECKOUT)

    assert result.final_status is RunStatus.CANCELLED
    assert result.step_results == []
    driver.navigate.assert_not_called()
    # The held request is consumed by the run it cancelled.
    assert runner.run(CHECKOUT).final_status is RunStatus.COMPLETED


def test_cancel_during_validation_read(executor, driver):
    entered = threading.Event()

    def slow_state():
        entered.set()
        time.sleep(0.5)
        return PageSnapshot(url="https://shop.test/cart", title="Cart")

    driver.page_state.side_effect = slow_state
    plan = _plan(("navigate", {"url": "https://shop.test"},
                  {"validation_rules": [ValidationRule(type=ValidationType.URL_CONTAINS, expected="/cart")]}))
    runner = StepRunner(executor)
    threading.Thread(target=lambda: entered.wait(2) and runner.cancel()).start()

    started = time.monotonic()
    result = runner.run(plan)

    assert time.monotonic() - started < 0.45
    assert result.final_status is RunStatus.CANCELLED
    assert result.step_results[0].cancelled


# ---------------------------------------------------------------------------
# Healing inputs the run must survive
# ---------------------------------------------------------------------------

def test_malformed_model_strategy_fails_the_run_cleanly(executor, driver, generator, healer):
    driver.click.side_effect = _click_fails_on("#missing")
    generator.diagnose.return_value = parse_strategies(
        '{"strategies": [{"strategy_type": "extended_wait", "confidence": 0.9,'
        ' "changes": {"wait_seconds": "a few"}}]}'
    )

    result = StepRunner(executor, healer).run(CHECKOUT, task_id="task-1")

    assert result.final_status is RunStatus.FAILED
    failed = result.step_results[1]
    assert "unusable payload" in failed.metadata["give_up_reason"]
    assert failed.metadata["healing_attempts"] == 1
    driver.type.assert_not_called()


def test_page_reads_never_overlap_tool_calls(driver):
    lock, active, peak = threading.Lock(), [0], [0]

    def tracked(fn):
        def wrapper(*args, **kwargs):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            try:
                return fn(*args, **kwargs)
            finally:
                with lock:
                    active[0] -= 1
        return wrapper

    driver.click.side_effect = tracked(lambda selector, **kwargs: time.sleep(0.3))
    driver.page_state.side_effect = tracked(lambda: PageSnapshot(url="https://shop.test/", title="Shop"))
    generator = MagicMock()
    generator.diagnose.return_value = []
    options = ExecutorOptions(max_attempts=1, timeout_per_attempt=0.1, initial_delay=0.0, max_delay=0.0)
    plan = _plan(("click", {"selector": "#slow"}, {}))

    with ToolExecutor(driver, options=options) as executor:
        healer = HealingCoordinator(executor, generator, options=HealingOptions(snapshot_timeout=2.0))
        try:
            result = StepRunner(executor, healer).run(plan)
        finally:
            healer.close()

    assert result.final_status is RunStatus.FAILED
    assert result.step_results[0].error.type == "AttemptTimeoutError"
    assert driver.page_state.call_count == 1
    assert peak[0] == 1


def test_rule_based_healing_uses_fallback_selectors(executor, driver):
    driver.click.side_effect = _click_fails_on("#missing")
    plan = _plan(
        ("navigate", {"url": "https://shop.test"}, {}),
        ("click", {"selector": "#missing"}, {"fallback_selectors": ["#missing", "text=Checkout"]}),
    )
    healer = HealingCoordinator(executor, RuleBasedStrategyGenerator())
    try:
        result = StepRunner(executor, healer).run(plan)
    finally:
        healer.close()

    assert result.final_status is RunStatus.COMPLETED
    assert result.step_results[1].metadata["healing_strategies"] == ["fallback-selector:text=Checkout"]
    driver.click.assert_called_with("text=Checkout", button="left", click_count=1, force=False)
