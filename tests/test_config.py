import pytest
from pydantic import ValidationError

from selfheal.config import ExecutorOptions, HealingOptions, load_settings
from selfheal.models import FailureClass


def test_defaults():
    settings = load_settings({})
    assert settings.executor.max_attempts == 3
    assert settings.executor.initial_delay == 0.5
    assert settings.healing.max_healing_attempts_per_step == 2
    assert settings.healing.min_healing_confidence == 0.5
    assert settings.runner.task_timeout is None
    assert settings.healing.snapshot_timeout == 5.0
    assert settings.healing.unhealable_failures == [FailureClass.NAVIGATION_ERROR]


def test_environment_overrides_are_converted():
    settings = load_settings({
        "SELFHEAL_MAX_ATTEMPTS": "5",
        "SELFHEAL_EXPONENTIAL_BACKOFF": "false",
        "SELFHEAL_MIN_HEALING_CONFIDENCE": "0.75",
        "SELFHEAL_TASK_TIMEOUT": "120",
        "SELFHEAL_SNAPSHOT_TIMEOUT": "2.5",
        "SELFHEAL_MAX_DELAY": "  ",
    })
    assert settings.executor.max_attempts == 5
    assert settings.executor.use_exponential_backoff is False
    assert settings.executor.max_delay == 10.0
    assert settings.healing.min_healing_confidence == 0.75
    assert settings.runner.task_timeout == 120.0
    assert settings.healing.snapshot_timeout == 2.5


@pytest.mark.parametrize("env", [
    {"SELFHEAL_MAX_ATTEMPTS": "0"},
    {"SELFHEAL_MAX_ATTEMPTS": "11"},
    {"SELFHEAL_INITIAL_DELAY": "-1"},
    {"SELFHEAL_MIN_HEALING_CONFIDENCE": "1.5"},
    {"SELFHEAL_TIMEOUT_PER_ATTEMPT": "0"},
    {"SELFHEAL_MAX_HISTORY_SIZE": "0"},
    {"SELFHEAL_MAX_ATTEMPTS": "many"},
])
def test_invalid_values_are_rejected(env):
    with pytest.raises(ValidationError):
        load_settings(env)


def test_max_delay_must_cover_initial_delay():
    with pytest.raises(ValidationError, match="max_delay"):
        ExecutorOptions(initial_delay=5.0, max_delay=1.0)


def test_worst_case_tool_time_is_capped():
    with pytest.raises(ValidationError, match="Worst-case"):
        ExecutorOptions(max_attempts=10, timeout_per_attempt=120.0)
    ExecutorOptions(max_attempts=10, timeout_per_attempt=50.0, initial_delay=0.5, max_delay=5.0)


def test_base_delay_doubles_and_caps():
    options = ExecutorOptions(initial_delay=1.0, max_delay=3.0)
    assert [options.base_delay(a) for a in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]


def test_healing_confidence_bounds():
    with pytest.raises(ValidationError):
        HealingOptions(min_healing_confidence=-0.1)
