# config.py
# Runtime options for the executor, the healing layer and the step runner.
#
# Values come from keyword arguments, or from the environment (and a local
# .env file) through load_settings(). Validation is pydantic's job.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from selfheal.models import FailureClass

# Ceiling on the worst-case time one tool call may take across all attempts.
MAX_TOTAL_TOOL_TIME = 600.0


class ExecutorOptions(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_delay: float = Field(default=0.5, ge=0.0, description="Seconds before the first retry.")
    max_delay: float = Field(default=10.0, ge=0.0)
    use_exponential_backoff: bool = True
    timeout_per_attempt: float = Field(default=30.0, gt=0.0)
    max_history_size: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ExecutorOptions":
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}s) must be >= initial_delay ({self.initial_delay}s)."
            )
        worst_case = self.timeout_per_attempt * self.max_attempts + self.max_backoff_total()
        if worst_case > MAX_TOTAL_TOOL_TIME:
            raise ValueError(
                f"Worst-case tool time {worst_case:.0f}s exceeds {MAX_TOTAL_TOOL_TIME:.0f}s. "
                "Reduce max_attempts, timeout_per_attempt or max_delay."
            )
        return self

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay after failed attempt number `attempt` (1-based)."""
        if not self.use_exponential_backoff:
            return self.initial_delay
        return min(self.initial_delay * 2 ** (attempt - 1), self.max_delay)

    def max_backoff_total(self) -> float:
        return sum(self.base_delay(attempt) for attempt in range(1, self.max_attempts))


class HealingOptions(BaseModel):
    max_healing_attempts_per_step: int = Field(default=2, ge=0)
    min_healing_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    max_extended_wait: float = Field(default=10.0, ge=0.0)
    default_extended_wait: float = Field(default=2.0, ge=0.0)
    strategy_timeout: float = Field(default=30.0, gt=0.0)
    snapshot_timeout: float = Field(default=5.0, gt=0.0)
    unhealable_failures: list[FailureClass] = Field(
        default_factory=lambda: [FailureClass.NAVIGATION_ERROR],
        description="Failure classes that give up without consulting a strategy generator.",
    )


class RunnerOptions(BaseModel):
    task_timeout: float | None = Field(default=None, gt=0.0, description="Overall task budget in seconds.")
    max_steps: int = Field(default=200, ge=1, description="Guards against runaway re-plans.")


class Settings(BaseModel):
    executor: ExecutorOptions = Field(default_factory=ExecutorOptions)
    healing: HealingOptions = Field(default_factory=HealingOptions)
    runner: RunnerOptions = Field(default_factory=RunnerOptions)


# ---------------------------------------------------------------------------
# Environment loading
# ---------------------------------------------------------------------------

_ENV_FIELDS = {
    "SELFHEAL_MAX_ATTEMPTS": ("executor", "max_attempts"),
    "SELFHEAL_INITIAL_DELAY": ("executor", "initial_delay"),
    "SELFHEAL_MAX_DELAY": ("executor", "max_delay"),
    "SELFHEAL_EXPONENTIAL_BACKOFF": ("executor", "use_exponential_backoff"),
    "SELFHEAL_TIMEOUT_PER_ATTEMPT": ("executor", "timeout_per_attempt"),
    "SELFHEAL_MAX_HISTORY_SIZE": ("executor", "max_history_size"),
    "SELFHEAL_MAX_HEALING_ATTEMPTS": ("healing", "max_healing_attempts_per_step"),
    "SELFHEAL_MIN_HEALING_CONFIDENCE": ("healing", "min_healing_confidence"),
    "SELFHEAL_MAX_EXTENDED_WAIT": ("healing", "max_extended_wait"),
    "SELFHEAL_STRATEGY_TIMEOUT": ("healing", "strategy_timeout"),
    "SELFHEAL_SNAPSHOT_TIMEOUT": ("healing", "snapshot_timeout"),
    "SELFHEAL_TASK_TIMEOUT": ("runner", "task_timeout"),
}


def load_settings(env: dict[str, str] | None = None) -> Settings:
    """
    Build Settings from SELFHEAL_* variables.

    With env=None the process environment is used, after loading .env.
    Raw strings are handed to pydantic, which performs the conversion.
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    sections: dict[str, dict[str, str]] = {"executor": {}, "healing": {}, "runner": {}}
    for var, (section, field) in _ENV_FIELDS.items():
        raw = env.get(var, "").strip()
        if raw:
            sections[section][field] = raw

    return Settings.model_validate(sections)
