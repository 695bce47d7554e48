# models.py
# Data contracts for the self-healing step runner.
# Schema, validation and derived statistics only. No business logic.

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Tool calls and results
# ---------------------------------------------------------------------------


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    CANCELLED = "cancelled"


class ToolCall(BaseModel):
    """A single named operation dispatched to the browser driver."""

    model_config = ConfigDict(frozen=True)

    tool_name: str = Field(..., description="Must exist in the tool registry.")
    parameters: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = Field(default="", description="Diagnostic only. Never affects execution.")
    correlation_id: str = Field(..., description="Groups every call of one task run.")


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    message: str
    category: ErrorCategory
    classification: str = "unknown"

    @property
    def cancelled(self) -> bool:
        return self.category is ErrorCategory.CANCELLED


class ToolExecutionResult(BaseModel):
    """Terminal outcome of one ToolCall, including every retry it took."""

    model_config = ConfigDict(frozen=True)

    success: bool
    tool_name: str
    result: Any = None
    error: ErrorInfo | None = None
    duration: float = Field(default=0.0, ge=0.0, description="Wall time in seconds.")
    attempt_count: int = Field(default=1, ge=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _success_matches_error(self) -> "ToolExecutionResult":
        if self.success != (self.error is None):
            raise ValueError("success must be True exactly when error is None.")
        return self

    @classmethod
    def succeeded(cls, tool_name: str, result: Any, duration: float, attempt_count: int,
                  metadata: dict[str, Any] | None = None) -> "ToolExecutionResult":
        return cls(success=True, tool_name=tool_name, result=result, duration=duration,
                   attempt_count=attempt_count, metadata=dict(metadata or {}))

    @classmethod
    def failed(cls, tool_name: str, error: ErrorInfo, duration: float, attempt_count: int,
               metadata: dict[str, Any] | None = None) -> "ToolExecutionResult":
        return cls(success=False, tool_name=tool_name, error=error, duration=duration,
                   attempt_count=attempt_count, metadata=dict(metadata or {}))

    def with_metadata(self, **entries: Any) -> "ToolExecutionResult":
        """Copy of this result with `entries` added. Existing keys are never dropped."""
        merged = dict(self.metadata)
        merged.update(entries)
        return self.model_copy(update={"metadata": merged})

    @property
    def cancelled(self) -> bool:
        return self.error is not None and self.error.cancelled

    @property
    def was_retried(self) -> bool:
        return self.attempt_count > 1


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class ValidationType(str, Enum):
    ELEMENT_EXISTS = "element_exists"
    ELEMENT_TEXT = "element_text"
    PAGE_TITLE = "page_title"
    URL_CONTAINS = "url_contains"
    DATA_EXTRACTED = "data_extracted"


class ValidationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ValidationType
    expected: Any = None
    name: str = ""


class PlanStep(BaseModel):
    """One action node of an execution plan.

    Steps are frozen. Healing supersedes a step with a replacement built through
    `model_copy`; the original instance is never touched.
    """

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="0-based position in the plan.")
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    expected_outcome: str = ""
    validation_rules: list[ValidationRule] = Field(default_factory=list)
    is_optional: bool = False
    reasoning: str = ""
    fallback_selectors: list[str] = Field(
        default_factory=list, description="Ordered alternative selectors for the same element."
    )

    def to_tool_call(self, correlation_id: str) -> ToolCall:
        return ToolCall(
            tool_name=self.tool_name,
            parameters=dict(self.parameters),
            reasoning=self.reasoning or f"Execute step {self.index}",
            correlation_id=correlation_id,
        )


class Plan(BaseModel):
    """A complete execution plan emitted by the plan generator."""

    goal: str = Field(..., description="Top-level objective of the plan.")
    steps: list[PlanStep] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Healing
# ---------------------------------------------------------------------------


class HealingStrategyType(str, Enum):
    ALTERNATIVE_LOCATOR = "alternative_locator"
    EXTENDED_WAIT = "extended_wait"
    RETRY = "retry"
    REPLAN = "replan"
    FALLBACK = "fallback"


class HealingStrategy(BaseModel):
    type: HealingStrategyType
    confidence: float = Field(..., ge=0.0, le=1.0)
    priority: int = 5
    parameters: dict[str, Any] = Field(default_factory=dict)
    name: str = ""
    description: str = ""


class FailureClass(str, Enum):
    TIMEOUT = "timeout"
    SELECTOR_NOT_FOUND = "selector_not_found"
    STALE_REFERENCE = "stale_reference"
    NAVIGATION_ERROR = "navigation_error"
    UNKNOWN = "unknown"


class PageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = ""
    title: str = ""


class FailureContext(BaseModel):
    """Everything the strategy generator sees about one failed step."""

    goal: str = ""
    step: PlanStep
    error: ErrorInfo | None
    classification: FailureClass
    snapshot: PageSnapshot | None = None
    healing_attempt: int
    previous_strategies: list[str] = Field(default_factory=list)
    recent_results: list[ToolExecutionResult] = Field(default_factory=list)


class FailureAnalysis(BaseModel):
    """Classification of a failed step and whether healing should be tried."""

    model_config = ConfigDict(frozen=True)

    classification: FailureClass
    healable: bool
    root_cause: str = ""


class DecisionKind(str, Enum):
    RETRY = "retry"
    REPLAN = "replan"
    GIVE_UP = "give_up"


class HealingDecision(BaseModel):
    kind: DecisionKind
    step: PlanStep | None = None
    steps: list[PlanStep] = Field(default_factory=list)
    strategy: HealingStrategy | None = None
    classification: FailureClass = FailureClass.UNKNOWN
    reason: str = ""
    cancelled: bool = False

    @classmethod
    def retry(cls, step: PlanStep, strategy: HealingStrategy,
              classification: FailureClass) -> "HealingDecision":
        return cls(kind=DecisionKind.RETRY, step=step, strategy=strategy,
                   classification=classification, reason=strategy.description or strategy.name)

    @classmethod
    def replan(cls, steps: list[PlanStep], strategy: HealingStrategy,
               classification: FailureClass) -> "HealingDecision":
        return cls(kind=DecisionKind.REPLAN, steps=steps, strategy=strategy,
                   classification=classification, reason=strategy.description or strategy.name)

    @classmethod
    def give_up(cls, reason: str, classification: FailureClass = FailureClass.UNKNOWN,
                strategy: HealingStrategy | None = None, cancelled: bool = False) -> "HealingDecision":
        return cls(kind=DecisionKind.GIVE_UP, reason=reason, classification=classification,
                   strategy=strategy, cancelled=cancelled)


# ---------------------------------------------------------------------------
# Run state and results
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    PAUSED = "paused"
    HEALING = "healing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class RunState(BaseModel):
    """Mutable state of one task execution. Only StepRunner writes to it."""

    task_id: str
    goal: str = ""
    current_step_index: int = 0
    status: RunStatus = RunStatus.PENDING
    step_results: list[ToolExecutionResult] = Field(default_factory=list)
    healing_attempts_by_step: dict[int, int] = Field(default_factory=dict)
    healing_log: dict[int, list[str]] = Field(default_factory=dict)

    def healing_attempts(self, index: int) -> int:
        return self.healing_attempts_by_step.get(index, 0)


class RunStatistics(BaseModel):
    total_steps: int = 0
    succeeded_steps: int = 0
    failed_steps: int = 0
    healed_steps: int = 0
    total_retries: int = 0
    success_rate: float = 0.0
    average_step_duration: float = 0.0
    total_step_duration: float = 0.0

    @classmethod
    def from_results(cls, results: list[ToolExecutionResult]) -> "RunStatistics":
        total = len(results)
        succeeded = sum(1 for r in results if r.success)
        total_duration = sum(r.duration for r in results)
        return cls(
            total_steps=total,
            succeeded_steps=succeeded,
            failed_steps=total - succeeded,
            healed_steps=sum(1 for r in results if r.success and r.metadata.get("healed")),
            total_retries=sum(r.attempt_count - 1 for r in results),
            success_rate=succeeded / total if total else 0.0,
            average_step_duration=total_duration / total if total else 0.0,
            total_step_duration=total_duration,
        )


class RunResult(BaseModel):
    task_id: str
    final_status: RunStatus
    step_results: list[ToolExecutionResult] = Field(default_factory=list)
    statistics: RunStatistics = Field(default_factory=RunStatistics)
    error: ErrorInfo | None = None
    duration: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)
