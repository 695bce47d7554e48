# llm.py
# Model-backed PlanGenerator and StrategyGenerator over OpenRouter.
#
# Models are passive responders: they receive a prompt and return text. All
# parsing and validation of that text happens here, and anything malformed
# raises PlanParseError / StrategyParseError for the caller to handle.

import json
import logging
import os
import re
from typing import Any

from openai import OpenAI

from selfheal import display
from selfheal.errors import PlanParseError, StrategyParseError
from selfheal.models import FailureContext, HealingStrategy, HealingStrategyType, Plan, PlanStep
from selfheal.registry import DefaultToolRegistry

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
# Seconds per model request. Keep the healer's below strategy_timeout.
MODEL_TIMEOUT = 60.0


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

PLANNER_SYSTEM_PROMPT = """\
You are a browser automation planner. Turn the user's goal into an ordered list \
of browser tool calls.

Respond with your plan inside <plan> tags containing valid JSON that matches \
this exact schema:

<plan>
{
  "goal": "brief description of the overall goal",
  "steps": [
    {
      "tool_name": "tool_name",
      "parameters": {"param_name": "value"},
      "expected_outcome": "what the page should look like afterwards",
      "is_optional": false,
      "validation_rules": [{"type": "url_contains", "expected": "/checkout"}],
      "fallback_selectors": ["alternative selector for the same element"],
      "reasoning": "why this step is needed"
    }
  ]
}
</plan>

Validation rule types: element_exists, element_text, page_title, url_contains, data_extracted.
validation_rules, fallback_selectors and is_optional may be omitted. Give \
fallback_selectors for clicks and typing when the element has other stable \
locators (text, role, data-testid).

Available tools and their JSON parameters:
{tools}

When you are asked to re-plan after a failure, return ONLY the steps that \
replace the failed step and everything after it. Do not repeat steps that \
already succeeded.\
"""

HEALER_SYSTEM_PROMPT = """\
You are a browser automation repair agent. A step of a running task failed \
after exhausting its retries. Diagnose the failure and propose repair strategies.

Respond with ONLY a JSON object, no other text:

{
  "diagnosis": "one sentence root cause",
  "strategies": [
    {
      "strategy_type": "alternative_locator | extended_wait | retry | replan | fallback",
      "strategy_name": "short label",
      "description": "what the strategy changes",
      "confidence": 0.0,
      "priority": 5,
      "changes": {}
    }
  ]
}

Put the repair payload in "changes":
  alternative_locator: {"selector": "<css>"} or {"locator_type": "text|xpath|role|testid|css", "locator_value": "<value>"}
  extended_wait:       {"wait_seconds": <number>}
  retry:               {"parameters": {<replacement step parameters>}}
  replan / fallback:   {}

Higher priority is tried first. Confidence is between 0 and 1.
Never propose a strategy already listed under previous strategies.

Available tools:
{tools}\
"""

# Loose strategy-type spellings seen from models, mapped onto our vocabulary.
_STRATEGY_ALIASES = {
    "alternativelocator": HealingStrategyType.ALTERNATIVE_LOCATOR,
    "locator": HealingStrategyType.ALTERNATIVE_LOCATOR,
    "extendedwait": HealingStrategyType.EXTENDED_WAIT,
    "wait": HealingStrategyType.EXTENDED_WAIT,
    "retry": HealingStrategyType.RETRY,
    "retrywithdelay": HealingStrategyType.RETRY,
    "replan": HealingStrategyType.REPLAN,
    "taskreplanning": HealingStrategyType.REPLAN,
    "fallback": HealingStrategyType.FALLBACK,
    "simplefallback": HealingStrategyType.FALLBACK,
}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_plan(response: str) -> Plan:
    """
    Extract and validate plan JSON from <plan> tags.

    Steps are indexed in emission order. Raises PlanParseError if the tag is
    missing or its content is invalid.
    """
    match = re.search(r"<plan>(.*?)</plan>", response, re.DOTALL)
    if not match:
        raise PlanParseError("Response contains no <plan> block.")

    raw = _strip_fences(match.group(1).strip())
    try:
        data = json.loads(raw, strict=False)
        if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
            raise ValueError("expected an object with a 'steps' list")
        data["steps"] = [_step_payload(i, s) for i, s in enumerate(data["steps"])]
        data.setdefault("goal", "")
        return Plan.model_validate(data)
    except (json.JSONDecodeError, ValueError, TypeError) as exc:
        raise PlanParseError(f"Plan content is invalid: {exc}") from exc


def _step_payload(index: int, raw: Any) -> dict:
    if not isinstance(raw, dict):
        raise ValueError(f"step {index} is not an object")
    step = dict(raw)
    if "tool" in step and "tool_name" not in step:
        step["tool_name"] = step.pop("tool")
    if "args" in step and "parameters" not in step:
        step["parameters"] = step.pop("args")
    step["index"] = index
    return step


def normalize_strategy_type(value: Any) -> HealingStrategyType:
    key = re.sub(r"[^a-z]", "", str(value).lower())
    strategy_type = _STRATEGY_ALIASES.get(key)
    if strategy_type is None:
        logger.debug("Unknown strategy type %r; treating as fallback.", value)
        return HealingStrategyType.FALLBACK
    return strategy_type


def parse_strategies(response: str) -> list[HealingStrategy]:
    """
    Parse the {"strategies": [...]} object a healer model returns.

    Individual malformed entries are skipped. A response that is not a JSON
    object with a strategies list raises StrategyParseError.
    """
    raw = _strip_fences(response.strip())
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        raise StrategyParseError("Response contains no JSON object.")
    try:
        data = json.loads(raw[start:end + 1], strict=False)
    except json.JSONDecodeError as exc:
        raise StrategyParseError(f"Strategy JSON is invalid: {exc}") from exc

    entries = data.get("strategies") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise StrategyParseError("Expected an object with a 'strategies' list.")

    strategies = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Skipping strategy %d: not an object.", position)
            continue
        try:
            strategies.append(HealingStrategy(
                type=normalize_strategy_type(entry.get("strategy_type") or entry.get("type", "")),
                name=str(entry.get("strategy_name") or entry.get("name") or ""),
                description=str(entry.get("description") or ""),
                confidence=min(max(float(entry.get("confidence", 0.0)), 0.0), 1.0),
                priority=int(entry.get("priority", 5)),
                parameters=dict(entry.get("changes") or entry.get("parameters") or {}),
            ))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping strategy %d: %s", position, exc)
    return strategies


def _strip_fences(text: str) -> str:
    text = re.sub(r"^```(?:json)?\s*", "", text)
    return re.sub(r"\s*```$", "", text)


# ---------------------------------------------------------------------------
# Model client
# ---------------------------------------------------------------------------


class _ModelClient:
    def __init__(self, model: str, client: OpenAI | None = None, timeout: float = MODEL_TIMEOUT) -> None:
        self._model = model
        self._client = client or OpenAI(
            base_url=OPENROUTER_BASE_URL,
            api_key=os.getenv("OPENROUTER_API_KEY"),
            timeout=timeout,
        )

    @property
    def model(self) -> str:
        return self._model

    def _call_model(self, messages: list[dict]) -> str:
        response = self._client.chat.completions.create(
            model=self._model,
            messages=messages,
        )
        return (response.choices[0].message.content or "").strip()


class OpenAIPlanGenerator(_ModelClient):
    """
    PlanGenerator backed by a chat model.

    Example:
        planner = OpenAIPlanGenerator("anthropic/claude-3.5-haiku")
        steps = planner.generate("Log in and open the billing page.", {})
    """

    def __init__(self, model: str, client: OpenAI | None = None, registry: DefaultToolRegistry | None = None) -> None:
        super().__init__(model, client)
        self._registry = registry or DefaultToolRegistry()

    def generate(self, goal: str, context: dict[str, Any]) -> list[PlanStep]:
        display.calling_planner()
        user = f"Goal: {goal}"
        if context:
            user += "\n\nRe-plan context:\n" + json.dumps(context, indent=2, default=str)

        response = self._call_model([
            {"role": "system", "content": PLANNER_SYSTEM_PROMPT.replace("{tools}", self._registry.describe())},
            {"role": "user", "content": user},
        ])
        plan = parse_plan(response)
        logger.info("Planner returned %d step(s) for goal %r.", len(plan.steps), goal)
        return plan.steps


class OpenAIStrategyGenerator(_ModelClient):
    """StrategyGenerator backed by a chat model. One call per failure, no caching."""

    def __init__(self, model: str, client: OpenAI | None = None, registry: DefaultToolRegistry | None = None,
                 timeout: float = MODEL_TIMEOUT) -> None:
        super().__init__(model, client, timeout)
        self._registry = registry or DefaultToolRegistry()

    def diagnose(self, context: FailureContext) -> list[HealingStrategy]:
        response = self._call_model([
            {"role": "system", "content": HEALER_SYSTEM_PROMPT.replace("{tools}", self._registry.describe())},
            {"role": "user", "content": _describe_failure(context)},
        ])
        strategies = parse_strategies(response)
        logger.info("Healer proposed %d strategy(ies) for step %d.", len(strategies), context.step.index)
        return strategies


def _describe_failure(context: FailureContext) -> str:
    step = context.step
    lines = [
        f"Goal: {context.goal}",
        f"Failed step {step.index}: {step.tool_name} {json.dumps(step.parameters, default=str)}",
        f"Expected outcome: {step.expected_outcome or '(none)'}",
        f"Failure class: {context.classification.value}",
    ]
    if context.error is not None:
        lines.append(f"Error: {context.error.type}: {context.error.message}")
    if context.snapshot is not None:
        lines.append(f"Page: {context.snapshot.title!r} at {context.snapshot.url}")
    lines.append(f"Healing attempt: {context.healing_attempt}")
    lines.append(f"Previous strategies: {', '.join(context.previous_strategies) or 'none'}")
    for result in context.recent_results:
        outcome = "ok" if result.success else f"failed ({result.error.message if result.error else '?'})"
        lines.append(f"Recent: {result.tool_name} {outcome}")
    return "\n".join(lines)
