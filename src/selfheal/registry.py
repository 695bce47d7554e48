# registry.py
# Tool registry: the static schema of every browser tool.
# The executor validates against it and never dispatches an unknown name.

from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from selfheal.errors import InvalidArgumentError


class ParameterDef(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="'string', 'int', 'number', 'boolean' or 'array'.")
    required: bool = False
    description: str = ""
    default: Any = None


class ToolSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: dict[str, ParameterDef] = Field(default_factory=dict)

    @property
    def required(self) -> set[str]:
        return {name for name, p in self.parameters.items() if p.required}

    @property
    def optional(self) -> set[str]:
        return {name for name, p in self.parameters.items() if not p.required}


class ToolRegistry(Protocol):
    def exists(self, name: str) -> bool: ...

    def get_schema(self, name: str) -> ToolSchema: ...


def _p(type_: str, required: bool, description: str, default: Any = None) -> ParameterDef:
    return ParameterDef(type=type_, required=required, description=description, default=default)


DEFAULT_TOOLS: dict[str, ToolSchema] = {
    "navigate": ToolSchema(
        name="navigate",
        description="Navigate the browser to a URL (must include the protocol).",
        parameters={
            "url": _p("string", True, "The URL to navigate to."),
            "wait_until": _p("string", False, "'load', 'domcontentloaded' or 'networkidle'.", "load"),
        },
    ),
    "click": ToolSchema(
        name="click",
        description="Click an element identified by a selector.",
        parameters={
            "selector": _p("string", True, "Selector of the element to click."),
            "button": _p("string", False, "'left', 'right' or 'middle'.", "left"),
            "click_count": _p("int", False, "Number of clicks.", 1),
            "force": _p("boolean", False, "Click even if the element is not actionable.", False),
        },
    ),
    "type": ToolSchema(
        name="type",
        description="Type text into an input, textarea or contenteditable element.",
        parameters={
            "selector": _p("string", True, "Selector of the input element."),
            "text": _p("string", True, "Text to type."),
            "delay_ms": _p("int", False, "Delay between keystrokes.", 50),
            "clear_first": _p("boolean", False, "Clear existing text before typing.", False),
        },
    ),
    "clear_input": ToolSchema(
        name="clear_input",
        description="Clear all text from an input field.",
        parameters={"selector": _p("string", True, "Selector of the input element.")},
    ),
    "extract_text": ToolSchema(
        name="extract_text",
        description="Read the visible text of an element.",
        parameters={"selector": _p("string", True, "Selector of the element to read.")},
    ),
    "wait_for_element": ToolSchema(
        name="wait_for_element",
        description="Wait for an element to appear and become visible.",
        parameters={
            "selector": _p("string", True, "Selector of the element to wait for."),
            "timeout_ms": _p("int", False, "Maximum wait in milliseconds.", 30000),
        },
    ),
    "take_screenshot": ToolSchema(
        name="take_screenshot",
        description="Capture a PNG screenshot of the current page.",
        parameters={"full_page": _p("boolean", False, "Capture the full scrollable page.", False)},
    ),
    "get_page_state": ToolSchema(
        name="get_page_state",
        description="Read the current URL and title.",
    ),
    # Declared for planners; the driver has no method for these yet.
    "select_option": ToolSchema(
        name="select_option",
        description="Select an option from a dropdown.",
        parameters={
            "selector": _p("string", True, "Selector of the select element."),
            "value": _p("string", False, "Option value to select."),
        },
    ),
    "submit_form": ToolSchema(
        name="submit_form",
        description="Submit a form.",
        parameters={"selector": _p("string", True, "Selector of the form element.")},
    ),
    "verify_element_exists": ToolSchema(
        name="verify_element_exists",
        description="Check that an element exists on the page.",
        parameters={"selector": _p("string", True, "Selector of the element.")},
    ),
    "wait_for_url_change": ToolSchema(
        name="wait_for_url_change",
        description="Wait for the page URL to change.",
        parameters={"url_pattern": _p("string", False, "Regex the new URL must match.")},
    ),
}

ALIASES = {"get_text": "extract_text"}


class DefaultToolRegistry:
    """Case-insensitive lookup over a dict of ToolSchema."""

    def __init__(self, tools: dict[str, ToolSchema] | None = None) -> None:
        self._tools = {name.lower(): schema for name, schema in (tools or DEFAULT_TOOLS).items()}

    def _key(self, name: str) -> str:
        key = name.lower()
        return ALIASES.get(key, key)

    def exists(self, name: str) -> bool:
        return self._key(name) in self._tools

    def get_schema(self, name: str) -> ToolSchema:
        try:
            return self._tools[self._key(name)]
        except KeyError:
            raise KeyError(
                f"Tool '{name}' not found. Available tools: {', '.join(self.tool_names())}"
            ) from None

    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> str:
        """One line per tool, for model prompts."""
        lines = []
        for schema in self._tools.values():
            args = ", ".join(
                f'"{name}": <{p.type}{"" if p.required else ", optional"}>'
                for name, p in schema.parameters.items()
            )
            lines.append(f"- {schema.name}: {{{args}}}  {schema.description}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Validation and coercion
# ---------------------------------------------------------------------------

_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def missing_parameters(schema: ToolSchema, parameters: dict[str, Any]) -> list[str]:
    return sorted(name for name in schema.required if parameters.get(name) is None)


def coerce_value(name: str, value: Any, expected: str) -> Any:
    """
    Apply the enumerated coercion rules for one parameter.

    string→int, string→float, string→bool, int→float and integral float→int.
    Anything else of the wrong shape raises InvalidArgumentError.
    """
    if expected == "string":
        if isinstance(value, str):
            return value
    elif expected == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE
    elif expected == "int":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
    elif expected == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                pass
    elif expected == "array":
        if isinstance(value, (list, tuple)):
            return list(value)
    else:
        return value
    raise InvalidArgumentError(
        f"Parameter '{name}' expects {expected}, got {type(value).__name__} {value!r}."
    )


def normalize_parameters(schema: ToolSchema, parameters: dict[str, Any]) -> dict[str, Any]:
    """Coerce declared parameters and fill schema defaults. Unknown keys pass through."""
    normalized = dict(parameters)
    for name, definition in schema.parameters.items():
        if name in normalized and normalized[name] is not None:
            normalized[name] = coerce_value(name, normalized[name], definition.type)
        elif name not in normalized and definition.default is not None:
            normalized[name] = definition.default
    return normalized
