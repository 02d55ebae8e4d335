# /chatflow/handlers/logic.py

import re
import json
import math
import logging
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from chatflow.engine import expressions
from chatflow.engine.context import ExecutionContext, Trigger
from chatflow.engine.errors import LoopLimitExceededError, NodeExecutionError
from chatflow.engine.registry import NodeConfig, registry
from chatflow.engine.results import Branch, NodeResult

logger = logging.getLogger(__name__)

Operator = Literal[
    "equals", "not_equals", "exists", "not_exists", "contains", "not_contains",
    "starts_with", "ends_with", "greater_than", "less_than", "regex",
]


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(operator: str, actual: Any, expected: Any) -> bool:
    """
    Compares a variable value against the configured value.

    Equality is exact on the text form; contains/starts_with/ends_with are
    case-insensitive. `contains` on a list checks membership.
    """
    if operator == "exists":
        return not _is_empty(actual)
    if operator == "not_exists":
        return _is_empty(actual)

    if operator in ("equals", "not_equals"):
        if _number(actual) is not None and _number(expected) is not None:
            same = _number(actual) == _number(expected)
        else:
            same = actual is not None and _text(actual) == _text(expected)
        return same if operator == "equals" else not same

    if operator in ("contains", "not_contains"):
        if isinstance(actual, (list, tuple, set)):
            found = any(_text(item).lower() == _text(expected).lower() for item in actual)
        else:
            found = actual is not None and _text(expected).lower() in _text(actual).lower()
        return found if operator == "contains" else not found

    if operator == "starts_with":
        return actual is not None and _text(actual).lower().startswith(_text(expected).lower())
    if operator == "ends_with":
        return actual is not None and _text(actual).lower().endswith(_text(expected).lower())

    if operator in ("greater_than", "less_than"):
        left, right = _number(actual), _number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right

    if operator == "regex":
        try:
            return actual is not None and re.search(_text(expected), _text(actual)) is not None
        except re.error as e:
            raise NodeExecutionError(f"Invalid regex in condition: {e}")

    raise NodeExecutionError(f"Unknown condition operator '{operator}'")


class ConditionRule(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    variable: Optional[str] = None
    source: Literal["variable", "input"] = "variable"
    operator: Operator = "equals"
    value: Any = None

    @model_validator(mode="after")
    def variable_required_for_variable_source(self):
        if self.source == "variable" and not self.variable:
            raise ValueError("'variable' is required when source is 'variable'")
        return self

    def resolve(self, ctx: ExecutionContext, trigger: Trigger) -> bool:
        if self.source == "input":
            actual = trigger.input_value if trigger.is_event else ctx.get("last_input")
        else:
            actual = ctx.get(self.variable)
        return evaluate_condition(self.operator, actual, ctx.render(self.value))


class ConditionConfig(NodeConfig, ConditionRule):
    true_node_id: Optional[str] = None
    false_node_id: Optional[str] = None

    def successors(self) -> List[str]:
        return super().successors() + [n for n in (self.true_node_id, self.false_node_id) if n]


@registry.register("condition")
class ConditionHandler:
    config_model = ConditionConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: ConditionConfig, trigger: Trigger) -> NodeResult:
        outcome = config.resolve(ctx, trigger)
        logger.debug(f"Condition node {ctx.node.id}: {config.operator} -> {outcome}")
        return NodeResult(
            transition=Branch(
                outcome,
                config.true_node_id or config.next_node_id,
                config.false_node_id or config.next_node_id,
            )
        )


class RandomOption(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    value: Any = None
    label: Optional[str] = None
    weight: float = Field(default=1, ge=0)
    next_node_id: Optional[str] = None


class RandomConfig(NodeConfig):
    options: List[RandomOption] = Field(min_length=1)
    variable: str = "random_result"

    @model_validator(mode="after")
    def weights_must_not_all_be_zero(self):
        if not any(option.weight > 0 for option in self.options):
            raise ValueError("at least one option needs a positive weight")
        return self

    def successors(self) -> List[str]:
        return super().successors() + [o.next_node_id for o in self.options if o.next_node_id]


@registry.register("random")
class RandomHandler:
    config_model = RandomConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: RandomConfig, trigger: Trigger) -> NodeResult:
        weights = [option.weight for option in config.options]
        index = ctx.services.rng.choices(range(len(config.options)), weights=weights, k=1)[0]
        chosen = config.options[index]
        selected = chosen.value if chosen.value is not None else (chosen.label or index)
        return NodeResult.goto(
            chosen.next_node_id or config.next_node_id,
            session_vars={config.variable: selected, f"{config.variable}_index": index},
        )


class VariableConfig(NodeConfig):
    name: str
    operation: Literal["set", "append", "prepend", "increment", "decrement"] = "set"
    value: Any = None
    scope: Literal["session", "user", "global", "group"] = "session"


def _as_number(value: Any, name: str):
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise NodeExecutionError(f"Variable '{name}' value '{value}' is not a number")
    return int(number) if number.is_integer() else number


def apply_operation(operation: str, current: Any, value: Any, name: str) -> Any:
    if operation == "set":
        return value
    if operation in ("append", "prepend"):
        if isinstance(current, list):
            return current + [value] if operation == "append" else [value] + current
        current, value = _text(current), _text(value)
        return current + value if operation == "append" else value + current
    step = _as_number(1 if value is None else value, name)
    base = _as_number(current, name)
    return base + step if operation == "increment" else base - step


@registry.register("variable")
class VariableHandler:
    config_model = VariableConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: VariableConfig, trigger: Trigger) -> NodeResult:
        scopes = {
            "session": ctx.session_vars,
            "user": ctx.user_vars,
            "global": ctx.global_vars,
            "group": ctx.group_vars,
        }
        if config.scope == "group" and ctx.group is None:
            raise NodeExecutionError("Group scope used outside a group session", node_id=ctx.node.id)
        if config.scope == "user" and ctx.user_id is None:
            raise NodeExecutionError("User scope used outside an individual session", node_id=ctx.node.id)

        current = scopes[config.scope].get(config.name)
        new_value = apply_operation(config.operation, current, ctx.render(config.value), config.name)
        return NodeResult.goto(config.next_node_id, **{f"{config.scope}_vars": {config.name: new_value}})


class LoopConfig(NodeConfig):
    mode: Literal["count", "condition", "array"] = "count"
    body_node_id: str
    exit_node_id: Optional[str] = None
    count: Any = None
    array_variable: Optional[str] = None
    item_variable: Optional[str] = None
    condition: Optional[ConditionRule] = None
    max_iterations: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def mode_settings_present(self):
        if self.mode == "count" and self.count is None:
            raise ValueError("'count' is required in count mode")
        if self.mode == "array" and not self.array_variable:
            raise ValueError("'arrayVariable' is required in array mode")
        if self.mode == "condition" and self.condition is None:
            raise ValueError("'condition' is required in condition mode")
        return self

    def successors(self) -> List[str]:
        return super().successors() + [n for n in (self.body_node_id, self.exit_node_id) if n]


@registry.register("loop")
class LoopHandler:
    """
    Each visit either enters the body once more or leaves through the exit
    edge. The iteration index is kept in `loop_<node>_index`, so a body that
    waits for input continues the same loop on the next event.
    """
    config_model = LoopConfig
    config_version = 1
    iterates = True

    async def execute(self, ctx: ExecutionContext, config: LoopConfig, trigger: Trigger) -> NodeResult:
        node_id = ctx.node.id
        index_var = f"loop_{node_id}_index"
        index = int(ctx.get(index_var) or 0)
        exit_node = config.exit_node_id or config.next_node_id
        patch = {}

        if config.mode == "count":
            total = _as_number(ctx.render(config.count), "count")
            enter = index < total
        elif config.mode == "array":
            items = ctx.get(config.array_variable)
            if items is None:
                items = []
            if not isinstance(items, list):
                raise NodeExecutionError(f"Loop variable '{config.array_variable}' is not a list", node_id=node_id)
            enter = index < len(items)
            if enter:
                patch[config.item_variable or f"loop_{node_id}_item"] = items[index]
        else:
            enter = config.condition.resolve(ctx, trigger)

        if not enter:
            return NodeResult.goto(exit_node, session_vars={index_var: 0})

        limit = ctx.settings.max_loop_iterations
        if config.max_iterations:
            limit = min(limit, config.max_iterations)
        ctx.loop_iterations[node_id] = ctx.loop_iterations.get(node_id, 0) + 1
        if ctx.loop_iterations[node_id] > limit:
            raise LoopLimitExceededError(
                f"Loop node '{node_id}' exceeded {limit} iterations in one event", node_id=node_id
            )

        patch[index_var] = index + 1
        patch[f"loop_{node_id}_iteration"] = index + 1
        return NodeResult.goto(config.body_node_id, session_vars=patch)


def _numeric(value: Any) -> Any:
    """Numeric-looking strings (typed input) become numbers; anything else is left alone."""
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return value
        return int(number) if number.is_integer() else number
    return value


def _checked_expression(v: str) -> str:
    try:
        expressions.check_syntax(v)
    except expressions.ExpressionError as e:
        raise ValueError(str(e))
    return v


class CalculatorConfig(NodeConfig):
    expression: str
    variable: str = Field(default="calculation_result", validation_alias=AliasChoices("variable", "variableName", "variable_name"))
    precision: int = Field(default=2, ge=0, le=10)
    format: Literal["number", "currency", "percentage"] = "number"
    currency: str = ""

    @field_validator("expression")
    @classmethod
    def expression_must_parse(cls, v):
        if "{" in v:
            # Placeholders are substituted before parsing.
            return v
        return _checked_expression(v)


def format_number(value: float, fmt: str, precision: int, currency: str = "") -> Any:
    if fmt == "percentage":
        return f"{value * 100:.{precision}f}%"
    if fmt == "currency":
        return f"{currency}{value:,.{precision}f}"
    rounded = round(value, precision)
    return int(rounded) if float(rounded).is_integer() else rounded


@registry.register("calculator")
class CalculatorHandler:
    """
    Evaluates an arithmetic expression over the flow variables and stores the
    formatted result. `{placeholders}` are substituted first, so both
    `price * qty` and `{price} * {qty}` work.
    """
    config_model = CalculatorConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: CalculatorConfig, trigger: Trigger) -> NodeResult:
        expression = ctx.render_text(config.expression)
        names = {name: _numeric(value) for name, value in ctx.variables.items()}
        try:
            value = expressions.evaluate(expression, names)
        except expressions.ExpressionError as e:
            raise NodeExecutionError(f"Calculation '{expression}' failed: {e}", node_id=ctx.node.id)

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise NodeExecutionError(f"Calculation '{expression}' did not produce a number", node_id=ctx.node.id)
        if isinstance(value, float) and not math.isfinite(value):
            raise NodeExecutionError(f"Calculation '{expression}' produced {value}", node_id=ctx.node.id)

        result = format_number(value, config.format, config.precision, config.currency)
        logger.debug(f"Calculator node {ctx.node.id}: {expression} = {result}")
        return NodeResult.goto(config.next_node_id, session_vars={config.variable: result})


class TransformConfig(NodeConfig):
    expression: str
    variable: str = Field(default="transform_result", validation_alias=AliasChoices("variable", "variableName", "variable_name"))
    input_variable: Optional[str] = None

    @field_validator("expression")
    @classmethod
    def expression_must_parse(cls, v):
        return _checked_expression(v)


@registry.register("transform")
class TransformHandler:
    """
    Reshapes data with an expression. In scope are every flow variable by
    name plus `variables`, `input` (the `inputVariable` value, JSON decoded
    when it is a JSON string), `user` and `node`. The result is stored as is,
    so lists and dicts stay structured.
    """
    config_model = TransformConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: TransformConfig, trigger: Trigger) -> NodeResult:
        variables = dict(ctx.variables)
        value = ctx.get(config.input_variable) if config.input_variable else None
        if isinstance(value, str) and value.strip()[:1] in ("{", "["):
            try:
                value = json.loads(value)
            except ValueError:
                logger.debug(f"Transform node {ctx.node.id}: input is not JSON, using the raw text")
        names = dict(variables)
        names.update(
            variables=variables,
            input=value,
            user={"id": ctx.user_id, "chat_id": ctx.chat_id},
            node={"id": ctx.node.id, "kind": ctx.node.kind},
            message=trigger.input_value if trigger.is_event else ctx.get("last_input"),
        )
        try:
            result = expressions.evaluate(config.expression, names)
        except expressions.ExpressionError as e:
            raise NodeExecutionError(f"Transform failed: {e}", node_id=ctx.node.id)
        return NodeResult.goto(config.next_node_id, session_vars={config.variable: result})
