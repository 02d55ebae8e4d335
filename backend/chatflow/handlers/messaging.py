# /chatflow/handlers/messaging.py

import re
import logging
from dataclasses import replace
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from chatflow.engine.context import ExecutionContext, Trigger
from chatflow.engine.registry import NodeConfig, registry
from chatflow.engine.results import NodeResult
from chatflow.models.events import InboundEvent, KeyboardButton, OutboundMessage

# Handlers that talk to the chat user: entry, plain messages, keyboards,
# free-text input, multi-field forms and the terminal node.

logger = logging.getLogger(__name__)


class StartConfig(NodeConfig):
    triggers: List[str] = Field(default_factory=list)

    def matches(self, event: InboundEvent) -> bool:
        """An empty trigger list accepts any event."""
        if not self.triggers:
            return True
        text = (event.input_value or "").strip().lower()
        for trigger in self.triggers:
            trigger = trigger.strip().lower()
            if text == trigger or text.startswith(trigger + " "):
                return True
        return False


@registry.register("start")
class StartHandler:
    config_model = StartConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: StartConfig, trigger: Trigger) -> NodeResult:
        return NodeResult.goto(config.next_node_id)


class Button(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    text: str
    value: Optional[str] = None
    next_node_id: Optional[str] = None

    def matches(self, selection: str) -> bool:
        selection = selection.strip().lower()
        return selection in {self.text.strip().lower(), (self.value or "").strip().lower()}


class MessageConfig(NodeConfig):
    text: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    buttons: List[Button] = Field(default_factory=list)


def build_message(ctx: ExecutionContext, text: Optional[str], buttons: List[Button] = (),
                  media_url: Optional[str] = None, media_type: Optional[str] = None,
                  inline: bool = True) -> OutboundMessage:
    return OutboundMessage(
        chat_id=ctx.chat_id,
        text=ctx.render_text(text) if text else None,
        media_url=ctx.render_text(media_url) if media_url else None,
        media_type=media_type,
        keyboard=[
            KeyboardButton(text=ctx.render_text(button.text), value=button.value or button.text)
            for button in buttons
        ],
        inline=inline,
    )


@registry.register("message")
class MessageHandler:
    config_model = MessageConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: MessageConfig, trigger: Trigger) -> NodeResult:
        message = build_message(ctx, config.text, config.buttons, config.media_url, config.media_type)
        return NodeResult.goto(config.next_node_id, outbound=[message])


class KeyboardConfig(NodeConfig):
    text: str = ""
    buttons: List[Button] = Field(min_length=1)
    inline: bool = True
    variable: Optional[str] = None

    @property
    def routes_by_button(self) -> bool:
        return any(button.next_node_id for button in self.buttons)

    def successors(self) -> List[str]:
        return super().successors() + [button.next_node_id for button in self.buttons if button.next_node_id]


@registry.register("keyboard")
class KeyboardHandler:
    """
    Sends a keyboard. When any button names its own `nextNodeId` the node waits
    for a selection and routes on the chosen button; otherwise it continues
    straight to `nextNodeId`.
    """
    config_model = KeyboardConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: KeyboardConfig, trigger: Trigger) -> NodeResult:
        keyboard = build_message(ctx, config.text, config.buttons, inline=config.inline)

        if not config.routes_by_button:
            return NodeResult.goto(config.next_node_id, outbound=[keyboard])

        if not trigger.is_event:
            return NodeResult.wait_for_input(outbound=[keyboard])

        selection = trigger.input_value or ""
        for button in config.buttons:
            if button.matches(selection):
                patch = {config.variable: button.value or button.text} if config.variable else {}
                return NodeResult.goto(button.next_node_id or config.next_node_id, session_vars=patch)

        logger.info(f"Keyboard node {ctx.node.id} got an unmatched selection, re-sending keyboard")
        return NodeResult.wait_for_input(outbound=[keyboard])


def _compiled_pattern(v: Optional[str]) -> Optional[str]:
    if v:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid validation pattern: {e}")
    return v


class InputConfig(NodeConfig):
    variable: str
    prompt: Optional[str] = None
    validation: Optional[str] = None
    retry_message: Optional[str] = None

    @field_validator("validation")
    @classmethod
    def validation_must_compile(cls, v):
        return _compiled_pattern(v)


@registry.register("input")
class InputHandler:
    config_model = InputConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: InputConfig, trigger: Trigger) -> NodeResult:
        if not trigger.is_event:
            prompt = [build_message(ctx, config.prompt)] if config.prompt else []
            return NodeResult.wait_for_input(outbound=prompt)

        value = trigger.input_value
        if value is None and trigger.event.attachments:
            return NodeResult.goto(config.next_node_id, session_vars={config.variable: trigger.event.attachments})

        if config.validation and not re.fullmatch(config.validation, value or ""):
            retry_text = config.retry_message or config.prompt
            retry = [build_message(ctx, retry_text)] if retry_text else []
            return NodeResult.wait_for_input(outbound=retry)

        return NodeResult.goto(config.next_node_id, session_vars={config.variable: value})


EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


class FormField(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str
    prompt: Optional[str] = Field(default=None, validation_alias=AliasChoices("prompt", "label"))
    required: bool = True
    type: Literal["text", "number", "email"] = "text"
    validation: Optional[str] = None
    retry_message: Optional[str] = None

    @field_validator("validation")
    @classmethod
    def validation_must_compile(cls, v):
        return _compiled_pattern(v)

    def parse(self, value: Optional[str]):
        """Returns the stored value, or raises ValueError when the answer does not fit."""
        value = (value or "").strip()
        if not value:
            raise ValueError(self.name)
        if self.validation and not re.fullmatch(self.validation, value):
            raise ValueError(self.name)
        if self.type == "number":
            number = float(value)
            return int(number) if number.is_integer() else number
        if self.type == "email" and not EMAIL_PATTERN.fullmatch(value):
            raise ValueError(self.name)
        return value


class FormConfig(NodeConfig):
    fields: List[FormField] = Field(min_length=1)
    text: Optional[str] = None
    submit_text: Optional[str] = None
    skip_keyword: str = "skip"
    variable: Optional[str] = None

    @field_validator("fields")
    @classmethod
    def field_names_unique(cls, v):
        names = [f.name for f in v]
        if len(names) != len(set(names)):
            raise ValueError("form field names must be unique")
        return v


@registry.register("form")
class FormHandler:
    """
    Several `input` steps in one node: asks each field in turn and stores the
    answer under the field name. Progress lives in `form_<node>_index`, so
    the form survives restarts between answers. On completion the answers are
    also stored together as a dict in `variable` (default `form_<node>`).
    Optional fields accept the skip keyword and are stored as None.
    """
    config_model = FormConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: FormConfig, trigger: Trigger) -> NodeResult:
        node_id = ctx.node.id
        index_var = f"form_{node_id}_index"
        target = config.variable or f"form_{node_id}"

        if not trigger.is_event:
            intro = [build_message(ctx, config.text)] if config.text else []
            return NodeResult.wait_for_input(
                outbound=intro + self._ask(ctx, config.fields[0]), session_vars={index_var: 0, target: {}},
            )

        index = int(ctx.get(index_var) or 0)
        if index >= len(config.fields):
            index = 0
        field = config.fields[index]
        answer = trigger.input_value
        if not field.required and (answer or "").strip().lower() == config.skip_keyword.lower():
            value = None
        else:
            try:
                value = field.parse(answer)
            except ValueError:
                retry_text = field.retry_message or field.prompt
                return NodeResult.wait_for_input(outbound=[build_message(ctx, retry_text)] if retry_text else [])

        answers = dict(ctx.get(target) or {})
        answers[field.name] = value
        patch = {field.name: value, target: answers}

        if index + 1 < len(config.fields):
            patch[index_var] = index + 1
            return NodeResult.wait_for_input(outbound=self._ask(ctx, config.fields[index + 1]), session_vars=patch)

        patch[index_var] = 0
        logger.info(f"Form node {node_id} completed with {len(answers)} fields")
        outbound = []
        if config.submit_text:
            answered = replace(ctx, session_vars={**ctx.session_vars, **patch})
            outbound.append(build_message(answered, config.submit_text))
        return NodeResult.goto(config.next_node_id, session_vars=patch, outbound=outbound)

    @staticmethod
    def _ask(ctx: ExecutionContext, field: FormField) -> List[OutboundMessage]:
        return [build_message(ctx, field.prompt or f"{field.name}?")]


class EndConfig(NodeConfig):
    text: Optional[str] = None
    complete_group: bool = False


@registry.register("end")
class EndHandler:
    config_model = EndConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: EndConfig, trigger: Trigger) -> NodeResult:
        outbound = [build_message(ctx, config.text)] if config.text else []
        return NodeResult.terminal(outbound=outbound, complete_group=config.complete_group)
