# /chatflow/handlers/external.py

import time
import asyncio
import logging
from typing import Any, Dict, Literal, Optional, Tuple

import httpx
import tenacity
from pydantic import Field

from chatflow.engine import templating
from chatflow.engine.context import ExecutionContext, Trigger
from chatflow.engine.errors import ExternalCallError, NodeConfigurationError
from chatflow.engine.registry import NodeConfig, registry
from chatflow.engine.results import NodeResult
from chatflow.utils.metrics import external_calls_counter

# Webhook, api and integration nodes. Every call is bounded by a timeout and a
# fixed retry budget; failures surface as ExternalCallError carrying the
# result variables so the engine can take the node's error edge.

logger = logging.getLogger(__name__)

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]


class ExternalCallConfig(NodeConfig):
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExternalCallError) and exc.retryable


async def perform_request(ctx: ExecutionContext, config: ExternalCallConfig, method: str, url: str,
                          **request_kwargs) -> Tuple[httpx.Response, float]:
    """
    Sends one request with timeout and bounded retries.
    Returns the response and the total duration in milliseconds.
    """
    settings = ctx.settings
    timeout = config.timeout_seconds or settings.external_call_timeout_seconds
    retries = settings.external_call_max_retries if config.max_retries is None else config.max_retries
    backoff = settings.external_call_backoff_seconds

    retrying = tenacity.AsyncRetrying(
        retry=tenacity.retry_if_exception(_is_retryable),
        stop=tenacity.stop_after_attempt(retries + 1),
        wait=tenacity.wait_exponential(multiplier=backoff, max=backoff * 8) if backoff > 0 else tenacity.wait_none(),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    started = time.monotonic()
    async for attempt in retrying:
        with attempt:
            try:
                response = await asyncio.wait_for(
                    ctx.services.http_client.request(method, url, **request_kwargs), timeout=timeout
                )
            except asyncio.TimeoutError:
                raise ExternalCallError(f"{method} {url} timed out after {timeout}s", error_type="timeout")
            except httpx.HTTPError as e:
                raise ExternalCallError(f"{method} {url} failed: {e}", error_type="request_error")
            if response.status_code >= 500:
                raise ExternalCallError(
                    f"{method} {url} returned {response.status_code}",
                    error_type="http_error", status_code=response.status_code,
                )
            if response.status_code >= 400:
                raise ExternalCallError(
                    f"{method} {url} returned {response.status_code}",
                    error_type="http_error", status_code=response.status_code, retryable=False,
                )
    return response, round((time.monotonic() - started) * 1000, 1)


def parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def call_and_record(ctx: ExecutionContext, config: ExternalCallConfig, method: str, url: str,
                          **request_kwargs) -> Tuple[httpx.Response, Dict[str, Any]]:
    """Runs `perform_request` and builds the `<kind>_<node>_*` result variables."""
    kind = ctx.node.kind
    prefix = f"{kind}_{ctx.node.id}"
    started = time.monotonic()
    try:
        response, duration = await perform_request(ctx, config, method, url, **request_kwargs)
    except ExternalCallError as e:
        external_calls_counter.labels(kind=kind, outcome=e.error_type).inc()
        logger.warning(f"{kind} node {ctx.node.id} call failed: {e.message}")
        e.node_id = ctx.node.id
        e.variables = {
            f"{prefix}_status": e.status_code,
            f"{prefix}_duration": round((time.monotonic() - started) * 1000, 1),
            f"{prefix}_error_type": e.error_type,
            f"{prefix}_error_message": e.message,
        }
        raise

    external_calls_counter.labels(kind=kind, outcome="success").inc()
    variables = {
        f"{prefix}_status": response.status_code,
        f"{prefix}_response": parse_body(response),
        f"{prefix}_duration": duration,
    }
    return response, variables


class WebhookConfig(ExternalCallConfig):
    url: str
    method: HttpMethod = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    include_variables: bool = False
    response_variable: Optional[str] = None


@registry.register("webhook")
class WebhookHandler:
    config_model = WebhookConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: WebhookConfig, trigger: Trigger) -> NodeResult:
        url = ctx.render_text(config.url)
        kwargs: Dict[str, Any] = {"headers": ctx.render(config.headers)}
        if config.method != "GET":
            body = ctx.render(config.body) if config.body is not None else {}
            if config.include_variables and isinstance(body, dict):
                body = {**body, "variables": dict(ctx.variables), "chat_id": ctx.chat_id, "user_id": ctx.user_id}
            kwargs["json"] = body

        response, variables = await call_and_record(ctx, config, config.method, url, **kwargs)
        if config.response_variable:
            variables[config.response_variable] = parse_body(response)
        return NodeResult.goto(config.next_node_id, session_vars=variables)


class ApiConfig(ExternalCallConfig):
    url: str
    method: HttpMethod = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    response_mapping: Dict[str, str] = Field(default_factory=dict)  # variable -> dotted response path


@registry.register("api")
class ApiHandler:
    config_model = ApiConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: ApiConfig, trigger: Trigger) -> NodeResult:
        kwargs: Dict[str, Any] = {"headers": ctx.render(config.headers), "params": ctx.render(config.params)}
        if config.body is not None and config.method != "GET":
            kwargs["json"] = ctx.render(config.body)

        response, variables = await call_and_record(ctx, config, config.method, ctx.render_text(config.url), **kwargs)
        payload = parse_body(response)
        for variable, path in config.response_mapping.items():
            if isinstance(payload, (dict, list)):
                variables[variable] = templating.lookup({"response": payload}, f"response.{path}" if path else "response")
            else:
                variables[variable] = payload if not path else None
        return NodeResult.goto(config.next_node_id, session_vars=variables)


class IntegrationConfig(ExternalCallConfig):
    service: str
    action: str
    config: Dict[str, Any] = Field(default_factory=dict)
    result_variable: Optional[str] = None


@registry.register("integration")
class IntegrationHandler:
    """Posts `{service, action, config}` to the endpoint configured for the service."""
    config_model = IntegrationConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: IntegrationConfig, trigger: Trigger) -> NodeResult:
        endpoint = ctx.settings.integration_endpoints.get(config.service)
        if not endpoint:
            raise NodeConfigurationError(
                f"No endpoint is configured for integration service '{config.service}'", node_id=ctx.node.id
            )
        body = {
            "service": config.service,
            "action": config.action,
            "config": ctx.render(config.config),
            "owner_id": ctx.owner_id,
            "chat_id": ctx.chat_id,
            "user_id": ctx.user_id,
        }
        response, variables = await call_and_record(ctx, config, "POST", endpoint, json=body)
        if config.result_variable:
            variables[config.result_variable] = parse_body(response)
        return NodeResult.goto(config.next_node_id, session_vars=variables)
