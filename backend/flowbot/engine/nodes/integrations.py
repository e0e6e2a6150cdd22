# /flowbot/engine/nodes/integrations.py

import logging
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI

from flowbot.config.settings import settings
from flowbot.engine.nodes.base import (
    MAX_TEXT_LENGTH, NodeExecutor, coalesce, is_valid_url, render, render_all, text_message, validation_result,
)
from flowbot.engine.variables import as_variable, has_variables
from flowbot.models.execution import ExecutionContext, NodeExecutionResult, NodeValidation
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.metrics import ai_requests_counter, http_node_requests_counter

logger = logging.getLogger(__name__)

HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
DEFAULT_HTTP_TIMEOUT_MS = 30000
AI_HISTORY_MESSAGES = 10
DEFAULT_MAX_TOKENS = 150
DEFAULT_TEMPERATURE = 0.7


class AIAgentNode(NodeExecutor):
    """
    Answers the contact with an OpenAI chat completion.

    The request is built from the node's system prompt and instructions, the
    last few turns of the conversation and the user prompt (the contact's
    last message when no prompt is configured). The answer is sent as a text
    message and optionally stored in `save_as`.
    """

    node_type = "ai_agent"

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self._client = client
        self.breaker = CircuitBreaker("openai")

    @property
    def client(self) -> Optional[AsyncOpenAI]:
        if self._client is None and settings.openai_api_key:
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    def _build_messages(self, context: ExecutionContext, data: Dict[str, Any]) -> List[Dict[str, str]]:
        messages = []
        system_parts = [
            render(context, part)
            for part in (coalesce(data, "systemPrompt", "system_prompt"), coalesce(data, "instructions"))
            if part
        ]
        if system_parts:
            messages.append({"role": "system", "content": "\n\n".join(system_parts)})

        if data.get("includeHistory", data.get("include_history", True)):
            for entry in context.conversation_history[-AI_HISTORY_MESSAGES:]:
                role = "assistant" if entry.get("role") == "assistant" else "user"
                messages.append({"role": role, "content": entry.get("content", "")})

        prompt = coalesce(data, "prompt", "userPrompt")
        user_content = render(context, prompt) if prompt else context.reply_text
        if user_content:
            messages.append({"role": "user", "content": user_content})
        return messages

    async def _complete(self, model: str, messages: List[Dict[str, str]], max_tokens: int, temperature: float) -> str:
        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return (response.choices[0].message.content or "").strip()

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        data = node.data
        model = coalesce(data, "model", default=settings.openai_model)
        save_as = coalesce(data, "saveAs", "save_as")
        fallback = coalesce(data, "fallbackMessage", "fallback_message")
        next_node_id = self.default_target(context, node)

        messages = self._build_messages(context, data)
        if not any(message["role"] == "user" for message in messages):
            return NodeExecutionResult.failure("AI agent has nothing to answer: no prompt and no incoming message")

        answer = None
        if self.client is None:
            logger.warning(f"AI agent node '{node.id}' skipped: OPENAI_API_KEY is not configured")
        else:
            try:
                answer = await self.breaker.call(
                    self._complete,
                    model,
                    messages,
                    int(coalesce(data, "maxTokens", "max_tokens", default=DEFAULT_MAX_TOKENS)),
                    float(coalesce(data, "temperature", default=DEFAULT_TEMPERATURE)),
                )
                ai_requests_counter.labels(model=model, status="success").inc()
            except Exception as e:
                ai_requests_counter.labels(model=model, status="error").inc()
                logger.error(f"AI agent node '{node.id}' failed: {e}")

        if not answer:
            if not fallback:
                return NodeExecutionResult.failure("AI agent produced no answer", error_code="AI_ERROR")
            return NodeExecutionResult(messages=[text_message(render(context, fallback))], next_node_id=next_node_id)

        output = {save_as: answer} if save_as else {}
        send = data.get("sendResponse", data.get("send_response", True))
        outgoing = [text_message(answer[:MAX_TEXT_LENGTH])] if send else []
        return NodeExecutionResult(messages=outgoing, output=output, next_node_id=next_node_id)

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors = []
        data = node.data
        if not coalesce(data, "prompt", "userPrompt", "systemPrompt", "system_prompt"):
            errors.append("AI agent needs a prompt or a system prompt")
        try:
            max_tokens = int(coalesce(data, "maxTokens", "max_tokens", default=DEFAULT_MAX_TOKENS))
            if not 1 <= max_tokens <= 4096:
                errors.append("maxTokens must be between 1 and 4096")
        except (TypeError, ValueError):
            errors.append("maxTokens must be a number")
        try:
            temperature = float(coalesce(data, "temperature", default=DEFAULT_TEMPERATURE))
            if not 0 <= temperature <= 2:
                errors.append("temperature must be between 0 and 2")
        except (TypeError, ValueError):
            errors.append("temperature must be a number")
        return validation_result(errors)


class HttpRequestNode(NodeExecutor):
    """Calls an external API and stores the response in a variable."""

    node_type = "http"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    async def _request(self, method: str, url: str, headers: Dict[str, str], body: Any, timeout: float) -> httpx.Response:
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": timeout}
        if body is not None and method != "GET":
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, **kwargs)

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        data = node.data
        method = str(coalesce(data, "method", default="GET")).upper()
        url = render(context, coalesce(data, "url"))
        headers = render_all(context, data.get("headers") or {})
        body = render_all(context, data.get("body"))
        timeout_ms = int(coalesce(data, "timeout", default=DEFAULT_HTTP_TIMEOUT_MS))
        save_as = coalesce(data, "saveAs", "save_as")

        on_error = data.get("onError") or {}
        continue_on_error = on_error.get("continueOnError", data.get("continue_on_error", False))
        error_next = coalesce(on_error, "errorNextNodeId") or coalesce(data, "error_next_node_id")
        next_node_id = coalesce(data, "nextNodeId", "next_node_id") or self.default_target(context, node)

        output: Dict[str, str] = {}
        try:
            response = await self._request(method, url, headers, body, timeout_ms / 1000)
            http_node_requests_counter.labels(method=method, status=str(response.status_code)).inc()
            if "application/json" in response.headers.get("content-type", ""):
                payload = response.json()
            else:
                payload = response.text

            output["http_status"] = str(response.status_code)
            if save_as:
                output[save_as] = as_variable(payload)
            response.raise_for_status()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"HTTP node '{node.id}' {method} {url} failed: {e}")
            if isinstance(e, httpx.RequestError):
                http_node_requests_counter.labels(method=method, status="error").inc()
            if not continue_on_error:
                return NodeExecutionResult.failure(f"HTTP request failed: {e}", error_code="HTTP_ERROR")
            output.update({"http_error": "true", "http_error_message": str(e)})
            return NodeExecutionResult(output=output, next_node_id=error_next or next_node_id, routed=True)

        return NodeExecutionResult(output=output, next_node_id=next_node_id, routed=True)

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        data = node.data
        method = str(coalesce(data, "method", default="")).upper()
        if not method:
            errors.append("HTTP method is required")
        elif method not in HTTP_METHODS:
            errors.append(f"Unsupported HTTP method '{method}'")

        url = coalesce(data, "url")
        if not url:
            errors.append("HTTP url is required")
        elif not url.startswith(("http://", "https://")):
            errors.append("HTTP url must start with http:// or https://")
        elif not has_variables(url) and not is_valid_url(url):
            errors.append(f"Invalid HTTP url '{url}'")

        timeout = data.get("timeout")
        if timeout is not None:
            try:
                if int(timeout) < 1000:
                    errors.append("timeout must be at least 1000 ms")
            except (TypeError, ValueError):
                errors.append("timeout must be a number of milliseconds")

        error_next = coalesce(data.get("onError") or {}, "errorNextNodeId") or coalesce(data, "error_next_node_id")
        if error_next and graph is not None and error_next not in graph:
            errors.append(f"Error route target '{error_next}' does not exist")
        if not edges and not coalesce(data, "nextNodeId", "next_node_id"):
            warnings.append("HTTP node has no outgoing connection")
        return validation_result(errors, warnings)
