"""
Supervisor tool-call loop.

The front agent hands non-trivial turns to a more capable supervisor model.
:class:`SupervisorLoop` submits the conversation context plus tool schema,
executes any function calls the model asks for, feeds the results back and
repeats until the model answers with plain text.
"""

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import httpx
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field

from .config import (
    GENERIC_FAILURE_MESSAGE,
    HTTP_TIMEOUT,
    OPENAI_API_KEY,
    SUPERVISOR_MAX_ROUNDS,
    SUPERVISOR_MODEL,
    SUPERVISOR_RESPONSES_URL,
)
from .errors import ToolResolutionError

SupervisorToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
BreadcrumbFn = Callable[[str, Any], Any]


class LoopState(str, Enum):
    AWAITING_MODEL = "AWAITING_MODEL"
    RESOLVED = "RESOLVED"


class ToolCall(BaseModel):
    """One function call requested by a model."""

    call_id: str
    name: str
    arguments: Any = None
    correlation_id: Optional[str] = None


class ContextBundle(BaseModel):
    """Everything the supervisor sees for one request."""

    instructions: str
    history: List[Dict[str, Any]] = Field(default_factory=list)
    relevant_context: str = ""

    @classmethod
    def from_history(
        cls, instructions: str, history: Iterable[Dict[str, Any]], relevant_context: str = ""
    ) -> "ContextBundle":
        """Keep only message-type entries of ``history``."""
        messages = [entry for entry in history if entry.get("type") == "message"]
        return cls(instructions=instructions, history=messages, relevant_context=relevant_context)

    def to_input(self) -> List[Dict[str, Any]]:
        return [
            {"type": "message", "role": "system", "content": self.instructions},
            {
                "type": "message",
                "role": "user",
                "content": (
                    "==== Conversation History ====\n"
                    f"{json.dumps(self.history, indent=2, ensure_ascii=False)}\n\n"
                    "==== Relevant Context From Last User Message ===\n"
                    f"{self.relevant_context}\n"
                ),
            },
        ]


class SupervisorResult(BaseModel):
    text: Optional[str] = None
    error: Optional[str] = None
    rounds: int = 0
    tool_calls: List[ToolCall] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


# ================================================================
# Resolvers
# ================================================================


class ResponsesClient(ABC):
    """Submits a request body and returns the response as a dict.

    A dict with an ``error`` key is an error marker; a dict with ``output`` is
    the list of output items.
    """

    @abstractmethod
    async def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        ...


class OpenAIResponsesClient(ResponsesClient):
    """Talks to the Responses API directly."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, logger=None):
        self.client = client or AsyncOpenAI(api_key=OPENAI_API_KEY)
        self.logger = logger or logging.getLogger("OpenAIResponsesClient")

    async def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.responses.create(**body)
        except OpenAIError as exc:
            raise ToolResolutionError(f"Responses API call failed: {exc}") from exc
        return response.model_dump()


class HttpResponsesClient(ResponsesClient):
    """POSTs bodies to a responses proxy endpoint (see ``server.py``)."""

    def __init__(
        self,
        url: str = SUPERVISOR_RESPONSES_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger=None,
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport
        self.logger = logger or logging.getLogger("HttpResponsesClient")

    async def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=body)
        except httpx.HTTPError as exc:
            raise ToolResolutionError(f"Responses proxy unreachable: {exc}") from exc

        if response.status_code >= 400:
            self.logger.warning(
                f"Responses proxy returned {response.status_code}: {response.text[:500]}"
            )
            return {"error": GENERIC_FAILURE_MESSAGE}
        try:
            return response.json()
        except ValueError as exc:
            raise ToolResolutionError(f"Responses proxy sent invalid JSON: {exc}") from exc


class ScriptedResponsesClient(ResponsesClient):
    """Local resolver that replays canned responses in order."""

    def __init__(self, responses: Sequence[Dict[str, Any]]):
        self._responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    async def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.requests.append(json.loads(json.dumps(body)))
        if not self._responses:
            raise ToolResolutionError("Scripted resolver has no responses left")
        return self._responses.pop(0)


# ================================================================
# Tool resolution
# ================================================================


class ToolResolver:
    """Maps supervisor tool names to handlers."""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger("ToolResolver")
        self._handlers: Dict[str, SupervisorToolHandler] = {}
        self._schemas: Dict[str, Dict[str, Any]] = {}

    def register(
        self,
        name: str,
        handler: SupervisorToolHandler,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._handlers[name] = handler
        self._schemas[name] = {
            "type": "function",
            "name": name,
            "description": description,
            "parameters": parameters
            or {"type": "object", "properties": {}, "required": [], "additionalProperties": False},
        }

    @property
    def names(self) -> List[str]:
        return list(self._handlers)

    def schema(self) -> List[Dict[str, Any]]:
        return list(self._schemas.values())

    async def resolve(self, name: str, arguments: Dict[str, Any]) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            # Unmapped tools succeed generically so the conversation keeps moving.
            self.logger.warning(f"No handler for supervisor tool '{name}'")
            return {"result": True}
        try:
            return await handler(arguments)
        except Exception as exc:
            raise ToolResolutionError(f"Tool '{name}' failed: {exc}") from exc


def knowledge_lookup_tool(entries: Sequence[Dict[str, Any]]) -> SupervisorToolHandler:
    """Handler returning the entries whose topic or name matches ``topic``."""

    async def lookup(arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        topic = str(arguments.get("topic") or "").strip().lower()
        if not topic:
            return list(entries)
        return [
            entry
            for entry in entries
            if topic in str(entry.get("topic", "")).lower()
            or topic in str(entry.get("name", "")).lower()
        ]

    return lookup


# ================================================================
# Loop
# ================================================================


def _output_text(output_items: List[Dict[str, Any]]) -> str:
    messages = [item for item in output_items if item.get("type") == "message"]
    return "\n".join(
        "".join(
            part.get("text", "")
            for part in (message.get("content") or [])
            if part.get("type") == "output_text"
        )
        for message in messages
    )


class SupervisorLoop:
    """Runs the supervisor until it produces a final textual answer."""

    def __init__(
        self,
        client: ResponsesClient,
        tools: Optional[ToolResolver] = None,
        model: str = SUPERVISOR_MODEL,
        max_rounds: int = SUPERVISOR_MAX_ROUNDS,
        logger=None,
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.client = client
        self.tools = tools or ToolResolver()
        self.model = model
        self.max_rounds = max_rounds
        self.logger = logger or logging.getLogger("SupervisorLoop")
        self.state = LoopState.RESOLVED

    def _fail(self, reason: str, rounds: int, calls: List[ToolCall]) -> SupervisorResult:
        self.logger.error(f"Supervisor loop failed after {rounds} round(s): {reason}")
        self.state = LoopState.RESOLVED
        return SupervisorResult(error=GENERIC_FAILURE_MESSAGE, rounds=rounds, tool_calls=calls)

    async def run(self, bundle: ContextBundle, breadcrumb: Optional[BreadcrumbFn] = None) -> SupervisorResult:
        """
        Resolve one request.

        Args:
            bundle: Instructions, message history and the latest user context
            breadcrumb: Optional ``(title, data)`` sink for tool observability

        Returns:
            SupervisorResult with either ``text`` or the generic ``error``
        """
        body: Dict[str, Any] = {
            "model": self.model,
            "input": bundle.to_input(),
            "tools": self.tools.schema(),
            "parallel_tool_calls": False,
        }
        calls_made: List[ToolCall] = []
        self.state = LoopState.AWAITING_MODEL

        for round_number in range(1, self.max_rounds + 1):
            self.logger.info(f"Supervisor round {round_number}/{self.max_rounds}")
            try:
                response = await self.client.create(body)
            except ToolResolutionError as exc:
                return self._fail(str(exc), round_number, calls_made)

            if not isinstance(response, dict) or response.get("error"):
                error = response.get("error") if isinstance(response, dict) else response
                return self._fail(f"error marker: {error}", round_number, calls_made)

            output_items: List[Dict[str, Any]] = response.get("output") or []
            function_calls = [item for item in output_items if item.get("type") == "function_call"]

            if not function_calls:
                final_text = _output_text(output_items)
                self.logger.info(f"Supervisor resolved in {round_number} round(s)")
                self.state = LoopState.RESOLVED
                return SupervisorResult(text=final_text, rounds=round_number, tool_calls=calls_made)

            # Executed one at a time, in the order the model returned them.
            for item in function_calls:
                name = item.get("name") or "unknown"
                arguments_str = item.get("arguments") or "{}"
                call = ToolCall(
                    call_id=item.get("call_id") or item.get("id") or "",
                    name=name,
                    correlation_id=response.get("id"),
                )
                try:
                    call.arguments = json.loads(arguments_str)
                    result = await self.tools.resolve(name, call.arguments)
                except json.JSONDecodeError as exc:
                    self.logger.warning(f"Bad arguments for '{name}': {exc}")
                    result = {"ok": False, "error": f"Could not parse arguments: {exc}"}
                except ToolResolutionError as exc:
                    return self._fail(str(exc), round_number, calls_made)
                calls_made.append(call)

                self.logger.info(f"Supervisor tool call: {name} with args: {call.arguments}")
                if breadcrumb:
                    breadcrumb(f"[supervisorAgent] function call: {name}", call.arguments)
                    breadcrumb(f"[supervisorAgent] function call result: {name}", result)

                body["input"].extend(
                    [
                        {
                            "type": "function_call",
                            "call_id": call.call_id,
                            "name": name,
                            "arguments": arguments_str,
                        },
                        {
                            "type": "function_call_output",
                            "call_id": call.call_id,
                            "output": json.dumps(result, default=str),
                        },
                    ]
                )

        return self._fail(
            f"no final answer within {self.max_rounds} rounds", self.max_rounds, calls_made
        )
