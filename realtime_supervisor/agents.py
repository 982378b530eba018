"""
Agent capability sets.

An :class:`AgentDefinition` names the instructions, tools, guardrails and
handoff targets of one conversational agent. An :class:`AgentRegistry` holds an
ordered set of them and answers which handoffs are allowed.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from .config import COMPANY_NAME, GUARDRAIL_MODEL, OPENAI_API_KEY

HANDOFF_TOOL_PREFIX = "transfer_to_"


# ================================================================
# Tools
# ================================================================


@dataclass
class ToolContext:
    """What a tool handler may look at while it runs."""

    agent_name: str
    history: List[Dict[str, Any]]
    add_breadcrumb: Callable[..., Any]


ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class FunctionTool:
    """A function the realtime model may call."""

    name: str
    description: str
    handler: ToolHandler
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def spec(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def handoff_tool_name(agent_name: str) -> str:
    return f"{HANDOFF_TOOL_PREFIX}{agent_name}"


def handoff_target(tool_name: str) -> Optional[str]:
    """Agent name addressed by a handoff tool, or None for ordinary tools."""
    if tool_name.startswith(HANDOFF_TOOL_PREFIX):
        return tool_name[len(HANDOFF_TOOL_PREFIX):] or None
    return None


# ================================================================
# Guardrails
# ================================================================


class GuardrailVerdict(str, Enum):
    PASS = "PASS"
    FLAG = "FLAG"


@dataclass(frozen=True)
class GuardrailResult:
    guardrail_name: str
    verdict: GuardrailVerdict
    reason: str = ""
    category: str = "NONE"
    item_id: Optional[str] = None

    @property
    def flagged(self) -> bool:
        return self.verdict == GuardrailVerdict.FLAG


class Guardrail(ABC):
    """Post-hoc check over assistant output."""

    name: str = "guardrail"

    @abstractmethod
    async def check(self, text: str, company_name: str) -> GuardrailResult:
        ...

    def _result(self, verdict: GuardrailVerdict, reason: str = "", category: str = "NONE") -> GuardrailResult:
        return GuardrailResult(self.name, verdict, reason, category)


class BlocklistGuardrail(Guardrail):
    """Flags output containing any of a fixed set of terms."""

    def __init__(self, terms: Iterable[str], name: str = "moderation_guardrail", category: str = "OFFENSIVE"):
        self.name = name
        self.category = category
        self.terms = tuple(t.lower() for t in terms if t)

    async def check(self, text: str, company_name: str) -> GuardrailResult:
        lowered = (text or "").lower()
        hits = [term for term in self.terms if term in lowered]
        if hits:
            return self._result(
                GuardrailVerdict.FLAG,
                f"Output mentions blocked terms: {', '.join(hits)}",
                self.category,
            )
        return self._result(GuardrailVerdict.PASS)


class ModerationOutput(BaseModel):
    moderationRationale: str
    moderationCategory: str


MODERATION_CATEGORIES = ("OFFENSIVE", "OFF_BRAND", "VIOLENCE", "NONE")


class ModerationGuardrail(Guardrail):
    """Model-based classifier: OFFENSIVE, OFF_BRAND, VIOLENCE or NONE."""

    name = "moderation_guardrail"

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = GUARDRAIL_MODEL, logger=None):
        self.client = client
        self.model = model
        self.logger = logger or logging.getLogger("ModerationGuardrail")

    def _prompt(self, text: str, company_name: str) -> str:
        return (
            "You are an expert at classifying text according to moderation policies. "
            "Consider the provided message, analyze potential classes from output_classes, "
            "and output the best classification. Output JSON with keys "
            "'moderationRationale' and 'moderationCategory'.\n\n"
            f"<info>\n- Company name: {company_name}\n</info>\n\n"
            f"<message>\n{text}\n</message>\n\n"
            "<output_classes>\n"
            "- OFFENSIVE: Content that includes hate speech, discriminatory language, "
            "insults, slurs, or harassment.\n"
            f"- OFF_BRAND: Content that discusses competitors in a disparaging way, "
            f"or is otherwise inappropriate for {company_name}.\n"
            "- VIOLENCE: Content that includes explicit threats, incitement of harm, "
            "or graphic descriptions of physical injury or violence.\n"
            "- NONE: If no other classes are appropriate and the message is fine.\n"
            "</output_classes>"
        )

    async def check(self, text: str, company_name: str) -> GuardrailResult:
        if self.client is None:
            self.client = AsyncOpenAI(api_key=OPENAI_API_KEY)
        try:
            response = await self.client.responses.create(
                model=self.model,
                input=[{"role": "user", "content": self._prompt(text, company_name)}],
            )
            output = ModerationOutput.model_validate_json(response.output_text)
        except (OpenAIError, ValidationError, json.JSONDecodeError) as exc:
            # Classifier failures never block the conversation.
            self.logger.warning(f"Moderation check failed: {exc}")
            return self._result(GuardrailVerdict.PASS, f"Moderation unavailable: {exc}")

        category = output.moderationCategory.upper()
        if category not in MODERATION_CATEGORIES:
            category = "NONE"
        if category == "NONE":
            return self._result(GuardrailVerdict.PASS, output.moderationRationale)
        return self._result(GuardrailVerdict.FLAG, output.moderationRationale, category)


# ================================================================
# Agent definitions
# ================================================================


@dataclass(frozen=True)
class AgentDefinition:
    """Capability set of one agent.

    Fields are fixed once registered; only ``guardrails`` grows, through
    :meth:`add_guardrail`.
    """

    name: str
    instructions: str
    tools: Sequence[FunctionTool] = ()
    handoff_targets: FrozenSet[str] = frozenset()
    guardrails: List[Guardrail] = field(default_factory=list)
    handoff_description: str = ""
    voice: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "handoff_targets", frozenset(self.handoff_targets))

    @property
    def allowed_tool_names(self) -> FrozenSet[str]:
        return frozenset(tool.name for tool in self.tools)

    def get_tool(self, name: str) -> Optional[FunctionTool]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def add_guardrail(self, guardrail: Guardrail) -> bool:
        if any(existing.name == guardrail.name for existing in self.guardrails):
            return False
        self.guardrails.append(guardrail)
        return True


class AgentRegistry:
    """Ordered capability set plus the handoff rules between its agents."""

    def __init__(
        self,
        agents: Sequence[AgentDefinition],
        company_name: str = COMPANY_NAME,
        key: str = "default",
        logger=None,
    ):
        self.logger = logger or logging.getLogger("AgentRegistry")
        if not agents:
            raise ValueError("An agent set needs at least one agent")
        names = [agent.name for agent in agents]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"Duplicate agent names: {', '.join(sorted(duplicates))}")
        for agent in agents:
            unknown = set(agent.handoff_targets) - set(names)
            if unknown:
                raise ValueError(
                    f"Agent '{agent.name}' hands off to unknown agents: {', '.join(sorted(unknown))}"
                )
        self._agents: Dict[str, AgentDefinition] = {agent.name: agent for agent in agents}
        self.company_name = company_name
        self.key = key
        self.sealed = False

    @property
    def agents(self) -> List[AgentDefinition]:
        return list(self._agents.values())

    @property
    def names(self) -> List[str]:
        return list(self._agents)

    @property
    def default(self) -> AgentDefinition:
        return next(iter(self._agents.values()))

    def get(self, name: str) -> Optional[AgentDefinition]:
        return self._agents.get(name)

    def resolve_initial(self, name: Optional[str] = None) -> AgentDefinition:
        """Named agent when known, otherwise the first of the set."""
        if name and name in self._agents:
            return self._agents[name]
        if name:
            self.logger.warning(f"Unknown initial agent '{name}', using '{self.default.name}'")
        return self.default

    def reachable_from(self, name: str) -> FrozenSet[str]:
        agent = self._agents.get(name)
        return agent.handoff_targets if agent else frozenset()

    def can_hand_off(self, from_name: str, to_name: str) -> bool:
        return to_name in self._agents and to_name in self.reachable_from(from_name)

    def tool_specs(self, name: str) -> List[Dict[str, Any]]:
        """Function declarations pushed to the model for agent ``name``."""
        agent = self._agents[name]
        specs = [tool.spec() for tool in agent.tools]
        for target in sorted(agent.handoff_targets):
            target_agent = self._agents[target]
            specs.append(
                {
                    "type": "function",
                    "name": handoff_tool_name(target),
                    "description": target_agent.handoff_description
                    or f"Transfer the conversation to {target}.",
                    "parameters": {"type": "object", "properties": {}, "required": []},
                }
            )
        return specs

    def add_guardrail(self, guardrail: Guardrail) -> int:
        """Attach ``guardrail`` to every agent that lacks one of the same name."""
        if self.sealed:
            self.logger.warning(
                f"Guardrail '{guardrail.name}' ignored: agent set '{self.key}' is already in use"
            )
            return 0
        added = sum(1 for agent in self._agents.values() if agent.add_guardrail(guardrail))
        self.logger.info(f"Guardrail '{guardrail.name}' added to {added} agent(s)")
        return added

    def seal(self) -> None:
        self.sealed = True
