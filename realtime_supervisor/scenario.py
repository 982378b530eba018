"""
Chat-supervisor agent set.

A single front agent (``chatAgent``) handles greetings itself and routes every
other turn through the ``getNextResponseFromSupervisor`` tool, which runs the
supervisor loop over the conversation so far.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .agents import AgentDefinition, AgentRegistry, FunctionTool, ToolContext
from .config import COMPANY_NAME, PROMPTS_DIR
from .supervisor import ContextBundle, SupervisorLoop, ToolResolver, knowledge_lookup_tool

logger = logging.getLogger("RealtimeSupervisor")

CHAT_AGENT_NAME = "chatAgent"
SUPERVISOR_TOOL_NAME = "getNextResponseFromSupervisor"

CHAT_AGENT_FALLBACK = (
    "You are a helpful junior customer service agent for {COMPANY_NAME}. "
    "Handle greetings yourself and use getNextResponseFromSupervisor for everything else."
)
SUPERVISOR_FALLBACK = (
    "You are a customer service supervisor for {COMPANY_NAME}. "
    "Answer the user's last request concisely, using your tools when facts are needed."
)


def load_prompt(filename: str, fallback: str, prompts_dir: Path = PROMPTS_DIR, **kwargs: Any) -> str:
    """Load a prompt template and fill in ``kwargs``; falls back when missing."""
    prompt_file = prompts_dir / filename
    try:
        template = prompt_file.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning(f"Error loading prompt file {prompt_file}: {e}")
        template = fallback
    return template.format(**kwargs) if kwargs else template


def build_supervisor_tools(knowledge: Optional[Sequence[Dict[str, Any]]] = None) -> ToolResolver:
    """Supervisor tool set; ``lookupInfo`` searches caller-provided entries."""
    resolver = ToolResolver()
    resolver.register(
        "lookupInfo",
        knowledge_lookup_tool(list(knowledge or [])),
        description="Look up information about services, processes and company policies.",
        parameters={
            "type": "object",
            "properties": {
                "topic": {
                    "type": "string",
                    "description": "The topic or keyword to search for.",
                }
            },
            "required": ["topic"],
            "additionalProperties": False,
        },
    )
    return resolver


def supervisor_tool(loop: SupervisorLoop, instructions: str) -> FunctionTool:
    """Front-agent tool that defers the next response to the supervisor."""

    async def get_next_response(arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        bundle = ContextBundle.from_history(
            instructions,
            context.history,
            str(arguments.get("relevantContextFromLastUserMessage") or ""),
        )
        result = await loop.run(bundle, breadcrumb=context.add_breadcrumb)
        if not result.ok:
            return {"error": result.error}
        return {"nextResponse": result.text}

    return FunctionTool(
        name=SUPERVISOR_TOOL_NAME,
        description=(
            "Determines the next response whenever the agent faces a non-trivial decision, "
            "produced by a highly intelligent supervisor agent. Returns a message describing "
            "what to do next."
        ),
        handler=get_next_response,
        parameters={
            "type": "object",
            "properties": {
                "relevantContextFromLastUserMessage": {
                    "type": "string",
                    "description": (
                        "Key information from the user described in their most recent message. "
                        "Okay to omit if the user message didn't add any new information."
                    ),
                }
            },
            "required": ["relevantContextFromLastUserMessage"],
            "additionalProperties": False,
        },
    )


def build_chat_supervisor_registry(
    loop: SupervisorLoop,
    company_name: str = COMPANY_NAME,
    voice: Optional[str] = None,
    prompts_dir: Path = PROMPTS_DIR,
) -> AgentRegistry:
    chat_instructions = load_prompt(
        "chat_agent.md", CHAT_AGENT_FALLBACK, prompts_dir, COMPANY_NAME=company_name
    )
    supervisor_instructions = load_prompt(
        "supervisor_agent.md", SUPERVISOR_FALLBACK, prompts_dir, COMPANY_NAME=company_name
    )
    chat_agent = AgentDefinition(
        name=CHAT_AGENT_NAME,
        instructions=chat_instructions,
        tools=[supervisor_tool(loop, supervisor_instructions)],
        voice=voice,
    )
    agents: List[AgentDefinition] = [chat_agent]
    return AgentRegistry(agents, company_name=company_name, key="chatSupervisor")
