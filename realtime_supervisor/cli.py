"""
Realtime Supervisor - terminal front end
========================================

Talks to the realtime model through the chat-supervisor agent set. Typed lines
are sent as user messages; slash commands control the session.

Usage:
    # Text conversation over a websocket
    realtime-supervisor

    # Voice over WebRTC, with the microphone open
    realtime-supervisor --transport peer --audio

    # Push-to-talk: /talk starts a turn, /send ends it
    realtime-supervisor --audio --ptt

Commands:
    /quit /mute /unmute /interrupt /agent NAME /talk /send
"""

import argparse
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from .agents import ModerationGuardrail
from .audio import PyAudioDevice
from .config import (
    COMPANY_NAME,
    OPENAI_API_KEY,
    REALTIME_VOICE_CHOICE,
    SUPERVISOR_MAX_ROUNDS,
    SUPERVISOR_MODEL,
    TransportConfig,
)
from .credentials import CredentialProvider, HttpCredentialProvider, OpenAICredentialProvider
from .scenario import build_chat_supervisor_registry, build_supervisor_tools
from .session import RealtimeSessionManager
from .supervisor import HttpResponsesClient, OpenAIResponsesClient, SupervisorLoop

# Console for rich output
console = Console()


def setup_logging():
    """Setup logging to file only (no stdout)."""
    logger = logging.getLogger("RealtimeSupervisor")
    logger.setLevel(logging.DEBUG)
    if logger.handlers:
        return logger

    logger.propagate = False

    now = datetime.now()
    log_dir = Path.cwd() / "output_logs"
    log_dir.mkdir(exist_ok=True)
    log_filename = log_dir / f"{now.strftime('%Y-%m-%d_%H')}.log"
    detailed_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = logging.FileHandler(log_filename)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(detailed_formatter)
    logger.addHandler(file_handler)
    logger.info(f"Logging initialized. Log file: {log_filename}")
    return logger


def load_knowledge(path: Optional[str]) -> List[Dict[str, Any]]:
    """Read lookup entries from a JSON list file."""
    if not path:
        return []
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"Knowledge file {path} must contain a JSON list")
    return [entry for entry in data if isinstance(entry, dict)]


class ConsoleView:
    """Renders manager and transcript signals as rich panels."""

    def __init__(self, manager: RealtimeSessionManager, logger=None):
        self.manager = manager
        self.logger = logger or logging.getLogger("ConsoleView")

        manager.status_changed.connect(self.on_status)
        manager.agent_changed.connect(self.on_agent)
        manager.guardrail_tripped.connect(self.on_guardrail)
        manager.error_occurred.connect(self.on_error)
        manager.transcript.transcript_updated.connect(self.on_item)
        manager.transcript.breadcrumb_added.connect(self.on_breadcrumb)

    def _log_panel(
        self,
        message: str,
        *,
        title: str = "Agent",
        style: str = "cyan",
        level: str = "info",
        expand: bool = True,
    ) -> None:
        """Log message to both console panel and file logger."""
        console.print(Panel(message, title=title, border_style=style, expand=expand))
        log_fn = getattr(self.logger, level, None)
        if log_fn:
            log_fn(message)

    def on_status(self, status: str) -> None:
        self._log_panel(status, title="Connection", style="blue")

    def on_agent(self, name: str) -> None:
        self._log_panel(f"Active agent: {name}", title="Agent", style="magenta")

    def on_item(self, item) -> None:
        # Only finished items are printed; deltas would flood the console.
        if not item.done or item.role != "assistant":
            return
        self._log_panel(item.text or "(empty)", title="Assistant", style="green")

    def on_breadcrumb(self, crumb) -> None:
        if crumb.data is None:
            self._log_panel(crumb.title, title="Breadcrumb", style="dim", level="debug")
            return
        syntax = Syntax(
            json.dumps(crumb.data, indent=2, ensure_ascii=False, default=str),
            "json",
            theme="monokai",
            word_wrap=True,
        )
        console.print(Panel(syntax, title=crumb.title, border_style="dim", expand=True))
        self.logger.debug(f"{crumb.title}: {crumb.data}")

    def on_guardrail(self, result) -> None:
        self._log_panel(
            f"{result.category}: {result.reason}",
            title=f"Guardrail: {result.guardrail_name}",
            style="red",
            level="warning",
        )

    def on_error(self, error) -> None:
        self._log_panel(error.user_message, title="Error", style="red", level="error")

    def show_agents(self) -> None:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Name", style="bold")
        table.add_column("Tools")
        table.add_column("Hands off to")
        for agent in self.manager.registry.agents:
            table.add_row(
                agent.name,
                ", ".join(sorted(agent.allowed_tool_names)) or "-",
                ", ".join(sorted(agent.handoff_targets)) or "-",
            )
        console.print(Panel(table, title="Agent Roster", border_style="cyan"))


async def _beep(manager: RealtimeSessionManager, frequency: int) -> None:
    # Higher pitch when the turn opens, lower when it is sent
    if manager.audio is not None:
        await asyncio.to_thread(manager.audio.beep, frequency)


async def handle_command(manager: RealtimeSessionManager, line: str) -> bool:
    """Run one slash command. Returns False when the user asked to quit."""
    command, _, argument = line.partition(" ")
    if command in ("/quit", "/exit"):
        return False
    if command == "/mute":
        manager.mute(True)
    elif command == "/unmute":
        manager.mute(False)
    elif command == "/interrupt":
        manager.interrupt()
    elif command == "/agent":
        if not manager.switch_agent(argument.strip()):
            console.print(f"[yellow]Cannot switch to agent '{argument.strip()}'[/yellow]")
    elif command == "/talk":
        if manager.start_push_to_talk():
            await _beep(manager, 520)
    elif command == "/send":
        if manager.stop_push_to_talk():
            await _beep(manager, 380)
    else:
        console.print(f"[yellow]Unknown command: {command}[/yellow]")
    return True


async def run(args: argparse.Namespace, logger: logging.Logger) -> int:
    knowledge = load_knowledge(args.knowledge)

    if args.responses_url:
        responses_client = HttpResponsesClient(args.responses_url, logger=logger)
    else:
        responses_client = OpenAIResponsesClient(logger=logger)
    loop = SupervisorLoop(
        responses_client,
        build_supervisor_tools(knowledge),
        model=SUPERVISOR_MODEL,
        max_rounds=args.max_rounds,
        logger=logger,
    )
    registry = build_chat_supervisor_registry(loop, company_name=args.company, voice=args.voice)
    if not args.no_guardrail:
        registry.add_guardrail(ModerationGuardrail(logger=logger))

    credentials: CredentialProvider
    if args.credential_url:
        credentials = HttpCredentialProvider(args.credential_url, logger=logger)
    else:
        credentials = OpenAICredentialProvider(api_key=OPENAI_API_KEY, logger=logger)

    transport_config = TransportConfig.for_kind(
        args.transport,
        mini=args.mini,
        voice=args.voice,
        push_to_talk=args.ptt,
        modalities=["text", "audio"] if args.audio else ["text"],
    )
    manager = RealtimeSessionManager(
        registry,
        audio=PyAudioDevice(logger=logger) if args.audio else None,
        opening_message=args.prompt,
        logger=logger,
    )
    view = ConsoleView(manager, logger=logger)
    view.show_agents()

    if not await manager.connect(credentials, transport_config):
        return 1

    try:
        while manager.is_connected:
            line = (await asyncio.to_thread(console.input, "[bold cyan]> [/bold cyan]")).strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await handle_command(manager, line):
                    break
                continue
            manager.send_user_text(line)
    except (EOFError, KeyboardInterrupt):
        logger.info("Shutdown requested by user")
    finally:
        await manager.disconnect()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Realtime voice/text agent with a tool-using supervisor.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--transport",
        choices=["socket", "peer"],
        default="socket",
        help="'socket' for a websocket, 'peer' for WebRTC",
    )
    parser.add_argument("--audio", action="store_true", help="Open the microphone and speaker")
    parser.add_argument("--voice", default=REALTIME_VOICE_CHOICE, help="Realtime voice")
    parser.add_argument("--ptt", action="store_true", help="Push-to-talk instead of server VAD")
    parser.add_argument("--mini", action="store_true", help="Use the mini realtime model")
    parser.add_argument("--prompt", type=str, help="Opening message sent once after connecting")
    parser.add_argument(
        "--credential-url",
        help="Fetch ephemeral keys from this endpoint instead of minting them locally",
    )
    parser.add_argument("--responses-url", help="Send supervisor requests through this proxy")
    parser.add_argument("--company", default=COMPANY_NAME, help="Company name for prompts")
    parser.add_argument("--knowledge", help="JSON list of entries for the lookupInfo tool")
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=SUPERVISOR_MAX_ROUNDS,
        help=f"Supervisor tool-call round cap (default: {SUPERVISOR_MAX_ROUNDS})",
    )
    parser.add_argument("--no-guardrail", action="store_true", help="Skip the moderation guardrail")

    args = parser.parse_args(argv)

    logger = setup_logging()
    logger.info("=" * 60)
    logger.info("Realtime Supervisor")
    logger.info("=" * 60)
    logger.info(f"Transport: {args.transport}, audio: {args.audio}, ptt: {args.ptt}")

    console.print(
        Panel(
            f"Transport: {args.transport}\n"
            f"Audio: {'on' if args.audio else 'off'}\n"
            f"Voice: {args.voice}\n"
            f"Supervisor model: {SUPERVISOR_MODEL}\n"
            f"Company: {args.company}",
            title="Launch Configuration",
            border_style="cyan",
        )
    )

    try:
        return asyncio.run(run(args, logger))
    except KeyboardInterrupt:
        logger.info("\nShutdown requested by user")
    except Exception as exc:
        logger.error(f"Fatal error: {exc}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
