"""Tandem command-line entry point.

Initializes the components in dependency order and runs the orchestrator:
  Settings -> ProviderClient -> ModelRegistry -> ToolDispatcher -> Sessions
  -> (Database -> TranscriptStore) -> EventBus -> Orchestrator
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any

import httpx

from tandem.api.builtin_tools import ACTOR_FILE_TOOLS, register_builtin_tools
from tandem.api.compaction import ContextBudgeter, ConversationCompactor
from tandem.api.control_tools import ControlChannel, register_control_tools
from tandem.api.model_registry import ModelRegistry
from tandem.api.provider import ProviderClient
from tandem.api.session import ActorSession, DirectorSession
from tandem.api.tools import ToolDispatcher
from tandem.api.web_tools import register_web_tools
from tandem.config import Settings
from tandem.events import Event, EventBus
from tandem.orchestrator import OrchestrationResult, Orchestrator, RunStatus
from tandem.storage.database import Database
from tandem.storage.transcript import TranscriptStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tandem",
        description="Run a Director agent that plans and a Worker agent that executes.",
    )
    parser.add_argument("instruction", nargs="?", help="Task for the Director (prompted for when omitted)")
    parser.add_argument("--workdir", help="Workspace the file and shell tools are confined to")
    parser.add_argument("--max-rounds", type=int, help="Worker rounds before pausing (0 = unlimited)")
    parser.add_argument("--actor-timeout", type=float, help="Worker inactivity timeout in seconds")
    parser.add_argument("--director-model", help="Director model (opus, sonnet, haiku or a full id)")
    parser.add_argument("--actor-model", help="Worker model (opus, sonnet, haiku or a full id)")
    parser.add_argument(
        "--resume",
        nargs="?",
        const="latest",
        metavar="SESSION_ID",
        help="Restore the Director from a stored transcript (default: the latest session)",
    )
    parser.add_argument("--log-level", choices=["debug", "info", "warning", "error"])
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Settings from env/.env with command-line overrides on top."""
    overrides: dict[str, Any] = {
        "workspace_dir": args.workdir,
        "max_rounds": args.max_rounds,
        "actor_inactivity_timeout": args.actor_timeout,
        "director_model": args.director_model,
        "actor_model": args.actor_model,
        "log_level": args.log_level,
    }
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


async def create_components(settings: Settings, *, resume: str | None = None) -> dict[str, Any]:
    """Initialize all components in dependency order.

    Returns a dict so shutdown_components() can release whatever was
    created, even after a partial startup.
    """
    components: dict[str, Any] = {}

    provider = ProviderClient(settings)
    await provider.start()
    components["provider"] = provider

    registry = ModelRegistry()
    if settings.refresh_models:
        await registry.refresh(provider)

    # Web tools httpx client (separate from the provider: no API auth headers)
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    components["web_http"] = web_http

    channel = ControlChannel(actor_tools=ACTOR_FILE_TOOLS + ("web_search",))
    dispatcher = ToolDispatcher.from_settings(settings)
    register_builtin_tools(dispatcher, settings)
    register_web_tools(dispatcher, settings, web_http)
    register_control_tools(dispatcher, channel, settings.workspace_dir)

    director = DirectorSession(provider, dispatcher, settings, model=registry.resolve(settings.director_model))
    actor = ActorSession(provider, dispatcher, settings, model=registry.resolve(settings.actor_model))

    bus = EventBus()
    store = None
    session_id = None
    if settings.transcript_db_url:
        database = Database(settings.transcript_db_url, echo=settings.log_level == "debug")
        await database.connect()
        components["database"] = database
        store = TranscriptStore(database)
        bus.set_persister(store.persist)
        if resume:
            session_id = await store.latest_session() if resume == "latest" else resume
            if session_id:
                director.restore(await store.restore_director_history(session_id))
            else:
                logger.warning("No stored session to resume")
    elif resume:
        logger.warning("--resume ignored: transcript storage is disabled")

    compactor = ConversationCompactor(
        provider.create,
        model=registry.resolve(settings.compaction_model),
        max_tokens=settings.compaction_max_tokens,
    )
    orchestrator = Orchestrator(
        director,
        actor,
        settings,
        compactor=compactor,
        channel=channel,
        budgeter=ContextBudgeter.from_settings(settings),
        registry=registry,
        bus=bus,
        instruction_source=read_instruction,
        session_id=session_id,
        director_sink=_write_chunk,
        actor_sink=_write_chunk,
    )
    bus.on("status", _print_status)
    bus.on("finished", _print_finished)
    await bus.start()

    components.update(bus=bus, store=store, orchestrator=orchestrator, dispatcher=dispatcher)
    logger.info(
        "Tandem started: director=%s actor=%s workspace=%s session=%s",
        director.model,
        actor.model,
        settings.workspace_dir,
        orchestrator.session_id,
    )
    return components


async def shutdown_components(components: dict[str, Any]) -> None:
    """Graceful shutdown in reverse order."""
    bus = components.get("bus")
    if bus:
        await bus.stop()

    database = components.get("database")
    if database:
        await database.disconnect()

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    provider = components.get("provider")
    if provider:
        await provider.close()


# ---------------------------------------------------------------------------
# Console I/O
# ---------------------------------------------------------------------------


async def read_instruction(prompt: str) -> str | None:
    """Read one operator line from stdin; None on EOF."""
    try:
        return await asyncio.to_thread(input, f"\n{prompt}")
    except EOFError:
        return None


def _write_chunk(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def _print_status(event: Event) -> None:
    print(f"\n[{event.source}] {event.data.get('message', '')}", flush=True)


async def _print_finished(event: Event) -> None:
    data = event.data
    print(
        f"\n== {data['status']} after {data['rounds']} round(s), "
        f"{data['director_turns']} director turn(s): {data['detail']}",
        flush=True,
    )


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


async def run(settings: Settings, instruction: str | None, *, resume: str | None = None) -> int:
    components = await create_components(settings, resume=resume)
    orchestrator: Orchestrator = components["orchestrator"]
    main_task = asyncio.current_task()
    interrupts = 0

    def _on_sigint() -> None:
        nonlocal interrupts
        interrupts += 1
        if interrupts > 1 and main_task is not None:
            # Second Ctrl-C before the first was handled: give up
            main_task.cancel()
            return
        orchestrator.interrupt()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")

    result: OrchestrationResult | None = None
    try:
        task = instruction if instruction is not None else ""
        while True:
            interrupts = 0
            result = await orchestrator.run(task)
            if result.status in (RunStatus.FAILED, RunStatus.INTERRUPTED) or not sys.stdin.isatty():
                break
            # Interactive: the next instruction continues the same collaboration
            task = await read_instruction("Next instruction (empty to quit): ") or ""
            if not task.strip():
                break
    except asyncio.CancelledError:
        logger.info("Aborted by operator")
        return EXIT_ABORTED
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
        await shutdown_components(components)

    return result.exit_code if result else EXIT_OK


def main(argv: list[str] | None = None) -> None:
    """Entry point: parse arguments, configure logging, run, exit."""
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        code = asyncio.run(run(settings, args.instruction, resume=args.resume))
    except KeyboardInterrupt:
        code = EXIT_ABORTED
    sys.exit(code)


if __name__ == "__main__":
    main()
