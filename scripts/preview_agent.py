#!/usr/bin/env python3
"""
Preview Agent — talk to a configured agent through this machine's mic/speaker.

Usage:
    python scripts/preview_agent.py --list               # Agents available now
    python scripts/preview_agent.py demo                 # Start a session
    python scripts/preview_agent.py demo --save          # Save the conversation on exit

While a session runs:
    Enter   stop listening (send what was said so far)
    r       start the conversation over from the greeting
    q       end the call
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _render_level(level: float) -> None:
    bar = "█" * int(level * 30)
    sys.stdout.write(f"\r  {bar:<30}")
    sys.stdout.flush()


async def _print_events(orchestrator) -> None:
    from models.schemas import SessionEventType

    while True:
        event = await orchestrator.ctx.next_event()
        if event.type == SessionEventType.STATE_CHANGED:
            print(f"\n[{event.state.value}]")
        elif event.type == SessionEventType.TURN_APPENDED:
            speaker = "Агент" if event.turn.role.value == "assistant" else "Вы"
            print(f"\n{speaker}: {event.turn.content}")
        elif event.type == SessionEventType.CONVERSATION_RESET:
            print(f"\n(заново) Агент: {event.turn.content}")
        elif event.type == SessionEventType.EMPTY_TRANSCRIPT:
            print(f"\n(ничего не распознано) {event.message}")
        elif event.type in (SessionEventType.SERVICE_ERROR, SessionEventType.PLAYBACK_ERROR,
                            SessionEventType.DEVICE_ERROR):
            print(f"\n! {event.type.value}: {event.message}")
        elif event.type == SessionEventType.SESSION_ENDED:
            print("\nSession ended.")
            return


async def _read_commands(orchestrator) -> None:
    from core.errors import SessionStateError

    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue()
    fd = sys.stdin.fileno()
    loop.add_reader(fd, lambda: lines.put_nowait(sys.stdin.readline()))
    try:
        while True:
            line = await lines.get()
            if not line or line.strip().lower() == "q":
                await orchestrator.end_call()
                return
            if line.strip().lower() == "r":
                try:
                    orchestrator.reset()
                except SessionStateError as e:
                    print(f"\n! {e}")
                continue
            orchestrator.stop_listening()
    finally:
        loop.remove_reader(fd)


async def list_agents() -> None:
    from agents.availability import unavailability_reason
    from agents.loader import AgentConfigLoader
    from config.settings import get_settings
    from database.store_memory import InMemoryAgentStore

    store = InMemoryAgentStore()
    await AgentConfigLoader(store).seed(get_settings().agents)
    for agent in await store.list_agents():
        reason = unavailability_reason(agent)
        status = "available" if not reason else f"unavailable ({reason})"
        print(f"{agent.id:<20} {agent.name:<30} {status}")


async def run_preview(agent_id: str, save: bool = False) -> None:
    from agents.loader import AgentConfigLoader
    from config.settings import get_settings
    from database.store_memory import InMemoryAgentStore
    from voice.analysis import ConversationAnalyzer, ConversationService
    from voice.providers import create_google_pipeline
    from voice.session import SessionManager

    settings = get_settings()
    store = InMemoryAgentStore()
    loader = AgentConfigLoader(store)
    await loader.seed(settings.agents)

    pipeline = create_google_pipeline()
    sessions = SessionManager(loader, pipeline, voice=settings.voice)
    orchestrator = await sessions.create(agent_id, actor_id="cli", amplitude_sink=_render_level)
    try:
        await orchestrator.start()
        commands = asyncio.create_task(_read_commands(orchestrator))
        try:
            await _print_events(orchestrator)
        finally:
            commands.cancel()
        await orchestrator.wait_closed()

        if save:
            service = ConversationService(store, ConversationAnalyzer(pipeline.llm))
            record = await service.save_ledger(orchestrator.ledger, actor_id="cli")
            print(f"Saved conversation {record.id} ({len(record.turns)} turns)")
            if record.analysis:
                print(f"Summary: {record.analysis.summary}")
    finally:
        await orchestrator.end_call()
        await pipeline.close()


def main():
    parser = argparse.ArgumentParser(description="Voice preview of a configured agent")
    parser.add_argument("agent_id", nargs="?", help="Agent id from settings.yaml")
    parser.add_argument("--list", action="store_true", help="List agents and their availability")
    parser.add_argument("--save", action="store_true", help="Save the conversation when it ends")
    parser.add_argument("--config", help="Path to settings.yaml")
    args = parser.parse_args()

    from config.settings import load_settings
    load_settings(args.config)

    if args.list:
        asyncio.run(list_agents())
        return
    if not args.agent_id:
        parser.error("agent_id is required unless --list is given")

    from core.errors import VoicePreviewError
    try:
        asyncio.run(run_preview(args.agent_id, save=args.save))
    except VoicePreviewError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
