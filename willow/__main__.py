"""Willow intake — entry point.

    python -m willow serve      run the conversation service
    python -m willow chat       run an intake session in the terminal
"""
import argparse
import asyncio
import logging
import os
import sys

import uvicorn

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

FINISH_COMMANDS = ("/done", "/finish")


def _load(config_path: str):
    from willow.config import load_config, WillowConfig
    if not os.path.exists(config_path):
        example = "config.example.yaml"
        if os.path.exists(example):
            print(f"[Willow] {config_path} not found, using defaults. Copy from {example}:")
            print(f"  cp {example} config.yaml")
        return WillowConfig()
    return load_config(config_path)


def _serve(config) -> None:
    print(f"[Willow] Starting server on {config.server.host}:{config.server.port}")
    print(f"[Willow] Conversation model: {config.models.conversation}")
    uvicorn.run(
        "willow.server:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
        log_level="info"
    )


class _TerminalView:
    """Echoes the streaming assistant turn as it grows."""

    def __init__(self):
        self._shown = ""

    def __call__(self, session) -> None:
        turn = session.transcript[-1] if session.transcript else None
        if turn is None or turn.role != "assistant" or not turn.in_progress:
            return
        if turn.content.startswith(self._shown):
            sys.stdout.write(turn.content[len(self._shown):])
            sys.stdout.flush()
            self._shown = turn.content

    def end_turn(self, session) -> None:
        turn = session.transcript[-1] if session.transcript else None
        if turn is not None and turn.role == "assistant" and turn.content.startswith(self._shown):
            sys.stdout.write(turn.content[len(self._shown):])
        sys.stdout.write("\n")
        sys.stdout.flush()
        self._shown = ""


async def _chat(config) -> None:
    from willow.intake import CareCircleClient, ConversationClient, IntakeSession

    conversation = ConversationClient.from_config(config)
    backend = CareCircleClient.from_config(config)
    view = _TerminalView()
    session = IntakeSession(conversation, backend, on_update=view)
    seen_notices = 0
    try:
        print("Willow: ", end="", flush=True)
        session.start()
        while True:
            await session.wait()
            view.end_turn(session)
            for notice in session.notices[seen_notices:]:
                print(f"[!] {notice}")
            seen_notices = len(session.notices)

            text = (await asyncio.to_thread(input, "You: ")).strip()
            if text in FINISH_COMMANDS:
                break
            if not text:
                continue
            print("Willow: ", end="", flush=True)
            session.submit(text)

        result = await session.finalize()
        print(f"[Willow] Recipient: {result.snapshot.identity_name or '(unknown)'}")
        print(f"[Willow] Record id: {result.external_id or '(not created)'}")
    finally:
        await session.close()
        await conversation.close()
        await backend.close()


def main():
    parser = argparse.ArgumentParser(description="Willow conversational intake")
    parser.add_argument("command", choices=["serve", "chat"], help="Run the service or a terminal session")
    parser.add_argument(
        "--config",
        default=os.environ.get("WILLOW_CONFIG", "config.yaml"),
        help="Path to the YAML config file",
    )
    args = parser.parse_args()

    config = _load(args.config)
    os.environ["WILLOW_CONFIG"] = args.config  # read again by the server lifespan
    if args.command == "serve":
        _serve(config)
    else:
        try:
            asyncio.run(_chat(config))
        except (KeyboardInterrupt, EOFError):
            print("\n[Willow] Intake abandoned.")


if __name__ == "__main__":
    main()
