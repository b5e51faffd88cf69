"""
kbchat - Terminal Chat
=======================
Talks to a running kbchat API through ``ChatStreamClient`` and prints
deltas as they arrive.  ``/quit``, end of input or Ctrl-C exits.

Usage:
    python -m kbchat.scripts.chat BOT_ID
    python -m kbchat.scripts.chat BOT_ID --url http://localhost:8000 --no-stream
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from kbchat.config.settings import settings
from kbchat.src.core.errors import KBChatError, StreamingError
from kbchat.src.streaming.consumer import ChatStreamClient, StreamHandlers

_QUIT_COMMANDS = {"/quit", "/exit"}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="kbchat-chat", description="kbchat — chat with a chatbot from the terminal.")
    parser.add_argument("chatbot_id")
    parser.add_argument("--url", default=settings.CHAT_API_URL, help="API root (default: %(default)s).")
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--thread-id", default=None, help="Continue an existing thread.")
    parser.add_argument("--no-stream", action="store_true", default=False, help="Request a single JSON answer.")
    return parser.parse_args(argv)


def _print_delta(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def _ask(client: ChatStreamClient, args: argparse.Namespace, message: str, thread_id: str | None) -> str | None:
    handlers = StreamHandlers(on_delta=_print_delta, on_end=lambda _text, _thread: print())
    result = await client.send(args.chatbot_id, message, handlers, thread_id=thread_id, user_id=args.user_id, stream=not args.no_stream)
    return result.thread_id or thread_id


async def _loop(args: argparse.Namespace) -> None:
    client = ChatStreamClient(base_url=args.url)
    thread_id = args.thread_id
    print(f"Chatting with {args.chatbot_id} at {args.url} — /quit to exit.\n")

    while True:
        try:
            message = (await asyncio.to_thread(input, "you › ")).strip()
        except EOFError:
            return
        if not message:
            continue
        if message in _QUIT_COMMANDS:
            return

        sys.stdout.write("bot › ")
        try:
            thread_id = await _ask(client, args, message, thread_id)
        except StreamingError as exc:
            print(f"\n[interrupted: {exc}]")
        except KBChatError as exc:
            print(f"\n[error: {exc}]")


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        asyncio.run(_loop(args))
    except KeyboardInterrupt:
        print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
