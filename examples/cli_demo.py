#!/usr/bin/env python3
"""Interactive CLI demo for chatstream, streamed, token-budgeted chat."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from contextlib import aclosing

import httpx

# Add src to path for running without pip install
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from chatstream import (
    ChatSession,
    ChatSettings,
    ChatStreamError,
    PromptBuild,
)


def _has_rich() -> bool:
    try:
        import rich
        return True
    except ImportError:
        return False


def render_prompt_plain(prompt: PromptBuild, history_len: int) -> None:
    bar_len = 30
    filled = int(bar_len * min(prompt.utilization_pct, 100) / 100)
    bar = "#" * filled + "-" * (bar_len - filled)

    print()
    print("--- Prompt Stats ---")
    print(f"  Prompt tokens:     {prompt.token_count:>6,}")
    print(f"  Token budget:      {prompt.budget:>6,}")
    print(f"  Messages sent:     {len(prompt.messages):>6,}")
    print(f"  History now:       {history_len:>6,}")
    print(f"  Utilization: [{bar}] {prompt.utilization_pct:.1f}%")
    if prompt.dropped:
        print(f"  ** TRUNCATED: dropped {prompt.dropped} oldest message(s) **")
    print()


def render_prompt_rich(prompt: PromptBuild, history_len: int) -> None:
    from rich.console import Console
    from rich.panel import Panel
    from rich.text import Text

    console = Console()
    bar_len = 30
    filled = int(bar_len * min(prompt.utilization_pct, 100) / 100)
    bar = "█" * filled + "░" * (bar_len - filled)

    lines = Text()
    lines.append(f"  Prompt tokens:     {prompt.token_count:>6,}\n")
    lines.append(f"  Token budget:      {prompt.budget:>6,}\n")
    lines.append(f"  Messages sent:     {len(prompt.messages):>6,}\n")
    lines.append(f"  History now:       {history_len:>6,}\n")
    lines.append(f"  Utilization: [{bar}] {prompt.utilization_pct:.1f}%\n")
    if prompt.dropped:
        lines.append(
            f"  TRUNCATED: dropped {prompt.dropped} oldest message(s)",
            style="bold yellow",
        )

    style = "yellow" if prompt.dropped else "cyan"
    console.print(Panel(lines, title="Prompt Stats", border_style=style))


def render_prompt(prompt: PromptBuild, history_len: int) -> None:
    if _has_rich():
        render_prompt_rich(prompt, history_len)
    else:
        render_prompt_plain(prompt, history_len)


def print_full_history(chat: ChatSession) -> None:
    for i, msg in enumerate(chat.history):
        content = msg.content
        if len(content) > 120:
            content = content[:120] + "..."
        print(f"  [{i}] {msg.role.value.upper()}: {content}")
    print()


async def stream_reply(chat: ChatSession, text: str) -> None:
    print("\nAssistant: ", end="", flush=True)
    async with aclosing(chat.send_message(text)) as deltas:
        async for delta in deltas:
            print(delta, end="", flush=True)
    print("\n")


async def main() -> None:
    logging.basicConfig(level=os.environ.get("CHATSTREAM_LOG_LEVEL", "WARNING"))
    print("=" * 50)
    print("  chatstream: streamed chat demo")
    print("=" * 50)

    settings = ChatSettings.from_env()
    print(f"Endpoint: {settings.url}")
    print(f"Budget: {settings.token_budget:,} tokens")
    print("\nCommands: /history /reset /budget <N> /quit\n")

    async with ChatSession(settings=settings) as chat:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("/quit", "/exit"):
                print("Goodbye!")
                break
            elif user_input.lower() == "/history":
                print_full_history(chat)
                continue
            elif user_input.lower() == "/reset":
                chat.clear_history()
                print("History cleared.\n")
                continue
            elif user_input.lower().startswith("/budget"):
                parts = user_input.split()
                if len(parts) == 2:
                    try:
                        chat.token_budget = int(parts[1])
                        print(f"Budget set to {chat.token_budget:,} tokens.\n")
                    except ValueError:
                        print("Usage: /budget <positive number>\n")
                else:
                    print(f"Current budget: {chat.token_budget:,} tokens\n")
                continue

            try:
                await stream_reply(chat, user_input)
            except ChatStreamError as e:
                print(f"\nError: {e}\n")
                continue
            except httpx.HTTPError as e:
                # Includes a certificate chain rejected by the pin set
                print(f"\nConnection error: {e}\n")
                continue

            if chat.last_prompt is not None:
                render_prompt(chat.last_prompt, len(chat.history))


if __name__ == "__main__":
    asyncio.run(main())
