"""CLI entry point for the chat agent.

A terminal chat loop for testing and development.  For production, use
the FastAPI server (``chat_agent/server.py``).

Usage:
    python -m chat_agent.main            # normal mode (quiet)
    python -m chat_agent.main --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from chat_agent.agent import AgentOrchestrator, create_agent
from chat_agent.contracts import TurnRequest
from chat_agent.errors import CompletionProviderError
from chat_agent.services.cost import format_cost, format_search_calls, format_tokens

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("chat_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_turn_footer(metadata: dict) -> None:
    cost = metadata.get("cost", {})
    parts = [
        format_tokens(metadata.get("total_tokens", 0)),
        format_cost(cost.get("total_cost", 0)),
    ]
    if cost.get("search_calls"):
        parts.append(format_search_calls(cost["search_calls"]))
    print(f"   [{' · '.join(parts)}]")
    for warning in metadata.get("warnings", []):
        print(f"   ! {warning}")


async def _chat_loop(agent: AgentOrchestrator) -> None:
    conversation_id: str | None = None

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if user_input.lower() == "new":
            conversation_id = None
            print("\n>> Next message starts a new conversation.\n")
            continue

        try:
            result = await agent.process_turn(
                TurnRequest(message=user_input, conversation_id=conversation_id)
            )
        except CompletionProviderError as e:
            logger.error("Turn failed: %s", e)
            print("\nAgent: Sorry, I couldn't reach the language model. Please try again.\n")
            continue
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nAgent: I'm sorry, something went wrong: {e}")
            print("       Please try again or type 'new' to start a fresh conversation.\n")
            continue

        if conversation_id is None:
            logger.info("Started conversation: %s", result.conversation_id)
        conversation_id = result.conversation_id
        for outcome in result.tool_results:
            status = "ok" if outcome.result.success else f"failed: {outcome.result.error}"
            print(f"   (tool {outcome.call.name}: {status})")
        print(f"\nAgent: {result.reply}")
        _print_turn_footer(result.metadata)
        print()


async def _run() -> None:
    agent = create_agent()
    try:
        await _chat_loop(agent)
    finally:
        await agent.shutdown()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Chat Agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Chat Agent - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
