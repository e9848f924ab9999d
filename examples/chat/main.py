"""
Interactive chat example for tether-mcp.

Connects to the in-process demo server plus any servers listed in
tether_mcp.config.yaml, then chats through the agent loop. Uses OpenRouter
when OPENROUTER_API_KEY is set and the offline mock provider otherwise.
"""

import asyncio
import time

from tether_mcp.app import TetherApp
from tether_mcp.config import load_config


def print_connections(snapshots):
    for snapshot in snapshots:
        line = f"  [{snapshot.status.value}] {snapshot.name}"
        if snapshot.awaiting_authorization:
            line += " (waiting for authorization in your browser)"
        elif snapshot.error:
            line += f" - {snapshot.error}"
        print(line)


async def main():
    settings = load_config()
    if not settings.inference.api_key:
        print("Warning: OPENROUTER_API_KEY not set, using the mock provider.")
        settings.inference.provider = "mock"

    app = TetherApp(name="chat_example", settings=settings)

    async with app.run() as running:
        print("\n=== tether-mcp chat ===")
        print("Servers:")
        print_connections(running.connections.connections())

        print("\nTools:")
        for tool in running.connections.all_tools():
            print(f"- {tool.namespaced_tool_name}: {tool.tool.description}")
        print("\nType 'exit' or 'quit' to end the session, '/servers' to list servers.")

        conversation = await running.conversations.create_conversation()

        while True:
            user_input = await asyncio.to_thread(input, "\nYou: ")
            if user_input.lower() in ["exit", "quit", "bye"]:
                break
            if user_input.strip() == "/servers":
                print_connections(running.connections.connections())
                continue

            seen = len(running.conversations.get(conversation.id).messages)
            start_time = time.time()
            run = await running.send_message(conversation.id, user_input)
            elapsed = time.time() - start_time

            current = running.conversations.get(conversation.id)
            for message in current.messages[seen:]:
                for block in message.tool_results:
                    status = "error" if block.is_error else "ok"
                    print(f"  tool result ({status}): {block.content}")
            if current.status == "error":
                print(f"\nError: {current.error}")
            else:
                print(f"\nAssistant ({elapsed:.2f}s): {current.messages[-1].text}")
            if run.truncated:
                print(f"(stopped after {run.max_iterations} tool rounds)")


if __name__ == "__main__":
    asyncio.run(main())
