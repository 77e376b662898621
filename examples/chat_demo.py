"""Minimal demonstration of the message orchestrator."""

import asyncio

from chat_core.api.service import get_orchestrator


def _print_snapshot(snapshot):
    if snapshot.messages and snapshot.state.value == "streaming":
        print("\r" + snapshot.messages[-1].content[-60:], end="", flush=True)


async def main() -> None:
    orchestrator = get_orchestrator()
    orchestrator.subscribe(_print_snapshot)
    question = "Explain in two sentences what a read-through cache is."
    print("User:", question)
    await orchestrator.submit(question)
    await orchestrator.wait_for_background()
    print()
    print("Assistant:", orchestrator.messages[-1].content)
    print("Conversations:", [c.title for c in orchestrator.conversations])
    stats = orchestrator.quota.stats()
    print(f"Anonymous usage: {stats.count}/{stats.limit}, resets at {orchestrator.quota.reset_time_label()}")


if __name__ == "__main__":
    asyncio.run(main())
