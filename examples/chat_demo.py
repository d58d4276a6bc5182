"""Minimal console demonstration of a streamed chat turn."""

import sys

from chat_core import get_default_orchestrator
from chat_core.domain.exceptions import BusinessError

if __name__ == "__main__":
    orchestrator = get_default_orchestrator()
    printed = {"len": 0}

    def on_delta(message):
        sys.stdout.write(message.content[printed["len"]:])
        sys.stdout.flush()
        printed["len"] = len(message.content)

    orchestrator.events.subscribe("streaming_delta", on_delta)
    question = " ".join(sys.argv[1:]) or "Introduce yourself in two sentences."
    print("User:", question)
    sys.stdout.write("Assistant: ")
    try:
        result = orchestrator.send(question)
    except BusinessError as e:
        print(f"\n[{e.code}] {e.message}")
        sys.exit(1)
    print()
    print("Conversation:", result.conversation.id, "-", result.conversation.title)
