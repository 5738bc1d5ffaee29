"""Interactive chat against a small in-memory project.

Demonstrates:
- Registering a provider with ProviderRegistry
- Staging writes and commands as artifacts with StagingToolContext
- Streaming a run with Runner.iter and handling reset events
- Switching between discuss and build modes

Usage:
    uv run --env-file=.env examples/build_chat_example.py --provider openai --model gpt-4o-mini
    uv run --env-file=.env examples/build_chat_example.py --provider anthropic --model claude-sonnet-4-5 --mode discuss
    uv run examples/build_chat_example.py --provider custom --url http://localhost:8000/v1 --model Qwen/Qwen3-8B --trace
"""

import argparse
import asyncio
import logging

from panda_runtime.artifacts import ArtifactQueue, InMemoryFileStore, StagingToolContext
from panda_runtime.config import ProviderConfig, ProviderType, RuntimeOptions
from panda_runtime.events import (
    CompleteEvent,
    ErrorEvent,
    ResetEvent,
    StatusThinkingEvent,
    TextEvent,
    ToolResultEvent,
)
from panda_runtime.guardrails import ChatMode
from panda_runtime.instrumentation import configure_logging
from panda_runtime.message import Message, MessageRole
from panda_runtime.prompts import ProjectFile, PromptContext
from panda_runtime.registry import ProviderRegistry
from panda_runtime.runner import Runner


PROJECT_FILES = {
    "src/App.tsx": (
        "export default function App() {\n"
        "  return <h1>Hello</h1>\n"
        "}\n"
    ),
    "package.json": '{\n  "name": "demo",\n  "scripts": {"build": "vite build"}\n}\n',
}


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from panda_runtime.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def chat_turn(runner, context, history):
    answer = ""
    async for event in runner.iter(context):
        if isinstance(event, TextEvent):
            answer += event.content
            print(event.content, end="", flush=True)
        elif isinstance(event, ResetEvent):
            answer = ""
            print("\n[rewriting answer]\n", flush=True)
        elif isinstance(event, StatusThinkingEvent):
            logging.getLogger("chat").debug(event.content)
        elif isinstance(event, ToolResultEvent):
            result = event.tool_result
            print(f"\n[{result.tool_name}: {'failed' if result.error else 'ok'}]")
        elif isinstance(event, CompleteEvent):
            answer = event.content
            print(f"\n({event.usage.total_tokens} tokens)\n")
        elif isinstance(event, ErrorEvent):
            print(f"\nError ({event.kind.value}): {event.error}\n")
            return

    history.append(Message(role=MessageRole.USER, content=context.user_message))
    history.append(Message(role=MessageRole.ASSISTANT, content=answer))


async def main():
    parser = argparse.ArgumentParser(description="Build/discuss chat")
    parser.add_argument("--provider", choices=[t.value for t in ProviderType], default="openai")
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--url", default=None)
    parser.add_argument("--mode", choices=[m.value for m in ChatMode], default="build")
    parser.add_argument("--trace", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    if args.trace:
        setup_tracing("build-chat")

    provider_type = ProviderType(args.provider)
    registry = ProviderRegistry()
    registry.create("main", ProviderConfig(
        provider=provider_type,
        base_url=args.url,
        default_model=args.model,
    ))

    queue = ArtifactQueue()
    files = InMemoryFileStore(dict(PROJECT_FILES))
    runner = Runner(
        registry.default(),
        StagingToolContext(files, queue, chat_id="example"),
        options=RuntimeOptions(model=args.model),
    )
    mode = ChatMode(args.mode)
    history: list[Message] = []

    print(f"Chat ({mode.value} mode). Type /mode to switch, /artifacts to list staged changes.\n")

    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        if user_input == "/mode":
            mode = ChatMode.DISCUSS if mode == ChatMode.BUILD else ChatMode.BUILD
            print(f"Switched to {mode.value} mode.\n")
            continue
        if user_input == "/artifacts":
            for artifact in queue.pending():
                print(f"- {artifact.id}: {artifact.description}")
            print()
            continue

        context = PromptContext(
            project_name="demo",
            project_description="A small Vite + React app",
            files=[ProjectFile(path=p, content=c) for p, c in PROJECT_FILES.items()],
            chat_mode=mode,
            previous_messages=history,
            user_message=user_input,
        )
        print("Assistant: ", end="")
        await chat_turn(runner, context, history)


if __name__ == "__main__":
    asyncio.run(main())
