"""Tool-call deduplication and loop detection.

Pure functions over run history; the caller owns the state.
"""

from panda_runtime.streaming import ToolCall


def fingerprint(call: ToolCall) -> str:
    """Exact-match key: tool name plus the raw argument string."""
    return f"{call.name}:{call.arguments}"


def dedupe(
    calls: list[ToolCall], executed: set[str]
) -> tuple[list[ToolCall], list[ToolCall]]:
    """Split *calls* into ``(unique, skipped)``.

    Fingerprints of the unique calls are added to *executed*, so a
    repeat later in the same batch is skipped as well.
    """
    unique: list[ToolCall] = []
    skipped: list[ToolCall] = []
    for call in calls:
        key = fingerprint(call)
        if key in executed:
            skipped.append(call)
            continue
        executed.add(key)
        unique.append(call)
    return unique, skipped


def tool_pattern(calls: list[ToolCall]) -> str:
    """Ordered distinct tool names, comma-joined."""
    return ",".join(dict.fromkeys(c.name for c in calls))


def detect_loop(history: list[str], threshold: int = 3) -> str | None:
    """Return the repeated pattern if the last *threshold* entries match.

    Empty patterns (iterations where every call was skipped) never
    count as a loop.
    """
    if len(history) < threshold:
        return None
    recent = history[-threshold:]
    if recent[0] and all(p == recent[0] for p in recent):
        return recent[0]
    return None
