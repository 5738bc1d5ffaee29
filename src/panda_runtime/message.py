from enum import Enum

from pydantic import BaseModel, field_serializer

from panda_runtime.streaming import ToolCall


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    def to_wire(self) -> dict:
        """Render the OpenAI chat-completions message shape."""
        payload: dict = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": t.id,
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "arguments": t.arguments,
                    },
                }
                for t in self.tool_calls
            ]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload


def system(content: str) -> Message:
    return Message(role=MessageRole.SYSTEM, content=content)


def user(content: str) -> Message:
    return Message(role=MessageRole.USER, content=content)
