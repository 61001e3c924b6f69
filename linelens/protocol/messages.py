from __future__ import annotations

import time
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class MessageType(str, Enum):
    EXECUTE = "execute"
    RESULT = "result"
    READY = "ready"
    SHUTDOWN = "shutdown"


class Action(str, Enum):
    EXEC = "exec"
    RESET = "reset"


class BaseMessage(BaseModel):
    # Type field will be defined by subclasses with specific Literal values
    id: int = Field(default=0, description="Correlation id (0 for unsolicited messages)")
    timestamp: float = Field(default_factory=time.time, description="Unix timestamp of message creation")


class ExecuteMessage(BaseMessage):
    type: Literal[MessageType.EXECUTE] = Field(default=MessageType.EXECUTE)
    action: Action = Field(default=Action.EXEC, description="What the worker should do")
    code: str = Field(default="", description="Snippet source to evaluate")
    timeout: int = Field(gt=0, description="Wall-clock budget in milliseconds")


class ErrorInfo(BaseModel):
    kind: str = Field(description="Failure kind: syntax, runtime, timeout or internal")
    message: str = Field(description="Rendered error message")
    traceback: Optional[str] = Field(default=None, description="Snippet traceback, if any")


class ResultMessage(BaseMessage):
    type: Literal[MessageType.RESULT] = Field(default=MessageType.RESULT)
    ok: bool = Field(description="Whether the evaluation succeeded")
    result: Any = Field(default=None, description="Result value when it survives serialization")
    has_result: bool = Field(default=False, description="Whether result carries the actual value")
    rendered: str = Field(default="undefined", description="Formatted representation of the result")
    type_name: str = Field(default="undefined", description="Type label of the result")
    from_statement: bool = Field(default=False, description="Snippet ran as a statement or declaration")
    error: Optional[ErrorInfo] = Field(default=None, description="Failure details when ok is false")
    console: list[str] = Field(default_factory=list, description="Diagnostic writes of this evaluation")
    elapsed_ms: float = Field(default=0.0, description="Time spent in the worker")


class ReadyMessage(BaseMessage):
    type: Literal[MessageType.READY] = Field(default=MessageType.READY)
    session_id: str = Field(description="Session identifier")
    pid: int = Field(description="Worker process id")
    memory_usage: int = Field(default=0, description="Worker resident memory in bytes")


class ShutdownMessage(BaseMessage):
    type: Literal[MessageType.SHUTDOWN] = Field(default=MessageType.SHUTDOWN)
    reason: str = Field(default="requested", description="Shutdown reason")


Message = Union[
    ExecuteMessage,
    ResultMessage,
    ReadyMessage,
    ShutdownMessage,
]


def parse_message(data: dict[str, Any]) -> Message:
    """Parse a message from a dictionary.

    Args:
        data: Dictionary containing message data

    Returns:
        Parsed message object

    Raises:
        ValueError: If message type is unknown or data is invalid
    """
    message_type = data.get("type")
    if message_type is None:
        raise ValueError("Message type is missing")

    message_classes: dict[str, type[Message]] = {
        MessageType.EXECUTE.value: ExecuteMessage,
        MessageType.RESULT.value: ResultMessage,
        MessageType.READY.value: ReadyMessage,
        MessageType.SHUTDOWN.value: ShutdownMessage,
    }

    message_class = message_classes.get(message_type)
    if not message_class:
        raise ValueError(f"Unknown message type: {message_type}")

    return message_class(**data)
