"""
Data models (dataclasses) for ChatCore.
These are plain Python objects used across the DB, API, and chat layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any


# Conversation lifecycle
CONV_PENDING = "pending"
CONV_RUNNING = "running"
CONV_COMPLETED = "completed"
CONV_FAILED = "failed"
CONV_CANCELLED = "cancelled"
CONVERSATION_STATUSES = {CONV_PENDING, CONV_RUNNING, CONV_COMPLETED, CONV_FAILED, CONV_CANCELLED}

# Message lifecycle
MSG_PENDING = "pending"
MSG_COMPLETE = "complete"
MSG_FAILED = "failed"

# Tool call lifecycle
TOOL_PENDING = "pending"
TOOL_COMPLETED = "completed"
TOOL_FAILED = "failed"

STOP_TOOL_USE = "tool_use"


@dataclass
class Conversation:
    id: str
    title: str
    status: str                  # pending | running | completed | failed | cancelled
    stream_owner: Optional[str]  # producer holding the streaming slot, if any
    created_at: datetime
    updated_at: datetime


@dataclass
class ToolCall:
    id: str
    message_id: str
    tool_use_id: Optional[str]   # correlates toolUse with toolResult
    tool_name: str
    input: Optional[dict]
    output: Any
    status: str                  # pending | completed | failed
    seq: int                     # insertion order within the message
    created_at: Optional[datetime] = None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str                    # user | assistant
    content: str
    status: str                  # pending | complete | failed
    stop_reason: Optional[str] = None
    seq: int = 0                 # insertion order within the conversation
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    tool_calls: list[ToolCall] = field(default_factory=list)
