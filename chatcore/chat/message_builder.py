"""
Builds LLM-compatible message lists from stored conversation messages.

Transforms persisted Message records (with their tool calls) into the block
format expected by the LLM layer: lists of ``{"role": ..., "content": [...]}``.
Only complete messages take part; toolUse/toolResult pairs are rebuilt from the
ToolCall rows, and consecutive same-role turns are merged.
"""
import json
from dataclasses import dataclass
from typing import Any, Union

import aiosqlite

from chatcore.db import crud
from chatcore.db.models import Message, ToolCall, MSG_COMPLETE, TOOL_COMPLETED, STOP_TOOL_USE


# ─────────────────────────────────────────────
# Turn variants
# ─────────────────────────────────────────────

@dataclass
class UserTurn:
    content: str


@dataclass
class AssistantTextTurn:
    content: str


@dataclass
class AssistantToolUseTurn:
    content: str
    tool_calls: list[ToolCall]


Turn = Union[UserTurn, AssistantTextTurn, AssistantToolUseTurn]


def classify(msg: Message) -> Turn:
    """Map a stored message onto its turn variant. Unknown roles are a data error."""
    content = msg.content or ""
    if msg.role == "user":
        return UserTurn(content)
    if msg.role == "assistant":
        if msg.stop_reason == STOP_TOOL_USE:
            return AssistantToolUseTurn(content, list(msg.tool_calls))
        return AssistantTextTurn(content)
    raise ValueError(f"Unknown message role '{msg.role}' on message {msg.id}")


# ─────────────────────────────────────────────
# Building
# ─────────────────────────────────────────────

def build_llm_messages(messages: list[Message]) -> list[dict]:
    """
    Converts a list of Message records into LLM message format.

    Filters to complete messages, reconstructs toolUse/toolResult pairs,
    and merges consecutive same-role messages.
    """
    turns: list[dict] = []
    for msg in messages:
        if msg.status != MSG_COMPLETE:
            continue
        turns.extend(_emit(classify(msg)))
    return merge_consecutive_roles(turns)


def _emit(turn: Turn) -> list[dict]:
    if isinstance(turn, UserTurn):
        return [_text_turn("user", turn.content)] if turn.content else []
    if isinstance(turn, AssistantTextTurn):
        return [_text_turn("assistant", turn.content)] if turn.content else []
    if isinstance(turn, AssistantToolUseTurn):
        return _emit_tool_use(turn)
    raise TypeError(f"Unhandled turn variant: {type(turn).__name__}")


def _text_turn(role: str, text: str) -> dict:
    return {"role": role, "content": [{"text": text}]}


def _emit_tool_use(turn: AssistantToolUseTurn) -> list[dict]:
    content: list[dict] = [{"text": turn.content}] if turn.content else []
    for tc in turn.tool_calls:
        content.append({
            "toolUse": {
                "toolUseId": _tool_use_id(tc),
                "name": tc.tool_name,
                "input": tc.input or {},
            }
        })
    out = [{"role": "assistant", "content": content}]

    results = [
        {
            "toolResult": {
                "toolUseId": _tool_use_id(tc),
                "content": [{"text": format_tool_output(tc.output)}],
                "status": "success",
            }
        }
        for tc in turn.tool_calls
        if tc.status == TOOL_COMPLETED
    ]
    if results:
        out.append({"role": "user", "content": results})
    return out


def _tool_use_id(tc: ToolCall) -> str:
    if not tc.tool_use_id:
        raise ValueError(f"Tool call {tc.id} ({tc.tool_name}) has no tool_use_id")
    return tc.tool_use_id


def merge_consecutive_roles(turns: list[dict]) -> list[dict]:
    """Merge runs of adjacent same-role turns, concatenating their content in order."""
    merged: list[dict] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1] = {**merged[-1], "content": merged[-1]["content"] + turn["content"]}
        else:
            merged.append({**turn, "content": list(turn["content"])})
    return merged


def strip_tool_blocks(turns: list[dict]) -> list[dict]:
    """
    Strips toolUse and toolResult blocks, keeping only text.

    LLM APIs reject requests that carry toolUse blocks without a tools
    configuration, so this is used when retrying a conversation that
    previously used tools but currently has none selected.
    """
    stripped = []
    for turn in turns:
        content = [b for b in turn["content"] if "toolUse" not in b and "toolResult" not in b]
        if content:
            stripped.append({**turn, "content": content})
    return merge_consecutive_roles(stripped)


def format_tool_output(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, dict) and isinstance(output.get("content"), list):
        return "\n".join(_format_segment(seg) for seg in output["content"])
    if isinstance(output, (dict, list)):
        return _canonical_json(output)
    if isinstance(output, str):
        return output
    return str(output)


def _format_segment(seg: Any) -> str:
    if isinstance(seg, dict) and isinstance(seg.get("text"), str):
        return seg["text"]
    return _canonical_json(seg)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# ─────────────────────────────────────────────
# Store-backed helper
# ─────────────────────────────────────────────

async def load_llm_messages(
    db: aiosqlite.Connection,
    conversation_id: str,
    strip_tools: bool = False,
) -> list[dict]:
    """Load a conversation's messages (with tool calls) and build its LLM turns."""
    messages = await crud.msg_list(db, conversation_id, include_tool_calls=True)
    turns = build_llm_messages(messages)
    return strip_tool_blocks(turns) if strip_tools else turns
