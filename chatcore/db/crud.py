"""
CRUD operations for ChatCore.
All functions are async and receive the aiosqlite connection from the caller.
"""
import json
import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Optional

import aiosqlite

from chatcore.db.models import (
    Conversation, Message, ToolCall,
    CONVERSATION_STATUSES, CONV_PENDING, CONV_RUNNING, CONV_COMPLETED, CONV_FAILED, CONV_CANCELLED,
    MSG_PENDING, MSG_COMPLETE, MSG_FAILED,
    TOOL_PENDING, TOOL_COMPLETED, TOOL_FAILED,
)

logger = logging.getLogger(__name__)


class ConversationNotFound(Exception):
    """Raised when a conversation id does not exist."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ConversationBusy(Exception):
    """Raised when a second producer tries to stream into a running conversation."""

    def __init__(self, conversation_id: str, stream_owner: Optional[str]) -> None:
        self.conversation_id = conversation_id
        self.stream_owner = stream_owner
        super().__init__(f"Conversation {conversation_id} is already streaming (owner={stream_owner})")


class InvalidTransition(Exception):
    """Raised when a message or tool call is not in a state that allows the requested change."""

    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} {entity_id} from '{current}' to '{target}'")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _json_dump(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _json_load(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


# ─────────────────────────────────────────────
# Conversation CRUD
# ─────────────────────────────────────────────

async def conversation_create(db: aiosqlite.Connection, title: str = "") -> Conversation:
    cid = str(uuid.uuid4())
    now = _now()
    await db.execute(
        "INSERT INTO conversations (id, title, status, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        (cid, title, CONV_PENDING, now, now),
    )
    await db.commit()
    logger.info(f"Conversation created: {cid} '{title}'")
    return Conversation(id=cid, title=title, status=CONV_PENDING, stream_owner=None,
                        created_at=_parse_dt(now), updated_at=_parse_dt(now))


async def conversation_get(db: aiosqlite.Connection, conversation_id: str) -> Optional[Conversation]:
    async with db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_conversation(row)


async def conversation_list(db: aiosqlite.Connection, status: Optional[str] = None) -> list[Conversation]:
    if status:
        async with db.execute(
            "SELECT * FROM conversations WHERE status = ? ORDER BY updated_at DESC", (status,)
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute("SELECT * FROM conversations ORDER BY updated_at DESC") as cur:
            rows = await cur.fetchall()
    return [_row_to_conversation(r) for r in rows]


async def conversation_set_status(db: aiosqlite.Connection, conversation_id: str, status: str) -> bool:
    """Force a conversation status. Leaving `running` also releases the stream slot."""
    if status not in CONVERSATION_STATUSES:
        raise ValueError(f"Invalid status '{status}'. Must be one of {CONVERSATION_STATUSES}")
    owner_sql = "" if status == CONV_RUNNING else ", stream_owner = NULL"
    async with db.execute(
        f"UPDATE conversations SET status = ?, updated_at = ?{owner_sql} WHERE id = ?",
        (status, _now(), conversation_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def _require_conversation(db: aiosqlite.Connection, conversation_id: str) -> Conversation:
    conv = await conversation_get(db, conversation_id)
    if conv is None:
        raise ConversationNotFound(conversation_id)
    return conv


async def _touch(db: aiosqlite.Connection, conversation_id: str, now: str) -> None:
    await db.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))


def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        status=row["status"],
        stream_owner=row["stream_owner"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


# ─────────────────────────────────────────────
# Message CRUD
# ─────────────────────────────────────────────

async def _next_seq(db: aiosqlite.Connection, conversation_id: str) -> int:
    async with db.execute(
        "SELECT MAX(seq) AS max_seq FROM messages WHERE conversation_id = ?", (conversation_id,)
    ) as cur:
        row = await cur.fetchone()
    return (row["max_seq"] or 0) + 1


async def msg_post(db: aiosqlite.Connection, conversation_id: str, content: str) -> Message:
    """Append a complete user message."""
    await _require_conversation(db, conversation_id)
    mid = str(uuid.uuid4())
    now = _now()
    seq = await _next_seq(db, conversation_id)
    await db.execute(
        "INSERT INTO messages (id, conversation_id, role, content, status, seq, created_at, updated_at) "
        "VALUES (?, ?, 'user', ?, ?, ?, ?, ?)",
        (mid, conversation_id, content, MSG_COMPLETE, seq, now, now),
    )
    await _touch(db, conversation_id, now)
    await db.commit()
    logger.debug(f"User message posted: seq={seq} conversation={conversation_id}")
    return Message(id=mid, conversation_id=conversation_id, role="user", content=content,
                   status=MSG_COMPLETE, seq=seq, created_at=_parse_dt(now), updated_at=_parse_dt(now))


async def msg_get(db: aiosqlite.Connection, message_id: str) -> Optional[Message]:
    async with db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def msg_list(
    db: aiosqlite.Connection,
    conversation_id: str,
    include_tool_calls: bool = True,
) -> list[Message]:
    async with db.execute(
        "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq ASC", (conversation_id,)
    ) as cur:
        rows = await cur.fetchall()
    msgs = [_row_to_message(r) for r in rows]

    if include_tool_calls and msgs:
        by_id = {m.id: m for m in msgs}
        async with db.execute(
            "SELECT tc.* FROM tool_calls tc JOIN messages m ON m.id = tc.message_id "
            "WHERE m.conversation_id = ? ORDER BY tc.seq ASC",
            (conversation_id,),
        ) as cur:
            tc_rows = await cur.fetchall()
        for r in tc_rows:
            by_id[r["message_id"]].tool_calls.append(_row_to_tool_call(r))
    return msgs


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"] or "",
        status=row["status"],
        stop_reason=row["stop_reason"],
        seq=row["seq"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


# ─────────────────────────────────────────────
# Assistant stream lifecycle
# ─────────────────────────────────────────────

async def stream_start(db: aiosqlite.Connection, conversation_id: str, owner: Optional[str] = None) -> Message:
    """
    Claim the conversation's streaming slot and open a pending assistant message.

    The conditional UPDATE is the lock: only one producer can move the
    conversation into `running`.
    """
    conv = await _require_conversation(db, conversation_id)
    owner = owner or str(uuid.uuid4())
    now = _now()
    async with db.execute(
        "UPDATE conversations SET status = ?, stream_owner = ?, updated_at = ? WHERE id = ? AND status != ?",
        (CONV_RUNNING, owner, now, conversation_id, CONV_RUNNING),
    ) as cur:
        claimed = cur.rowcount
    if claimed == 0:
        await db.commit()
        raise ConversationBusy(conversation_id, conv.stream_owner)

    mid = str(uuid.uuid4())
    seq = await _next_seq(db, conversation_id)
    await db.execute(
        "INSERT INTO messages (id, conversation_id, role, content, status, seq, created_at, updated_at) "
        "VALUES (?, ?, 'assistant', '', ?, ?, ?, ?)",
        (mid, conversation_id, MSG_PENDING, seq, now, now),
    )
    await db.commit()
    logger.info(f"Stream started: conversation={conversation_id} message={mid} owner={owner}")
    return Message(id=mid, conversation_id=conversation_id, role="assistant", content="",
                   status=MSG_PENDING, seq=seq, created_at=_parse_dt(now), updated_at=_parse_dt(now))


async def _require_pending_message(db: aiosqlite.Connection, message_id: str, target: str) -> Message:
    msg = await msg_get(db, message_id)
    if msg is None:
        raise InvalidTransition("message", message_id, "missing", target)
    if msg.status != MSG_PENDING:
        raise InvalidTransition("message", message_id, msg.status, target)
    return msg


async def stream_append(db: aiosqlite.Connection, message_id: str, chunk: str) -> Message:
    """Append a streamed chunk to the in-flight message. Also refreshes the conversation's updated_at."""
    msg = await _require_pending_message(db, message_id, MSG_PENDING)
    now = _now()
    await db.execute(
        "UPDATE messages SET content = content || ?, updated_at = ? WHERE id = ?",
        (chunk, now, message_id),
    )
    await _touch(db, msg.conversation_id, now)
    await db.commit()
    msg.content += chunk
    msg.updated_at = _parse_dt(now)
    return msg


async def stream_complete(
    db: aiosqlite.Connection,
    message_id: str,
    content: Optional[str] = None,
    stop_reason: Optional[str] = None,
) -> Message:
    """Finalize the in-flight message and release the conversation."""
    msg = await _require_pending_message(db, message_id, MSG_COMPLETE)
    now = _now()
    final_content = msg.content if content is None else content
    await db.execute(
        "UPDATE messages SET content = ?, status = ?, stop_reason = ?, updated_at = ? WHERE id = ?",
        (final_content, MSG_COMPLETE, stop_reason, now, message_id),
    )
    await db.execute(
        "UPDATE conversations SET status = ?, stream_owner = NULL, updated_at = ? WHERE id = ?",
        (CONV_COMPLETED, now, msg.conversation_id),
    )
    await db.commit()
    logger.info(f"Stream completed: message={message_id} stop_reason={stop_reason}")
    msg.content = final_content
    msg.status = MSG_COMPLETE
    msg.stop_reason = stop_reason
    msg.updated_at = _parse_dt(now)
    return msg


async def stream_fail(db: aiosqlite.Connection, message_id: str, cancelled: bool = False) -> Message:
    """Mark the in-flight message failed and end the conversation's turn as failed (or cancelled)."""
    msg = await _require_pending_message(db, message_id, MSG_FAILED)
    now = _now()
    conv_status = CONV_CANCELLED if cancelled else CONV_FAILED
    await _fail_message(db, message_id, now)
    await db.execute(
        "UPDATE conversations SET status = ?, stream_owner = NULL, updated_at = ? WHERE id = ?",
        (conv_status, now, msg.conversation_id),
    )
    await db.commit()
    logger.info(f"Stream ended as {conv_status}: message={message_id}")
    msg.status = MSG_FAILED
    msg.updated_at = _parse_dt(now)
    return msg


async def _fail_message(db: aiosqlite.Connection, message_id: str, now: str) -> None:
    await db.execute(
        "UPDATE messages SET status = ?, updated_at = ? WHERE id = ?", (MSG_FAILED, now, message_id)
    )
    await db.execute(
        "UPDATE tool_calls SET status = ? WHERE message_id = ? AND status = ?",
        (TOOL_FAILED, message_id, TOOL_PENDING),
    )


# ─────────────────────────────────────────────
# Tool calls
# ─────────────────────────────────────────────

async def tool_call_start(
    db: aiosqlite.Connection,
    message_id: str,
    tool_use_id: str,
    tool_name: str,
    tool_input: Optional[dict] = None,
) -> ToolCall:
    msg = await _require_pending_message(db, message_id, MSG_PENDING)
    async with db.execute(
        "SELECT MAX(seq) AS max_seq FROM tool_calls WHERE message_id = ?", (message_id,)
    ) as cur:
        row = await cur.fetchone()
    seq = (row["max_seq"] or 0) + 1
    tcid = str(uuid.uuid4())
    now = _now()
    await db.execute(
        "INSERT INTO tool_calls (id, message_id, tool_use_id, tool_name, input, status, seq, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (tcid, message_id, tool_use_id, tool_name, _json_dump(tool_input), TOOL_PENDING, seq, now),
    )
    await _touch(db, msg.conversation_id, now)
    await db.commit()
    logger.debug(f"Tool call started: {tool_name} tool_use_id={tool_use_id} message={message_id}")
    return ToolCall(id=tcid, message_id=message_id, tool_use_id=tool_use_id, tool_name=tool_name,
                    input=tool_input, output=None, status=TOOL_PENDING, seq=seq, created_at=_parse_dt(now))


async def tool_call_finish(
    db: aiosqlite.Connection,
    message_id: str,
    tool_use_id: str,
    output: Any = None,
    failed: bool = False,
) -> ToolCall:
    """Record a tool call's result (or failure)."""
    async with db.execute(
        "SELECT * FROM tool_calls WHERE message_id = ? AND tool_use_id = ?", (message_id, tool_use_id)
    ) as cur:
        row = await cur.fetchone()
    target = TOOL_FAILED if failed else TOOL_COMPLETED
    if row is None:
        raise InvalidTransition("tool_call", tool_use_id, "missing", target)
    if row["status"] != TOOL_PENDING:
        raise InvalidTransition("tool_call", tool_use_id, row["status"], target)

    msg = await msg_get(db, message_id)
    now = _now()
    await db.execute(
        "UPDATE tool_calls SET status = ?, output = ? WHERE id = ?",
        (target, _json_dump(output), row["id"]),
    )
    await _touch(db, msg.conversation_id, now)
    await db.commit()
    tc = _row_to_tool_call(row)
    tc.status = target
    tc.output = output
    return tc


def _row_to_tool_call(row: aiosqlite.Row) -> ToolCall:
    return ToolCall(
        id=row["id"],
        message_id=row["message_id"],
        tool_use_id=row["tool_use_id"],
        tool_name=row["tool_name"],
        input=_json_load(row["input"]),
        output=_json_load(row["output"]),
        status=row["status"],
        seq=row["seq"],
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Stuck stream detection & recovery
# ─────────────────────────────────────────────

async def list_stuck_streaming(db: aiosqlite.Connection, threshold_minutes: int) -> list[Conversation]:
    """Running conversations whose updated_at is older than `threshold_minutes` ago."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=threshold_minutes)
    async with db.execute(
        "SELECT * FROM conversations WHERE status = ? ORDER BY updated_at ASC", (CONV_RUNNING,)
    ) as cur:
        rows = await cur.fetchall()
    convs = [_row_to_conversation(r) for r in rows]
    return [c for c in convs if c.updated_at < cutoff]


async def recover_stream_by_id(db: aiosqlite.Connection, conversation_id: str) -> bool:
    """
    Recover a conversation whose producer went away mid-stream.

    In-flight assistant messages are marked failed (partial content is kept
    for display but never reaches the LLM), their pending tool calls are
    failed, and the conversation goes back to `pending` with its stream slot
    released.

    Returns True if the conversation was recovered, False if there was
    nothing to do (unknown id or not running). Safe to call repeatedly.
    """
    now = _now()
    async with db.execute(
        "UPDATE conversations SET status = ?, stream_owner = NULL, updated_at = ? WHERE id = ? AND status = ?",
        (CONV_PENDING, now, conversation_id, CONV_RUNNING),
    ) as cur:
        claimed = cur.rowcount
    if claimed == 0:
        await db.commit()
        return False

    async with db.execute(
        "SELECT id FROM messages WHERE conversation_id = ? AND role = 'assistant' AND status = ?",
        (conversation_id, MSG_PENDING),
    ) as cur:
        pending = [r["id"] for r in await cur.fetchall()]
    for message_id in pending:
        await _fail_message(db, message_id, now)
    await db.commit()
    logger.info(f"Recovered stuck stream: conversation={conversation_id} failed_messages={len(pending)}")
    return True
