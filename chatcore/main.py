"""
ChatCore main entry point.

Starts a FastAPI HTTP server that:
  1. Exposes conversations, messages and the assistant stream lifecycle over REST
  2. Builds LLM request payloads from stored history
  3. Renders assistant markdown (final or streaming) to safe HTML
  4. Runs the stuck-stream recovery sweep in the background
"""
import logging
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from chatcore import config
from chatcore.config import HOST, PORT, VERSION, RELOAD_ENABLED
from chatcore.db.database import get_db, close_db
from chatcore.db import crud
from chatcore.db.crud import ConversationNotFound, ConversationBusy, InvalidTransition
from chatcore.db.models import Conversation, Message, ToolCall
from chatcore.chat.message_builder import load_llm_messages
from chatcore.chat.stream_recovery import StreamRecovery
from chatcore.web import markdown

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("chatcore")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB, start the recovery sweep
    await get_db()
    recovery = None
    if config.STREAM_RECOVERY_ENABLED:
        recovery = StreamRecovery()
        recovery.start()
    app.state.stream_recovery = recovery
    logger.info(f"ChatCore running at http://{HOST}:{PORT}")
    yield
    # Shutdown: stop sweeping, close DB
    if recovery is not None:
        await recovery.stop()
    await close_db()


app = FastAPI(
    title="ChatCore",
    description="Conversation state, LLM payload building and safe markdown rendering for streaming chat.",
    version=VERSION,
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Serializers
# ─────────────────────────────────────────────

def _conversation_json(c: Conversation) -> dict:
    return {"id": c.id, "title": c.title, "status": c.status, "stream_owner": c.stream_owner,
            "created_at": c.created_at.isoformat(), "updated_at": c.updated_at.isoformat()}


def _tool_call_json(tc: ToolCall) -> dict:
    return {"id": tc.id, "tool_use_id": tc.tool_use_id, "tool_name": tc.tool_name,
            "input": tc.input, "output": tc.output, "status": tc.status, "seq": tc.seq}


def _message_json(m: Message) -> dict:
    return {"id": m.id, "conversation_id": m.conversation_id, "role": m.role,
            "content": m.content, "status": m.status, "stop_reason": m.stop_reason, "seq": m.seq,
            "created_at": m.created_at.isoformat() if m.created_at else None,
            "tool_calls": [_tool_call_json(tc) for tc in m.tool_calls]}


async def _conversation_or_404(db, conversation_id: str) -> Conversation:
    conv = await crud.conversation_get(db, conversation_id)
    if conv is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return conv


async def _message_or_404(db, conversation_id: str, message_id: str) -> Message:
    msg = await crud.msg_get(db, message_id)
    if msg is None or msg.conversation_id != conversation_id:
        raise HTTPException(status_code=404, detail=f"Message not found: {message_id}")
    return msg


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ConversationNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConversationBusy):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


# ─────────────────────────────────────────────
# Conversations & messages
# ─────────────────────────────────────────────

class ConversationCreate(BaseModel):
    title: str = ""

class MessageCreate(BaseModel):
    content: str


@app.get("/api/conversations")
async def api_conversations(status: str | None = None):
    db = await get_db()
    return [_conversation_json(c) for c in await crud.conversation_list(db, status=status)]


@app.post("/api/conversations", status_code=201)
async def api_create_conversation(body: ConversationCreate):
    db = await get_db()
    return _conversation_json(await crud.conversation_create(db, body.title))


@app.get("/api/conversations/{conversation_id}")
async def api_conversation(conversation_id: str):
    db = await get_db()
    return _conversation_json(await _conversation_or_404(db, conversation_id))


@app.get("/api/conversations/{conversation_id}/messages")
async def api_messages(conversation_id: str):
    db = await get_db()
    await _conversation_or_404(db, conversation_id)
    return [_message_json(m) for m in await crud.msg_list(db, conversation_id)]


@app.post("/api/conversations/{conversation_id}/messages", status_code=201)
async def api_post_message(conversation_id: str, body: MessageCreate):
    db = await get_db()
    try:
        m = await crud.msg_post(db, conversation_id, body.content)
    except ConversationNotFound as exc:
        raise _http_error(exc)
    return _message_json(m)


@app.get("/api/conversations/{conversation_id}/llm-messages")
async def api_llm_messages(conversation_id: str, strip_tools: bool = False):
    db = await get_db()
    await _conversation_or_404(db, conversation_id)
    return await load_llm_messages(db, conversation_id, strip_tools=strip_tools)


# ─────────────────────────────────────────────
# Assistant stream lifecycle
# ─────────────────────────────────────────────

class StreamStart(BaseModel):
    owner: str | None = None

class StreamChunk(BaseModel):
    text: str

class StreamComplete(BaseModel):
    content: str | None = None
    stop_reason: str | None = None

class StreamFail(BaseModel):
    cancelled: bool = False

class ToolCallCreate(BaseModel):
    tool_use_id: str
    tool_name: str
    input: dict | None = None

class ToolCallResult(BaseModel):
    output: Any = None


@app.post("/api/conversations/{conversation_id}/stream/start", status_code=201)
async def api_stream_start(conversation_id: str, body: StreamStart):
    db = await get_db()
    try:
        m = await crud.stream_start(db, conversation_id, owner=body.owner)
    except (ConversationNotFound, ConversationBusy) as exc:
        raise _http_error(exc)
    return _message_json(m)


@app.post("/api/conversations/{conversation_id}/stream/{message_id}/chunk")
async def api_stream_chunk(conversation_id: str, message_id: str, body: StreamChunk):
    db = await get_db()
    await _message_or_404(db, conversation_id, message_id)
    try:
        m = await crud.stream_append(db, message_id, body.text)
    except InvalidTransition as exc:
        raise _http_error(exc)
    return {"id": m.id, "html": markdown.render_streaming(m.content)}


@app.post("/api/conversations/{conversation_id}/stream/{message_id}/tool-calls", status_code=201)
async def api_tool_call_start(conversation_id: str, message_id: str, body: ToolCallCreate):
    db = await get_db()
    await _message_or_404(db, conversation_id, message_id)
    try:
        tc = await crud.tool_call_start(db, message_id, body.tool_use_id, body.tool_name, body.input)
    except InvalidTransition as exc:
        raise _http_error(exc)
    return _tool_call_json(tc)


@app.post("/api/conversations/{conversation_id}/stream/{message_id}/tool-calls/{tool_use_id}/complete")
async def api_tool_call_complete(conversation_id: str, message_id: str, tool_use_id: str, body: ToolCallResult):
    db = await get_db()
    await _message_or_404(db, conversation_id, message_id)
    try:
        tc = await crud.tool_call_finish(db, message_id, tool_use_id, output=body.output)
    except InvalidTransition as exc:
        raise _http_error(exc)
    return _tool_call_json(tc)


@app.post("/api/conversations/{conversation_id}/stream/{message_id}/tool-calls/{tool_use_id}/fail")
async def api_tool_call_fail(conversation_id: str, message_id: str, tool_use_id: str, body: ToolCallResult):
    db = await get_db()
    await _message_or_404(db, conversation_id, message_id)
    try:
        tc = await crud.tool_call_finish(db, message_id, tool_use_id, output=body.output, failed=True)
    except InvalidTransition as exc:
        raise _http_error(exc)
    return _tool_call_json(tc)


@app.post("/api/conversations/{conversation_id}/stream/{message_id}/complete")
async def api_stream_complete(conversation_id: str, message_id: str, body: StreamComplete):
    db = await get_db()
    await _message_or_404(db, conversation_id, message_id)
    try:
        m = await crud.stream_complete(db, message_id, content=body.content, stop_reason=body.stop_reason)
    except InvalidTransition as exc:
        raise _http_error(exc)
    return _message_json(m)


@app.post("/api/conversations/{conversation_id}/stream/{message_id}/fail")
async def api_stream_fail(conversation_id: str, message_id: str, body: StreamFail):
    db = await get_db()
    await _message_or_404(db, conversation_id, message_id)
    try:
        m = await crud.stream_fail(db, message_id, cancelled=body.cancelled)
    except InvalidTransition as exc:
        raise _http_error(exc)
    return _message_json(m)


@app.post("/api/conversations/{conversation_id}/recover")
async def api_recover(conversation_id: str):
    db = await get_db()
    await _conversation_or_404(db, conversation_id)
    recovered = await crud.recover_stream_by_id(db, conversation_id)
    return {"ok": True, "recovered": recovered}


# ─────────────────────────────────────────────
# Markdown rendering
# ─────────────────────────────────────────────

class RenderRequest(BaseModel):
    markdown: str | None = None
    streaming: bool = False


@app.post("/api/render")
async def api_render(body: RenderRequest):
    render = markdown.render_streaming if body.streaming else markdown.render
    return {"html": render(body.markdown)}


# ─────────────────────────────────────────────
# Config & health
# ─────────────────────────────────────────────

@app.get("/api/config")
async def api_config():
    return config.get_config_dict()


class ConfigUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    HOST: str | None = None
    PORT: int | None = Field(None, ge=1, le=65535)
    STREAM_RECOVERY_ENABLED: bool | None = None
    STREAM_SWEEP_INTERVAL: float | None = Field(None, gt=0)
    STREAM_STUCK_THRESHOLD_MINUTES: int | None = Field(None, ge=1)
    JSONL_MIN_PATCH_LINES: int | None = Field(None, ge=1)
    JSONL_BUFFER_BLANK_LINES: bool | None = None


@app.put("/api/config")
async def api_save_config(body: ConfigUpdate):
    config.save_config_dict(body.model_dump(exclude_unset=True, exclude_none=True))
    return {"ok": True, "restart_required": True}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "ChatCore"}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("chatcore.main:app", host=HOST, port=PORT, reload=RELOAD_ENABLED)
