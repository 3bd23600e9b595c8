"""Loopback HTTP listener used by the reply path.

The reply command runs in a separate process. After it delivers a message it
POSTs the text here so the running gateway can add the bot's own message to
the chat history::

    POST /internal/record-outgoing
    X-Internal-Token: <sha256 hex of the bot token>
    {"chatId": "...", "threadId": "...", "text": "..."}

Bound to 127.0.0.1 only.
"""

import asyncio
import contextlib
import hashlib
import hmac
import json
import logging
from typing import Awaitable, Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("telegate.internal")

MAX_BODY_BYTES = 64 * 1024
MAX_RECORD_LENGTH = 500
TOKEN_HEADER = "X-Internal-Token"
RECORD_PATH = "/internal/record-outgoing"

RecordCallback = Callable[[str, Optional[str], str], Awaitable[object]]


def internal_token(bot_token: str) -> str:
    """Shared secret for the loopback listener, derived from the bot token."""
    return hashlib.sha256(bot_token.encode("utf-8")).hexdigest()


def _error(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False, "error": {"code": code, "message": message}})


def create_internal_app(token_hash: str, on_record: RecordCallback) -> FastAPI:
    app = FastAPI(title="telegate internal", docs_url=None, redoc_url=None, openapi_url=None)

    @app.post(RECORD_PATH)
    async def record_outgoing(request: Request):  # type: ignore[no-untyped-def]
        supplied = str(request.headers.get(TOKEN_HEADER) or "")
        if not hmac.compare_digest(supplied.encode("utf-8"), token_hash.encode("utf-8")):
            logger.warning("Rejected record-outgoing request with bad token")
            return _error(403, "forbidden", "invalid token")

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > MAX_BODY_BYTES:
            return _error(413, "too_large", "body too large")
        # Chunked bodies carry no length header; count bytes as they arrive
        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > MAX_BODY_BYTES:
                logger.warning(f"Rejected record-outgoing body over {MAX_BODY_BYTES} bytes")
                return _error(413, "too_large", "body too large")

        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error(400, "bad_json", "invalid JSON")
        if not isinstance(data, dict):
            return _error(400, "bad_json", "expected a JSON object")

        chat_id = data.get("chatId")
        text = data.get("text")
        if chat_id in (None, "") or not isinstance(text, str) or not text:
            return _error(400, "missing_fields", "chatId and text are required")
        thread_id = data.get("threadId")

        await on_record(
            str(chat_id),
            str(thread_id) if thread_id not in (None, "") else None,
            text[:MAX_RECORD_LENGTH],
        )
        return {"ok": True}

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class InternalServer:
    """Runs the loopback app as a task on the current event loop."""

    def __init__(self, app: FastAPI, port: int, host: str = "127.0.0.1"):
        self.port = port
        self.host = host
        config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
        self._server = _EmbeddedServer(config)
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._serve(), name="internal-api")
        logger.info(f"Internal listener on {self.host}:{self.port}")

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except (OSError, SystemExit) as e:
            # Port in use: the gateway still works, bot replies just won't be recorded
            logger.error(f"Internal listener on port {self.port} failed: {e}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
