"""Middleware for request correlation and automatic audit capture.

Both layers are plain ASGI callables so that messages reach the server as
soon as the application emits them.
"""

import json
from typing import Any, Optional
from uuid import uuid4

import structlog
from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from authledger.api.dependencies import request_metadata
from authledger.services.audit_recorder import AuditRecorder
from authledger.services.audit_rules import (
    UNKNOWN_ENTITY_ID,
    AuditRules,
    action_for_method,
    changes_for_exchange,
    describe,
    entity_id_for_exchange,
)

logger = structlog.get_logger(__name__)

# Bodies above this size are passed through but not inspected
MAX_CAPTURE_BYTES = 64 * 1024

CORRELATION_HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware:
    """Middleware to add correlation ID to every request.

    - Uses the X-Correlation-Id header when present, otherwise a new UUID4
    - Stores it in request.state.correlation_id
    - Binds it to the structlog context for all subsequent logging
    - Echoes it in the X-Correlation-Id response header
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = Headers(scope=scope).get(CORRELATION_HEADER) or str(uuid4())
        Request(scope).state.correlation_id = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        async def send_with_header(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[CORRELATION_HEADER] = correlation_id
            await send(message)

        await self.app(scope, receive, send_with_header)


class BodyCapture:
    """Bounded copy of a message body stream.

    Chunks are appended as they pass; once ``max_bytes`` would be exceeded
    the copy is dropped and ``truncated`` is set.
    """

    def __init__(self, max_bytes: int = MAX_CAPTURE_BYTES):
        self._max_bytes = max_bytes
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        if self.truncated or not chunk:
            return
        if self._size + len(chunk) > self._max_bytes:
            self.truncated = True
            self._chunks = []
            return
        self._chunks.append(chunk)
        self._size += len(chunk)

    @property
    def body(self) -> bytes:
        return b"".join(self._chunks)

    def json(self) -> Optional[Any]:
        if self.truncated or not self._chunks:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return None


class AuditMiddleware:
    """Infer and record an audit entry for authenticated mutating requests.

    Request and response messages are forwarded untouched while bounded
    copies are kept. Inference runs only after the final response body
    message has been handed to the server, and the entry is queued on the
    recorder's dispatcher. Exchanges whose handler already recorded a
    precise entry (``request.state.audit_recorded``) are left alone.
    """

    def __init__(self, app: ASGIApp, recorder: AuditRecorder, rules: AuditRules):
        self.app = app
        self.recorder = recorder
        self.rules = rules

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.rules.should_audit(
            scope["method"], scope["path"]
        ):
            await self.app(scope, receive, send)
            return

        request_body = BodyCapture()
        response_body = BodyCapture()
        status_code = 500

        async def receive_capturing() -> Message:
            message = await receive()
            if message["type"] == "http.request":
                request_body.feed(message.get("body", b""))
            return message

        async def send_capturing(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            elif message["type"] == "http.response.body":
                response_body.feed(message.get("body", b""))

            await send(message)

            if message["type"] == "http.response.body" and not message.get("more_body", False):
                try:
                    self._record(Request(scope), request_body, status_code, response_body)
                except Exception as e:
                    logger.error("audit_capture_hook_failed", error=str(e))

        await self.app(scope, receive_capturing, send_capturing)

    def _record(
        self,
        request: Request,
        request_capture: BodyCapture,
        status_code: int,
        response_capture: BodyCapture,
    ) -> None:
        if getattr(request.state, "audit_recorded", False):
            return
        user = getattr(request.state, "user", None)
        if user is None:
            return

        path = request.url.path
        entity = self.rules.entity_for(path)
        if entity is None:
            return

        request_body = request_capture.json()
        response_payload = response_capture.json()
        entity_id = entity_id_for_exchange(path, request_body, response_payload)
        if entity_id == UNKNOWN_ENTITY_ID:
            logger.debug("audit_skipped", path=path, reason="entity_id_unknown")
            return

        action = action_for_method(request.method)
        changes = changes_for_exchange(
            action,
            request_body=request_body,
            response_payload=response_payload,
            original=getattr(request.state, "audit_original", None),
        )
        self.recorder.record(
            user.id,
            action,
            entity,
            entity_id,
            before=changes.before,
            after=changes.after,
            metadata=request_metadata(request, status_code=status_code),
            description=describe(action, entity, entity_id),
        )
