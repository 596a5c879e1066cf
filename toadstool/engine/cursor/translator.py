"""Translate cursor-agent stream events into ACP session notifications.

One translator instance serves one prompt invocation. Notifications are
returned from :meth:`CursorToAcpTranslator.translate` and also pushed to
an optional notification sink; side-channel events (initialisation,
prompt completion, truncation, translation errors) go to the event sink.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from ...adapters.events import (
    AgentMessageChunk,
    PromptCompleted,
    SessionInitialized,
    SessionNotification,
    ToolCall,
    ToolCallUpdate,
    ToolResultTruncated,
    TranslatorError,
    UserMessageChunk,
)
from ..config import DEFAULT_MAX_OUTPUT_BYTES, EventSink, fire_event
from ..errors import TranslationError
from .hook_utils import infer_tool_kind
from .stream_parser import truncate_utf8
from .stream_types import (
    AssistantMessageEvent,
    ResultEvent,
    SystemInitEvent,
    ToolCallCompletedEvent,
    ToolCallStartedEvent,
    ToolPayload,
    UserMessageEvent,
)

logger = logging.getLogger(__name__)


def tool_result_succeeded(result: Any) -> bool:
    """Success of a completed tool call from its vendor result object.

    An ``error`` (or ``rejected``) key wins: success iff it is null.
    Otherwise a ``success`` key decides: success iff it is non-null.
    Anything else counts as success.
    """
    if not isinstance(result, dict):
        return True
    for failure_key in ("error", "rejected"):
        if failure_key in result:
            return result[failure_key] is None
    if "success" in result:
        return result["success"] is not None
    return True


def tool_result_text(result: Any) -> str | None:
    """Raw output text: the body's ``output`` string, else the JSON form."""
    if result is None:
        return None
    if isinstance(result, dict):
        for key in ("success", "error"):
            body = result.get(key)
            if isinstance(body, dict) and isinstance(body.get("output"), str):
                return body["output"]
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False)


class CursorToAcpTranslator:
    """Stateful mapper from :data:`StreamEvent` to session notifications."""

    def __init__(
        self,
        *,
        tool_result_max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        notification_sink: EventSink | None = None,
        event_sink: EventSink | None = None,
        strict: bool = False,
    ) -> None:
        self._max_tool_result_bytes = tool_result_max_bytes
        self._notification_sink = notification_sink
        self._event_sink = event_sink
        self._strict = strict
        self._session_id: str | None = None
        self._started_calls: set[str] = set()
        self._truncated_calls: set[str] = set()
        self.total_tool_calls = 0

    @property
    def session_id(self) -> str | None:
        """Vendor session id from the most recent system-init event."""
        return self._session_id

    def reset(self) -> None:
        self._session_id = None
        self._started_calls.clear()
        self._truncated_calls.clear()
        self.total_tool_calls = 0

    def translate(self, event: Any) -> list[SessionNotification]:
        if isinstance(event, SystemInitEvent):
            notifications = self._on_system_init(event)
        elif isinstance(event, UserMessageEvent):
            notifications = self._on_user_message(event)
        elif isinstance(event, AssistantMessageEvent):
            notifications = self._on_assistant_message(event)
        elif isinstance(event, ToolCallStartedEvent):
            notifications = self._on_tool_call_started(event)
        elif isinstance(event, ToolCallCompletedEvent):
            notifications = self._on_tool_call_completed(event)
        elif isinstance(event, ResultEvent):
            notifications = self._on_result(event)
        else:
            self._on_unhandled(event)
            return []

        for notification in notifications:
            fire_event(self._notification_sink, notification)
        return notifications

    # ── Handlers ──

    def _on_system_init(self, event: SystemInitEvent) -> list[SessionNotification]:
        self._session_id = event.session_id
        logger.debug(
            "System init session=%s model=%s", event.session_id, event.model,
        )
        fire_event(self._event_sink, SessionInitialized(
            session_id=event.session_id,
            model=event.model,
            permission_mode=event.permission_mode,
            cwd=event.cwd,
        ))
        return []

    def _on_user_message(self, event: UserMessageEvent) -> list[SessionNotification]:
        text = event.message.text
        if not text:
            return []
        return [UserMessageChunk(
            session_id=event.session_id,
            content={"type": "text", "text": text},
        )]

    def _on_assistant_message(
        self, event: AssistantMessageEvent,
    ) -> list[SessionNotification]:
        text = event.message.text
        if not text:
            return []
        return [AgentMessageChunk(
            session_id=event.session_id,
            content={"type": "text", "text": text},
            is_final=event.timestamp_ms is None,
        )]

    def _tool_call(
        self, call_id: str, session_id: str, payload: ToolPayload,
    ) -> ToolCall:
        self._started_calls.add(call_id)
        self.total_tool_calls += 1
        return ToolCall(
            session_id=session_id,
            tool_call_id=call_id,
            title=payload.name,
            kind=infer_tool_kind(payload.name).value,
            status="in_progress",
            raw_input=dict(payload.args),
        )

    def _on_tool_call_started(
        self, event: ToolCallStartedEvent,
    ) -> list[SessionNotification]:
        return [self._tool_call(event.call_id, event.session_id, event.tool_payload)]

    def _on_tool_call_completed(
        self, event: ToolCallCompletedEvent,
    ) -> list[SessionNotification]:
        notifications: list[SessionNotification] = []
        payload = event.tool_payload
        if event.call_id not in self._started_calls:
            logger.debug(
                "Tool call %s completed without a start; synthesising one",
                event.call_id,
            )
            notifications.append(
                self._tool_call(event.call_id, event.session_id, payload)
            )

        success = tool_result_succeeded(payload.result)
        raw_output = tool_result_text(payload.result)
        if raw_output is not None:
            raw_output = self._truncate_output(
                event.call_id, event.session_id, raw_output,
            )

        notifications.append(ToolCallUpdate(
            session_id=event.session_id,
            tool_call_id=event.call_id,
            status="completed" if success else "failed",
            raw_output=raw_output,
        ))
        return notifications

    def _on_result(self, event: ResultEvent) -> list[SessionNotification]:
        fire_event(self._event_sink, PromptCompleted(
            session_id=event.session_id,
            text=event.result_text,
            duration_ms=event.duration_ms,
            success=not event.is_error,
        ))
        return []

    def _on_unhandled(self, event: Any) -> None:
        event_type = getattr(event, "type", None) or type(event).__name__
        message = f"Unhandled stream event: {event_type}"
        logger.error("translate: %s", message)
        fire_event(self._event_sink, TranslatorError(
            session_id=getattr(event, "session_id", None) or self._session_id,
            message=message,
            stream_event_type=str(event_type),
        ))
        if self._strict:
            raise TranslationError(str(event_type))

    # ── Helpers ──

    def _truncate_output(self, call_id: str, session_id: str, text: str) -> str:
        original_bytes = len(text.encode("utf-8"))
        if original_bytes <= self._max_tool_result_bytes:
            return text
        if call_id not in self._truncated_calls:
            self._truncated_calls.add(call_id)
            logger.warning(
                "Truncating tool result for %s: %d bytes > %d",
                call_id, original_bytes, self._max_tool_result_bytes,
            )
            fire_event(self._event_sink, ToolResultTruncated(
                session_id=session_id,
                tool_call_id=call_id,
                original_bytes=original_bytes,
                limit_bytes=self._max_tool_result_bytes,
            ))
        return truncate_utf8(text, self._max_tool_result_bytes)
