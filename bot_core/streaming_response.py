# File: bot_core/streaming_response.py
"""
Streams incremental agent output to channels that support it.

Informative updates and text chunks become ``typing`` activities tagged with a
``streaminfo`` entity; ``end_stream`` sends the final ``message``. A single
drain task sends queued activities one at a time, keeping at least the
channel interval between consecutive sends. Text chunks that arrive while a
chunk is already queued are merged into it.
"""
import asyncio
import logging
import re
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from botbuilder.schema import Activity, ActivityTypes, Attachment, DeliveryModes, Entity  # type: ignore
from pydantic import BaseModel

from bot_core.turn_context import TurnContext
from core_logic.constants import STREAM_FINAL_FALLBACK_TEXT, STREAMING_INTERVALS

log = logging.getLogger(__name__)

STREAM_INFORMATIVE = "informative"
STREAM_STREAMING = "streaming"
STREAM_FINAL = "final"

_CANCELED_SIGNATURES = ("contentstreamnotallowed", "cancelled by user", "canceled by user")
_UNSUPPORTED_SIGNATURES = ("streaming api is not enabled", "badargument")

_DOC_REFERENCE = re.compile(r"\[doc(\d+)\]", re.IGNORECASE)
_CITATION_REFERENCE = re.compile(r"\[(\d+)\]")

SNIPPET_LENGTH = 477


class StreamEndedError(Exception):
    """Raised when the stream is used after ``end_stream``."""

    def __init__(self):
        super().__init__("The stream has already ended.")


class Citation(BaseModel):
    content: str
    title: Optional[str] = None
    url: Optional[str] = None
    filepath: Optional[str] = None


class StreamInfoEntity(Entity):
    _attribute_map = {
        "type": {"key": "type", "type": "str"},
        "stream_type": {"key": "streamType", "type": "str"},
        "stream_sequence": {"key": "streamSequence", "type": "int"},
        "stream_id": {"key": "streamId", "type": "str"},
    }

    def __init__(self, *, stream_type: str = None, stream_sequence: int = None, stream_id: str = None, **kwargs):
        super().__init__(type="streaminfo", **kwargs)
        self.stream_type = stream_type
        self.stream_sequence = stream_sequence
        self.stream_id = stream_id


class MessageEntity(Entity):
    """schema.org Message entity carrying citations and the AI-generated label."""

    _attribute_map = {
        "type": {"key": "type", "type": "str"},
        "schema_type": {"key": "@type", "type": "str"},
        "schema_context": {"key": "@context", "type": "str"},
        "schema_id": {"key": "@id", "type": "str"},
        "additional_type": {"key": "additionalType", "type": "[str]"},
        "citation": {"key": "citation", "type": "[object]"},
    }

    def __init__(self, *, citation: List[Dict[str, Any]] = None, additional_type: List[str] = None, **kwargs):
        super().__init__(type="https://schema.org/Message", **kwargs)
        self.schema_type = "Message"
        self.schema_context = "https://schema.org"
        self.schema_id = ""
        self.additional_type = additional_type
        self.citation = citation


def format_citations_response(text: str) -> str:
    """``[doc1]`` style references become ``[1]``."""
    return _DOC_REFERENCE.sub(r"[\1]", text or "")


def snippet(text: str, max_length: int = SNIPPET_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    space = cut.rfind(" ")
    if space > 0:
        cut = cut[:space]
    return cut + "..."


def get_used_citations(text: str, citations: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
    positions = {int(m) for m in _CITATION_REFERENCE.findall(text or "")}
    used = [c for c in citations if c.get("position") in positions]
    return used or None


class StreamingResponse:
    """
    Usage::

        response = StreamingResponse(context)
        response.queue_informative_update("Searching...")
        for chunk in chunks:
            response.queue_text_chunk(chunk)
        await response.end_stream()
    """

    def __init__(self, context: TurnContext, interval: Optional[float] = None):
        self._context = context
        self._next_sequence = 1
        self._stream_id: Optional[str] = None
        self._message = ""
        self._attachments: Optional[List[Attachment]] = None
        self._ended = False
        self._canceled = False
        self._citations: List[Dict[str, Any]] = []

        self._enable_feedback_loop = False
        self._feedback_loop_type: Optional[str] = None
        self._enable_generated_by_ai_label = False

        self._queue: Deque[Callable[[], Activity]] = deque()
        self._chunk_queued = False
        self._drain_task: Optional[asyncio.Task] = None
        self._last_sent_at: Optional[float] = None

        activity = context.activity
        channel_id = (activity.channel_id or "").lower()
        if activity.delivery_mode == DeliveryModes.expect_replies:
            self._is_streaming_channel = False
        else:
            self._is_streaming_channel = channel_id in STREAMING_INTERVALS
        self._interval = interval if interval is not None else STREAMING_INTERVALS.get(channel_id, 0.0)

    # --- Properties ---

    @property
    def stream_id(self) -> Optional[str]:
        return self._stream_id

    @property
    def citations(self) -> List[Dict[str, Any]]:
        return self._citations

    @property
    def updates_sent(self) -> int:
        return self._next_sequence - 1

    @property
    def is_streaming_channel(self) -> bool:
        return self._is_streaming_channel

    @property
    def canceled(self) -> bool:
        return self._canceled

    @property
    def interval(self) -> float:
        return self._interval

    def get_message(self) -> str:
        return self._message

    # --- Queueing ---

    def queue_informative_update(self, text: str) -> None:
        self._ensure_not_ended()
        if self._canceled or not self._is_streaming_channel:
            return

        def factory() -> Activity:
            return Activity(
                type=ActivityTypes.typing,
                text=text,
                channel_data={"streamType": STREAM_INFORMATIVE, "streamSequence": self._take_sequence()},
            )

        self._queue_activity(factory)

    def queue_text_chunk(self, text: str, citations: Optional[List[Citation]] = None) -> None:
        self._ensure_not_ended()
        if self._canceled:
            return

        self._message = format_citations_response(self._message + text)
        if citations:
            self.set_citations(citations)
        if self._is_streaming_channel:
            self._queue_next_chunk()

    async def end_stream(self) -> None:
        self._ensure_not_ended()
        self._ended = True
        if self._canceled:
            return

        if not self._is_streaming_channel:
            await self._send_activity(self._final_activity(with_stream_info=False))
            return

        self._queue_next_chunk()
        await self.wait_for_queue()

    async def wait_for_queue(self) -> None:
        task = self._drain_task
        if task is not None:
            await task

    # --- Settings ---

    def set_attachments(self, attachments: List[Attachment]) -> None:
        self._attachments = attachments

    def set_citations(self, citations: List[Citation]) -> None:
        for citation in citations:
            position = len(self._citations) + 1
            self._citations.append(
                {
                    "@type": "Claim",
                    "position": position,
                    "appearance": {
                        "@type": "DigitalDocument",
                        "name": citation.title or f"Document #{position}",
                        "abstract": snippet(citation.content),
                        "url": citation.url,
                    },
                }
            )

    def set_feedback_loop(self, enable_feedback_loop: bool) -> None:
        self._enable_feedback_loop = enable_feedback_loop

    def set_feedback_loop_type(self, feedback_loop_type: str) -> None:
        if feedback_loop_type not in ("default", "custom"):
            raise ValueError("feedback_loop_type must be 'default' or 'custom'")
        self._feedback_loop_type = feedback_loop_type

    def set_generated_by_ai_label(self, enable_generated_by_ai_label: bool) -> None:
        self._enable_generated_by_ai_label = enable_generated_by_ai_label

    # --- Internals ---

    def _ensure_not_ended(self) -> None:
        if self._ended:
            raise StreamEndedError()

    def _take_sequence(self) -> int:
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence

    def _queue_next_chunk(self) -> None:
        if self._chunk_queued:
            return
        self._chunk_queued = True

        def factory() -> Activity:
            self._chunk_queued = False
            if self._ended:
                return self._final_activity(with_stream_info=True)
            return Activity(
                type=ActivityTypes.typing,
                text=self._message,
                channel_data={"streamType": STREAM_STREAMING, "streamSequence": self._take_sequence()},
            )

        self._queue_activity(factory)

    def _final_activity(self, with_stream_info: bool) -> Activity:
        channel_data: Dict[str, Any] = {}
        if with_stream_info:
            channel_data = {"streamType": STREAM_FINAL, "streamSequence": self._take_sequence()}
        if self._enable_feedback_loop and self._feedback_loop_type:
            channel_data["feedbackLoop"] = {"type": self._feedback_loop_type}
        else:
            channel_data["feedbackLoopEnabled"] = self._enable_feedback_loop

        return Activity(
            type=ActivityTypes.message,
            text=self._message or STREAM_FINAL_FALLBACK_TEXT,
            attachments=self._attachments,
            channel_data=channel_data,
        )

    def _queue_activity(self, factory: Callable[[], Activity]) -> None:
        self._queue.append(factory)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        log.debug("Draining streaming queue")
        loop = asyncio.get_running_loop()
        while self._queue and not self._canceled:
            # The interval separates consecutive sends, even across drain runs
            if self._interval and self._last_sent_at is not None:
                remaining = self._interval - (loop.time() - self._last_sent_at)
                if remaining > 0:
                    await asyncio.sleep(remaining)
                if self._canceled or not self._queue:
                    break
            factory = self._queue.popleft()
            activity = factory()
            log.debug(f"Sending streamed activity [{activity.type}] ({len(activity.text or '')} chars)")
            await self._send_activity(activity)
            self._last_sent_at = loop.time()
        log.debug("Streaming queue drained")

    async def _send_activity(self, activity: Activity) -> None:
        channel_data = activity.channel_data if isinstance(activity.channel_data, dict) else {}
        entities: List[Entity] = []

        if "streamType" in channel_data:
            if self._stream_id:
                activity.id = self._stream_id
                channel_data["streamId"] = self._stream_id
            entities.append(
                StreamInfoEntity(
                    stream_type=channel_data["streamType"],
                    stream_sequence=channel_data.get("streamSequence"),
                    stream_id=channel_data.get("streamId"),
                )
            )

        is_final = activity.type == ActivityTypes.message
        if self._citations and not is_final:
            used = get_used_citations(self._message, self._citations)
            if used:
                entities.append(MessageEntity(citation=used))
        if is_final and (self._citations or self._enable_generated_by_ai_label):
            entities.append(
                MessageEntity(
                    citation=self._citations or None,
                    additional_type=["AIGeneratedContent"] if self._enable_generated_by_ai_label else None,
                )
            )

        activity.entities = entities or None

        try:
            response = await self._context.send_activity(activity)
        except Exception as e:
            self._handle_send_error(e)
            if "streamType" in channel_data and self._ended and not self._canceled and not self._is_streaming_channel:
                # Channel refused streaming after end_stream; deliver the text as a plain message
                await self._context.send_activity(self._final_activity(with_stream_info=False))
            return

        if not self._stream_id and response is not None and response.id:
            self._stream_id = response.id

    def _handle_send_error(self, error: Exception) -> None:
        detail = f"{error} {getattr(error, 'body', '') or ''}".lower()
        if any(signature in detail for signature in _CANCELED_SIGNATURES):
            log.warning("Streaming was canceled by the user or the channel")
            self._canceled = True
            self._queue.clear()
            return
        if any(signature in detail for signature in _UNSUPPORTED_SIGNATURES):
            log.warning("Channel does not support streaming; falling back to a single final message")
            self._is_streaming_channel = False
            self._queue.clear()
            self._chunk_queued = False
            return
        log.error(f"Error sending streamed activity: {error}", exc_info=True)
        raise error
