#!/usr/bin/env python3
"""
Inbound payload decoding.

The queue consumer endpoint accepts two shapes: the queue-native envelope
``{"messages": [{"body": {...}}, ...]}`` and a single batch request posted
directly (recognized by its ``batchId``). Both are decoded here into a small
tagged union and normalized into a list of raw message bodies; each body is
then validated into a BatchRequest independently so that one bad message
does not poison the rest.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from errors import InvalidMessageError, InvalidPayloadError
from models import BatchRequest, FeedRef
from utils import parse_timestamp_ms

INVALID_PAYLOAD_MESSAGE = "Invalid queue message format"


@dataclass(frozen=True)
class QueueEnvelope:
    """Messages delivered by the queue transport."""
    bodies: List[Any]


@dataclass(frozen=True)
class DirectMessage:
    """A single batch request posted directly (manual runs and tests)."""
    body: Dict[str, Any]


InboundPayload = Union[QueueEnvelope, DirectMessage]


def decode_payload(payload: Any) -> InboundPayload:
    """Classify a parsed JSON payload into one of the accepted shapes.

    Raises:
        InvalidPayloadError: If the payload matches neither shape.
    """
    if isinstance(payload, dict):
        messages = payload.get("messages")
        if isinstance(messages, list):
            return QueueEnvelope(bodies=[
                message.get("body") if isinstance(message, dict) else None
                for message in messages
            ])
        if "batchId" in payload:
            return DirectMessage(body=payload)
    raise InvalidPayloadError(INVALID_PAYLOAD_MESSAGE)


def normalize_payload(payload: InboundPayload) -> List[Any]:
    """Flatten either payload shape into the list of message bodies."""
    if isinstance(payload, QueueEnvelope):
        return list(payload.bodies)
    if isinstance(payload, DirectMessage):
        return [payload.body]
    raise InvalidPayloadError(INVALID_PAYLOAD_MESSAGE)


def _truthy_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return value is True


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_count(value: Any) -> int:
    """Best-effort non-negative integer; anything unreadable counts as 0."""
    if isinstance(value, bool) or value is None:
        return 0
    try:
        count = int(float(value)) if isinstance(value, (float, str)) else int(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(count, 0)


def extract_batch_id(body: Any) -> Optional[str]:
    """Best-effort batch id from an unvalidated message body."""
    if isinstance(body, dict):
        batch_id = body.get("batchId")
        if isinstance(batch_id, (str, int)) and not isinstance(batch_id, bool):
            return str(batch_id).strip() or None
    return None


def _parse_feed(raw: Any, index: int, batch_id: str) -> FeedRef:
    if not isinstance(raw, dict):
        raise InvalidMessageError(f"feeds[{index}] must be an object", batch_id)
    post_title = raw.get("postTitle")
    feed_url = raw.get("feedUrl")
    if not isinstance(post_title, str) or not post_title.strip():
        raise InvalidMessageError(f"feeds[{index}].postTitle is required", batch_id)
    if not isinstance(feed_url, str) or not feed_url.strip():
        raise InvalidMessageError(f"feeds[{index}].feedUrl is required", batch_id)
    media_type = raw.get("mediaType")
    if media_type is not None and not isinstance(media_type, str):
        raise InvalidMessageError(f"feeds[{index}].mediaType must be a string", batch_id)
    return FeedRef(post_title=post_title.strip(), feed_url=feed_url.strip(), media_type=media_type or None)


def parse_batch_request(body: Any) -> BatchRequest:
    """Validate one message body into a BatchRequest.

    Raises:
        InvalidMessageError: With the batch id attached when one was readable.
    """
    if not isinstance(body, dict):
        raise InvalidMessageError("Message body must be an object")

    batch_id = extract_batch_id(body)
    if not batch_id:
        raise InvalidMessageError("batchId is required")

    feeds_raw = body.get("feeds")
    if not isinstance(feeds_raw, list):
        raise InvalidMessageError("feeds must be an array", batch_id)
    feeds = [_parse_feed(raw, i, batch_id) for i, raw in enumerate(feeds_raw)]

    guids_raw = body.get("existingGuids")
    if guids_raw is None:
        guids_raw = []
    if not isinstance(guids_raw, list):
        raise InvalidMessageError("existingGuids must be an array", batch_id)
    existing_guids = [str(g) for g in guids_raw if g is not None]

    retry_count = _coerce_count(body.get("retryCount"))

    return BatchRequest(
        batch_id=batch_id,
        feeds=feeds,
        existing_guids=existing_guids,
        newest_entry_date=body.get("newestEntryDate"),
        user_id=_optional_str(body.get("userId")),
        priority=_optional_str(body.get("priority")),
        retry_count=retry_count,
        queued_at=parse_timestamp_ms(body.get("queuedAt")),
        worker_result=_truthy_flag(body.get("workerResult")),
        refresh_started_at=parse_timestamp_ms(body.get("refreshStartedAt")),
    )
