import pytest

from errors import InvalidMessageError, InvalidPayloadError
from messages import (
    DirectMessage,
    QueueEnvelope,
    decode_payload,
    normalize_payload,
    parse_batch_request,
)


def _body(**overrides):
    body = {
        "batchId": "b1",
        "feeds": [{"postTitle": "Tech Weekly", "feedUrl": "https://tech.example/feed", "mediaType": "podcast"}],
        "existingGuids": ["g1", "g2"],
        "newestEntryDate": "2024-01-01T00:00:00Z",
        "queuedAt": 1_700_000_000_000,
    }
    body.update(overrides)
    return body


def test_envelope_is_flattened_to_message_bodies():
    payload = {"messages": [{"body": _body()}, {"body": _body(batchId="b2")}, "garbage"]}

    decoded = decode_payload(payload)

    assert isinstance(decoded, QueueEnvelope)
    bodies = normalize_payload(decoded)
    assert [b["batchId"] if b else None for b in bodies] == ["b1", "b2", None]


def test_direct_message_is_wrapped_as_single_body():
    decoded = decode_payload(_body())

    assert isinstance(decoded, DirectMessage)
    assert normalize_payload(decoded) == [_body()]


@pytest.mark.parametrize("payload", [{"foo": 1}, [], "text", None, {"messages": "nope"}])
def test_unrecognized_payloads_are_rejected(payload):
    with pytest.raises(InvalidPayloadError, match="Invalid queue message format"):
        decode_payload(payload)


def test_parse_batch_request_reads_all_fields():
    request = parse_batch_request(_body(retryCount=2, userId="u-1", workerResult="true",
                                        refreshStartedAt="2024-01-01T00:00:00Z"))

    assert request.batch_id == "b1"
    assert request.feeds[0].post_title == "Tech Weekly"
    assert request.feeds[0].media_type == "podcast"
    assert request.existing_guids == ["g1", "g2"]
    assert request.newest_entry_date == "2024-01-01T00:00:00Z"
    assert request.retry_count == 2
    assert request.user_id == "u-1"
    assert request.queued_at == 1_700_000_000_000
    assert request.worker_result is True
    assert request.refresh_started_at == 1_704_067_200_000


def test_post_titles_are_deduplicated_in_order():
    request = parse_batch_request(_body(feeds=[
        {"postTitle": "B", "feedUrl": "https://b.example/feed"},
        {"postTitle": "A", "feedUrl": "https://a.example/feed"},
        {"postTitle": "B", "feedUrl": "https://b.example/feed"},
    ]))

    assert request.post_titles == ["B", "A"]


def test_missing_feeds_keeps_the_batch_id():
    with pytest.raises(InvalidMessageError) as excinfo:
        parse_batch_request({"batchId": "b7"})

    assert excinfo.value.batch_id == "b7"


def test_feed_without_url_is_invalid():
    with pytest.raises(InvalidMessageError) as excinfo:
        parse_batch_request(_body(feeds=[{"postTitle": "Tech Weekly"}]))

    assert excinfo.value.batch_id == "b1"
    assert "feedUrl" in str(excinfo.value)


def test_message_without_batch_id_has_none():
    with pytest.raises(InvalidMessageError) as excinfo:
        parse_batch_request({"feeds": []})

    assert excinfo.value.batch_id is None


@pytest.mark.parametrize("raw, expected", [("1", 1), (1.0, 1), ("2.0", 2), (-1, 0), ("soon", 0), (None, 0), (True, 0)])
def test_retry_count_is_coerced_not_rejected(raw, expected):
    assert parse_batch_request(_body(retryCount=raw)).retry_count == expected
