from datetime import timedelta

import pytest

from paysync.app.billing import DuplicateEvent, ProcessorDomain, WebhookLogStatus
from paysync.app.billing.event_log import MAX_ERROR_MESSAGE_LENGTH, EventLog


@pytest.fixture
def event_log(repository):
    return EventLog(repository)


def _open(event_log, event_id="evt_1"):
    return event_log.open(event_id, "payment_intent.succeeded", {"id": "pi_1"}, ProcessorDomain.PAYMENT_INTENT)


def test_open_creates_processing_entry(event_log, repository):
    entry = _open(event_log)

    assert entry.status == WebhookLogStatus.PROCESSING
    assert entry.retry_count == 0
    assert entry.processed_at is None
    assert repository.get_log_entry("evt_1") == entry


def test_open_rejects_duplicate_while_processing_or_terminal(event_log):
    entry = _open(event_log)
    with pytest.raises(DuplicateEvent) as excinfo:
        _open(event_log)
    assert excinfo.value.entry.status == WebhookLogStatus.PROCESSING

    event_log.mark_success(entry, "pay_1")
    with pytest.raises(DuplicateEvent) as excinfo:
        _open(event_log)
    assert excinfo.value.entry.status == WebhookLogStatus.SUCCESS


def test_open_reopens_error_entry_and_counts_retry(event_log):
    entry = _open(event_log)
    event_log.mark_error(entry, "boom")

    reopened = _open(event_log)

    assert reopened.status == WebhookLogStatus.PROCESSING
    assert reopened.retry_count == 1


def test_terminal_marks_set_processed_at_and_truncate_messages(event_log):
    entry = _open(event_log)
    failed = event_log.mark_error(entry, "x" * 2000, {"code": "boom"})

    assert failed.status == WebhookLogStatus.ERROR
    assert len(failed.error_message) == MAX_ERROR_MESSAGE_LENGTH
    assert failed.error_detail == {"code": "boom"}
    assert failed.processed_at is not None

    other = _open(event_log, "evt_2")
    ignored = event_log.mark_ignored(other, "nothing to do")
    assert ignored.status == WebhookLogStatus.IGNORED
    assert ignored.processed_at is not None
    assert ignored.is_terminal


def test_mark_success_clears_previous_error(event_log):
    entry = _open(event_log)
    event_log.mark_error(entry, "boom", {"code": "x"})
    reopened = _open(event_log)

    done = event_log.mark_success(reopened, "pay_1")

    assert done.error_message is None
    assert done.error_detail is None
    assert done.related_aggregate_id == "pay_1"


def test_reopen_for_retry_only_claims_error_entries(event_log):
    entry = _open(event_log)
    failed = event_log.mark_error(entry, "boom")

    assert event_log.reopen_for_retry(failed) is not None
    # Second claim on the same stale snapshot loses.
    assert event_log.reopen_for_retry(failed) is None


def test_reclaim_stuck_requires_unchanged_timestamp(event_log, monkeypatch):
    entry = _open(event_log)
    monkeypatch.setattr(event_log, "_now", lambda: entry.updated_at + timedelta(minutes=45))

    claimed = event_log.reclaim_stuck(entry)
    assert claimed is not None
    assert claimed.retry_count == 1
    assert event_log.reclaim_stuck(entry) is None


def test_list_stuck_and_errors(event_log):
    stuck = _open(event_log, "evt_stuck")
    failed = event_log.mark_error(_open(event_log, "evt_failed"), "boom")

    cutoff = stuck.updated_at + timedelta(seconds=1)
    assert [e.event_id for e in event_log.list_stuck(cutoff, 10)] == ["evt_stuck"]
    assert [e.event_id for e in event_log.list_errors(10)] == [failed.event_id]
    assert event_log.list_errors(10, max_retry_count=0) == []


def test_stats_reports_every_status(event_log):
    _open(event_log, "evt_a")
    event_log.mark_success(_open(event_log, "evt_b"))

    assert event_log.stats() == {"processing": 1, "success": 1, "error": 0, "ignored": 0}
