import sqlite3

import pytest

from conftest import FakeClient, RecordingSleeper
from ksrewards.errors import ShutdownRequested
from ksrewards.processor import RedemptionProcessor
from ksrewards.status import CodeStatus, QueueStatus, RedemptionStatus


@pytest.fixture
def accounts(db):
    for fid in ("1001", "1002", "1003"):
        db.upsert_account(fid, None)
    return ["1001", "1002", "1003"]


def make_processor(config, db, queue, client, sleeper=None):
    return RedemptionProcessor(config, db, queue, client, sleeper=sleeper or RecordingSleeper())


def add_code(db, code, status=CodeStatus.VALIDATED):
    db.insert_code(code)
    if status is not CodeStatus.PENDING:
        db.set_code_status(code, status)


def test_success_records_and_removes_item(config, db, queue, accounts):
    add_code(db, "ABC123", CodeStatus.PENDING)
    queue.enqueue("1001", "ABC123")
    client = FakeClient({"ABC123": RedemptionStatus.SUCCESS})

    counts = make_processor(config, db, queue, client).process_queue()

    assert counts == {"processed": 1, "success": 1, "failed": 0}
    assert queue.stats()["total"] == 0
    assert [r.status for r in db.list_redemptions(fid="1001", code="ABC123")] == ["SUCCESS"]
    assert db.get_code("ABC123").validation_status is CodeStatus.VALIDATED
    account = db.get_account("1001")
    assert (account.nickname, account.kingdom) == ("Player1001", "77")


def test_prior_success_short_circuits(config, db, queue, accounts):
    add_code(db, "ABC123")
    db.add_redemption("1001", "ABC123", "RECEIVED")
    queue.enqueue("1001", "ABC123")
    client = FakeClient()

    processor = make_processor(config, db, queue, client)
    result = processor.process_item(queue.dequeue_pending(1)[0])

    assert result.cached and result.success
    assert result.status == "RECEIVED"
    assert client.redeem_calls == []
    assert queue.stats()["total"] == 0
    assert len(db.list_redemptions()) == 1


def test_retry_outcome_requeues_until_cap(config, db, queue, accounts):
    add_code(db, "ABC123")
    queue.enqueue("1001", "ABC123")
    client = FakeClient({"ABC123": (RedemptionStatus.TIMEOUT_RETRY, "TIMEOUT RETRY.")})
    processor = make_processor(config, db, queue, client)

    for expected_attempts in (1, 2):
        processor.process_queue()
        item = queue.list_items()[0]
        assert (item.status, item.attempts) == (QueueStatus.PENDING, expected_attempts)
        assert item.error_message == "TIMEOUT RETRY."

    processor.process_queue()
    item = queue.list_items()[0]
    assert (item.status, item.attempts) == (QueueStatus.FAILED, 3)
    assert queue.dequeue_pending(10) == []
    assert len(db.list_redemptions()) == 3
    assert db.get_code("ABC123").validation_status is CodeStatus.VALIDATED


def test_not_found_invalidates_code_and_purges_batch(config, db, queue, accounts):
    add_code(db, "ABC123")
    add_code(db, "OTHER1")
    queue.enqueue("1001", "ABC123", priority=5)
    queue.enqueue("1002", "ABC123")
    queue.enqueue("1003", "ABC123")
    queue.enqueue("1002", "OTHER1")
    client = FakeClient({"ABC123": RedemptionStatus.CDK_NOT_FOUND, "OTHER1": RedemptionStatus.SUCCESS})

    counts = make_processor(config, db, queue, client).process_queue()

    assert db.get_code("ABC123").validation_status is CodeStatus.INVALID
    assert client.redeem_calls == [("1001", "ABC123"), ("1002", "OTHER1")]
    assert counts == {"processed": 2, "success": 1, "failed": 1}
    assert queue.stats()["total"] == 0
    assert len(db.list_redemptions(code="ABC123")) == 1


@pytest.mark.parametrize("outcome", [RedemptionStatus.TIME_ERROR, RedemptionStatus.USAGE_LIMIT])
def test_time_and_usage_limits_expire_code(config, db, queue, accounts, outcome):
    add_code(db, "ABC123")
    queue.enqueue("1001", "ABC123")
    queue.enqueue("1002", "ABC123")

    make_processor(config, db, queue, FakeClient({"ABC123": outcome})).process_queue(batch_size=1)

    assert db.get_code("ABC123").validation_status is CodeStatus.EXPIRED
    assert queue.stats()["total"] == 0


def test_unknown_outcome_fails_item_without_touching_code(config, db, queue, accounts):
    add_code(db, "ABC123", CodeStatus.PENDING)
    queue.enqueue("1001", "ABC123")
    client = FakeClient({"ABC123": (RedemptionStatus.UNKNOWN, "Server says hi!")})

    counts = make_processor(config, db, queue, client).process_queue()

    assert counts["failed"] == 1
    item = queue.list_items()[0]
    assert item.status is QueueStatus.FAILED
    assert item.error_message == "Server says hi!"
    assert db.list_redemptions()[0].status == "SERVER SAYS HI"
    assert db.get_code("ABC123").validation_status is CodeStatus.PENDING


def test_restricted_account_fails_but_code_is_valid(config, db, queue, accounts):
    add_code(db, "ABC123", CodeStatus.PENDING)
    queue.enqueue("1001", "ABC123")
    client = FakeClient({"ABC123": RedemptionStatus.TOO_SMALL_SPEND_MORE})

    make_processor(config, db, queue, client).process_queue()

    assert db.get_code("ABC123").validation_status is CodeStatus.VALIDATED
    assert queue.list_items()[0].status is QueueStatus.FAILED


def test_delay_between_items_only(config, db, queue, accounts):
    add_code(db, "ABC123")
    for fid in accounts:
        queue.enqueue(fid, "ABC123")
    sleeper = RecordingSleeper()

    make_processor(config, db, queue, FakeClient(), sleeper).process_queue()

    assert sleeper.sleeps == [2.0, 2.0]


def test_no_wait_after_cached_success(config, db, queue, accounts):
    add_code(db, "ABC123")
    db.add_redemption("1001", "ABC123", "SUCCESS")
    for fid in accounts:
        queue.enqueue(fid, "ABC123")
    sleeper = RecordingSleeper()
    client = FakeClient()

    counts = make_processor(config, db, queue, client, sleeper).process_queue()

    assert counts == {"processed": 3, "success": 3, "failed": 0}
    assert client.redeem_calls == [("1002", "ABC123"), ("1003", "ABC123")]
    assert sleeper.sleeps == [2.0]


def test_item_claimed_by_another_worker_is_skipped(config, db, queue, accounts):
    add_code(db, "ABC123")
    queue.enqueue("1001", "ABC123")
    queue.enqueue("1002", "ABC123")

    def backend(fid, code):
        if fid == "1001":
            # A registration run takes 1002's item while this batch is busy
            other = queue.dequeue_pending(1, fid="1002")[0]
            assert queue.mark_processing(other)
        return RedemptionStatus.SUCCESS

    client = FakeClient()
    client.handler = backend

    counts = make_processor(config, db, queue, client).process_queue()

    assert counts == {"processed": 1, "success": 1, "failed": 0}
    assert client.redeem_calls == [("1001", "ABC123")]
    assert db.list_redemptions(fid="1002") == []
    assert queue.list_items()[0].status is QueueStatus.PROCESSING


def test_store_failure_returns_item_to_queue(config, db, queue, accounts, monkeypatch):
    add_code(db, "ABC123")
    queue.enqueue("1001", "ABC123")
    client = FakeClient()
    processor = make_processor(config, db, queue, client)

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "add_redemption", locked)
    with pytest.raises(sqlite3.OperationalError):
        processor.process_queue()
    monkeypatch.undo()

    item = queue.list_items()[0]
    assert item.status is QueueStatus.PENDING
    assert item.error_message == "OperationalError: database is locked"

    assert processor.process_queue() == {"processed": 1, "success": 1, "failed": 0}
    assert queue.stats()["total"] == 0
    assert [r.status for r in db.list_redemptions(fid="1001")] == ["SUCCESS"]


def test_failure_after_success_record_is_not_redeemed_twice(config, db, queue, accounts, monkeypatch):
    add_code(db, "ABC123", CodeStatus.PENDING)
    queue.enqueue("1001", "ABC123")
    client = FakeClient()
    processor = make_processor(config, db, queue, client)

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "set_code_status", broken)
    with pytest.raises(sqlite3.OperationalError):
        processor.process_queue()
    monkeypatch.undo()

    result = processor.process_queue()

    assert result == {"processed": 1, "success": 1, "failed": 0}
    assert client.redeem_calls == [("1001", "ABC123")]
    assert len(db.list_redemptions(fid="1001")) == 1
    assert queue.stats()["total"] == 0


def test_batch_size_limits_work(config, db, queue, accounts):
    add_code(db, "ABC123")
    for fid in accounts:
        queue.enqueue(fid, "ABC123")

    counts = make_processor(config, db, queue, FakeClient()).process_queue(batch_size=2)

    assert counts["processed"] == 2
    assert queue.stats()["pending"] == 1


def test_process_account_only_touches_that_account(config, db, queue, accounts):
    add_code(db, "AAA111")
    add_code(db, "BBB222")
    queue.enqueue("1001", "AAA111")
    queue.enqueue("1001", "BBB222")
    queue.enqueue("1002", "AAA111")
    client = FakeClient()

    counts = make_processor(config, db, queue, client).process_account("1001")

    assert counts == {"processed": 2, "success": 2, "failed": 0}
    assert {fid for fid, _ in client.redeem_calls} == {"1001"}
    assert [(i.fid, i.code) for i in queue.list_items()] == [("1002", "AAA111")]


def test_shutdown_puts_item_back(config, db, queue, accounts):
    add_code(db, "ABC123")
    queue.enqueue("1001", "ABC123")
    client = FakeClient({"ABC123": ShutdownRequested("stop")})

    with pytest.raises(ShutdownRequested):
        make_processor(config, db, queue, client).process_queue()

    item = queue.list_items()[0]
    assert item.status is QueueStatus.PENDING
    assert db.list_redemptions() == []


def test_empty_queue(config, db, queue):
    assert make_processor(config, db, queue, FakeClient()).process_queue() == {
        "processed": 0, "success": 0, "failed": 0,
    }
