import pytest

from conftest import FakeClient, FakeSession, RecordingSleeper
from ksrewards.errors import (
    AccountInactiveError,
    AccountNotFoundError,
    CodeExistsError,
    CodeNotFoundError,
    InvalidRequestError,
    PlayerLookupError,
)
from ksrewards.service import RewardsService
from ksrewards.status import Classification, CodeStatus, QueueStatus, RedemptionStatus


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def service(config, db, client):
    return RewardsService(config, db=db, client=client, sleeper=RecordingSleeper(), feed_session=FakeSession())


def validated(db, *codes):
    for code in codes:
        db.insert_code(code)
        db.set_code_status(code, CodeStatus.VALIDATED)


def test_register_new_account_redeems_missing_codes(service, db, client):
    validated(db, "AAA111", "BBB222")
    db.add_redemption("1001", "BBB222", "SUCCESS")

    registration = service.register_account(" 1001 ")

    assert registration.created
    assert (registration.queued, registration.redeemed) == (1, 1)
    assert registration.account.nickname == "Player1001"
    assert registration.account.kingdom == "77"
    assert client.redeem_calls == [("1001", "AAA111")]
    assert db.has_successful_redemption("1001", "AAA111")
    assert service.queue_stats()["total"] == 0


def test_register_existing_account_refreshes_profile(service, db, client):
    db.upsert_account("1001", "OldName")
    validated(db, "AAA111")

    registration = service.register_account("1001")

    assert not registration.created
    assert registration.account.nickname == "Player1001"
    assert client.redeem_calls == []


def test_register_rejects_bad_fid(service):
    with pytest.raises(InvalidRequestError):
        service.register_account("12ab")


def test_register_unknown_player(service, client):
    client.failing_logins.add("999")
    with pytest.raises(PlayerLookupError):
        service.register_account("999")


def test_toggle_account(service, db):
    db.upsert_account("1001", "Alice")
    assert not service.set_account_active("1001", False).active
    with pytest.raises(AccountInactiveError):
        service.enqueue_for_account("1001")
    assert service.set_account_active("1001", True).active
    with pytest.raises(AccountNotFoundError):
        service.set_account_active("404", True)


def test_add_and_delete_code(service, db):
    assert service.add_code(" newcode1 ") == "NEWCODE1"
    assert db.get_code("NEWCODE1").source == "admin"
    with pytest.raises(CodeExistsError):
        service.add_code("NEWCODE1")
    with pytest.raises(InvalidRequestError):
        service.add_code("   ")
    with pytest.raises(InvalidRequestError):
        service.add_code("NO SPACES")

    service.delete_code("newcode1")
    assert db.get_code("NEWCODE1") is None
    with pytest.raises(CodeNotFoundError):
        service.delete_code("NEWCODE1")


def test_validate_one_code(service, db, client):
    db.insert_code("ABC123")
    client.outcomes["ABC123"] = RedemptionStatus.CDK_NOT_FOUND
    assert service.validate_one_code("abc123") is Classification.INVALID
    with pytest.raises(CodeNotFoundError):
        service.validate_one_code("MISSING1")


def test_retry_queue_items(service, db, queue):
    validated(db, "AAA111")
    queue.enqueue("1001", "AAA111")
    item = queue.dequeue_pending(1)[0]
    queue.mark_processing(item)
    queue.mark_failed(item, "NOT LOGIN")

    assert service.retry_queue_items([item.id, 12345]) == 1
    assert service.queue_items(QueueStatus.PENDING)[0].id == item.id
    with pytest.raises(InvalidRequestError):
        service.retry_queue_items([])


def test_priority_accounts(service, db):
    validated(db, "AAA111", "BBB222")
    db.upsert_account("1001", "Alice")

    assert service.add_priority_account("1001") == 2
    assert {i.priority for i in service.queue_items()} == {10}

    service.update_priority_account("1001", 40)
    assert [(p.fid, p.priority) for p in service.list_priority_accounts()] == [("1001", 40)]
    with pytest.raises(InvalidRequestError):
        service.update_priority_account("1001", 500)

    service.remove_priority_account("1001")
    assert service.list_priority_accounts() == []
    with pytest.raises(AccountNotFoundError):
        service.remove_priority_account("1001")
    with pytest.raises(AccountNotFoundError):
        service.add_priority_account("404")


def test_dashboard(service, db):
    db.upsert_account("1001", "Alice")
    db.upsert_account("1002", "Bob")
    db.set_account_active("1002", False)
    validated(db, "AAA111")
    db.add_redemption("1001", "AAA111", "SUCCESS")

    stats = service.dashboard()

    assert stats["accounts"] == {"total": 2, "active": 1, "inactive": 1}
    assert stats["codes"]["validated"] == 1
    assert stats["queue"]["total"] == 0
    assert stats["redemptions"] == {"total": 1, "success": 1, "failed": 0}
    assert [r.fid for r in service.recent_successes()] == ["1001"]
