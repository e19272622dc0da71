from __future__ import annotations

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import InsufficientCredits, TransactionFailed
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.notification import NotificationStatus, NotificationType
from credit_ledger.models.operation import OperationStatus
from credit_ledger.models.transaction import TransactionType
from credit_ledger.notifications.queue import InMemoryNotificationQueue
from credit_ledger.services.credit_middleware import CreditMiddleware, GuardState
from credit_ledger.services.credit_service import CreditService
from credit_ledger.services.notification_service import NotificationService
from credit_ledger.services.operation_service import OperationTracker


class FlakyDBManager(InMemoryDBManager):
    """Fails deductions on demand to simulate a storage outage."""

    deduction_error = None

    async def write_transaction_and_balance(self, user_id, delta, tx_type, reason, metadata=None, *, clamp_at_zero=False):
        if self.deduction_error is not None and tx_type is TransactionType.DEDUCTION:
            raise self.deduction_error
        return await super().write_transaction_and_balance(
            user_id, delta, tx_type, reason, metadata, clamp_at_zero=clamp_at_zero
        )


class BrokerDownQueue(InMemoryNotificationQueue):
    async def enqueue(self, payload):
        raise ConnectionError("broker down")


def _make_guard(tmp_path, db=None, queue=None):
    db = db or InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    service = CreditService(db=db, ledger=ledger)
    if queue is None:
        queue = InMemoryNotificationQueue()
    notifications = NotificationService(db, queue, low_balance_threshold=20, critical_balance_threshold=5)
    tracker = OperationTracker(InMemoryAsyncCache(), ttl_seconds=300)
    guard = CreditMiddleware(service, ledger, notifications, tracker, default_cost=5)
    return db, service, guard, queue, tracker


@pytest.mark.asyncio
async def test_guarded_operation_deducts_once_after_success(tmp_path):
    _, service, guard, _, tracker = _make_guard(tmp_path)
    calls = []

    async def generate():
        calls.append("run")
        return {"summary": "Seasoned engineer"}

    outcome = await guard.run_guarded(
        "user-1", generate, endpoint="/api/resume/summary", request_id="req-1"
    )

    assert calls == ["run"]
    assert outcome.state == GuardState.DEDUCTED
    assert outcome.result == {"summary": "Seasoned engineer"}
    assert outcome.remaining_credits == 195
    assert await service.get_user_credits("user-1") == 195

    history = await service.get_transaction_history("user-1", tx_type=TransactionType.DEDUCTION)
    assert history.total == 1
    tx = history.items[0]
    assert tx.metadata["endpoint"] == "/api/resume/summary"
    assert tx.metadata["request_id"] == "req-1"

    record = await tracker.get("req-1", "user-1")
    assert record.status == OperationStatus.COMPLETED
    assert record.progress == 100
    assert record.transaction_id == tx.id


@pytest.mark.asyncio
async def test_insufficient_balance_skips_operation(tmp_path):
    _, service, guard, _, tracker = _make_guard(tmp_path)
    await service.provision_user("user-1")
    await service.adjust_user_credits("user-1", -197, "test setup", "admin-1")
    calls = []

    async def generate():
        calls.append("run")

    with pytest.raises(InsufficientCredits) as excinfo:
        await guard.run_guarded("user-1", generate, endpoint="/api/resume/summary", request_id="req-2")

    assert calls == []
    assert excinfo.value.current_balance == 3
    assert excinfo.value.required_credits == 5
    assert await service.get_user_credits("user-1") == 3
    record = await tracker.get("req-2", "user-1")
    assert record.status == OperationStatus.FAILED


@pytest.mark.asyncio
async def test_validate_credits_is_read_only(tmp_path):
    _, service, guard, _, _ = _make_guard(tmp_path)

    check = await guard.validate_credits("user-1", 250)

    assert not check.has_enough_credits
    assert check.current_balance == 200
    assert check.required_credits == 250
    assert await service.get_user_credits("user-1") == 200
    with pytest.raises(InsufficientCredits):
        check.raise_for_balance()


@pytest.mark.asyncio
async def test_failing_operation_is_not_charged(tmp_path):
    _, service, guard, _, tracker = _make_guard(tmp_path)

    async def generate():
        raise RuntimeError("provider timeout")

    with pytest.raises(RuntimeError):
        await guard.run_guarded("user-1", generate, endpoint="/api/resume/summary", request_id="req-3")

    assert await service.get_user_credits("user-1") == 200
    record = await tracker.get("req-3", "user-1")
    assert record.status == OperationStatus.FAILED
    assert record.error == "provider timeout"


@pytest.mark.asyncio
async def test_deduction_failure_is_logged_not_raised(tmp_path):
    db = FlakyDBManager()
    _, service, guard, queue, _ = _make_guard(tmp_path, db=db)
    await service.provision_user("user-1")

    async def generate():
        db.deduction_error = TransactionFailed("connection reset", user_id="user-1")
        return "expensive result"

    outcome = await guard.run_guarded("user-1", generate, endpoint="/api/resume/summary")

    assert outcome.state == GuardState.DEDUCTION_FAILED
    assert outcome.result == "expensive result"
    assert outcome.deduction is None
    assert await service.get_user_credits("user-1") == 200

    errors = [e for e in db.ledger_entries if e.message == "Credit deduction failed after successful operation"]
    assert len(errors) == 1
    assert errors[0].details["error_code"] == "TRANSACTION_FAILED"
    assert [m["type"] for m in queue.messages] == ["transaction_error"]


@pytest.mark.asyncio
async def test_balance_spent_elsewhere_does_not_fail_request(tmp_path):
    _, service, guard, _, _ = _make_guard(tmp_path)
    await service.provision_user("user-1")
    await service.adjust_user_credits("user-1", -192, "test setup", "admin-1")

    async def generate():
        # a parallel request drains the balance while this one runs
        await service.atomic_deduct_credits("user-1", 6, "other request")
        return "done"

    outcome = await guard.run_guarded("user-1", generate, endpoint="/api/resume/summary")

    assert outcome.state == GuardState.DEDUCTION_FAILED
    assert outcome.result == "done"
    assert await service.get_user_credits("user-1") == 2


@pytest.mark.asyncio
async def test_low_and_critical_balance_notifications(tmp_path):
    db, service, guard, queue, _ = _make_guard(tmp_path)
    await service.provision_user("user-1")
    await service.adjust_user_credits("user-1", -175, "test setup", "admin-1")

    async def generate():
        return None

    await guard.run_guarded("user-1", generate, endpoint="/api/resume/summary")
    assert [m["type"] for m in queue.drain()] == ["low_credits"]

    await service.adjust_user_credits("user-1", -10, "test setup", "admin-1")
    await guard.run_guarded("user-1", generate, endpoint="/api/resume/summary")
    messages = queue.drain()
    assert [m["type"] for m in messages] == ["critical_credits"]
    assert messages[0]["payload"]["current_credits"] == 5
    assert [n.status for n in db.notifications] == [NotificationStatus.QUEUED] * 2
    assert db.notifications[-1].id == messages[0]["notification_id"]


@pytest.mark.asyncio
async def test_free_operation_is_not_charged(tmp_path):
    _, service, guard, _, _ = _make_guard(tmp_path)

    async def generate():
        return "ok"

    outcome = await guard.run_guarded("user-1", generate, endpoint="/api/resume/preview", required_credits=0)

    assert outcome.state == GuardState.FREE
    assert await service.get_user_credits("user-1") == 200


@pytest.mark.asyncio
async def test_operation_status_expires_after_ttl():
    now = [1000.0]
    tracker = OperationTracker(InMemoryAsyncCache(clock=lambda: now[0]), ttl_seconds=300)

    await tracker.start("op-1", "user-1", "/api/resume/summary")
    assert (await tracker.get("op-1", "user-1")).status == OperationStatus.PENDING
    assert await tracker.get("op-1", "someone-else") is None

    now[0] += 301
    assert await tracker.get("op-1", "user-1") is None
    assert await tracker.cleanup() == 0


@pytest.mark.asyncio
async def test_unreachable_notification_queue_keeps_completed_charge(tmp_path):
    db, service, guard, _, tracker = _make_guard(tmp_path, queue=BrokerDownQueue())
    await service.provision_user("user-1")
    await service.adjust_user_credits("user-1", -185, "test setup", "admin-1")

    async def generate():
        return "expensive result"

    outcome = await guard.run_guarded(
        "user-1", generate, endpoint="/api/resume/summary", request_id="req-4"
    )

    assert outcome.state == GuardState.DEDUCTED
    assert outcome.result == "expensive result"
    assert outcome.remaining_credits == 10
    assert await service.get_user_credits("user-1") == 10
    record = await tracker.get("req-4", "user-1")
    assert record.status == OperationStatus.COMPLETED
    [notice] = db.notifications
    assert notice.notification_type == NotificationType.LOW_CREDITS
    assert notice.status == NotificationStatus.FAILED
    assert notice.error_message == "broker down"


@pytest.mark.asyncio
async def test_unexpected_deduction_error_is_logged_not_raised(tmp_path):
    db = FlakyDBManager()
    _, service, guard, _, _ = _make_guard(tmp_path, db=db, queue=BrokerDownQueue())
    await service.provision_user("user-1")

    async def generate():
        db.deduction_error = RuntimeError("event loop is closed")
        return "expensive result"

    outcome = await guard.run_guarded("user-1", generate, endpoint="/api/resume/summary")

    assert outcome.state == GuardState.DEDUCTION_FAILED
    assert outcome.result == "expensive result"
    assert await service.get_user_credits("user-1") == 200
    errors = [e for e in db.ledger_entries if e.message == "Credit deduction failed after successful operation"]
    assert len(errors) == 1
    assert errors[0].details["error_code"] == "TRANSACTION_FAILED"
    assert errors[0].details["error"] == "event loop is closed"


@pytest.mark.asyncio
async def test_reused_request_id_does_not_touch_other_users_operation():
    tracker = OperationTracker(InMemoryAsyncCache(), ttl_seconds=300)

    await tracker.start("op-1", "alice", "/api/resume/summary")
    await tracker.complete("op-1", "alice", transaction_id="tx-alice")
    await tracker.start("op-1", "mallory", "/api/resume/summary")
    await tracker.fail("op-1", "mallory", "Insufficient credits")

    alice = await tracker.get("op-1", "alice")
    assert alice.status == OperationStatus.COMPLETED
    assert alice.transaction_id == "tx-alice"
    assert (await tracker.get("op-1", "mallory")).status == OperationStatus.FAILED
