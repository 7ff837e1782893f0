import threading
import uuid
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

import requests
from django.core.files.storage import InMemoryStorage
from django.core.management import CommandError, call_command
from django.db import DatabaseError, OperationalError, connections
from django.test import TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework.test import APIClient

from billing.exceptions import (
    AlreadyTerminal,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidAmount,
    StorageError,
    UnknownAction,
)
from billing.models import (
    Account,
    EditOperation,
    LedgerEntry,
    LedgerEntryImmutableError,
    RechargeRequest,
    UsageRecord,
)
from billing.services import (
    BalanceLedger,
    EditService,
    LedgerStore,
    RechargeGuard,
    UsageMeter,
)
from billing.utils.generative import build_edit_payload, extract_images, request_image_edit

USER = 1001
OTHER_USER = 2002

# "fake-png" base64-encoded
IMAGE_B64 = "ZmFrZS1wbmc="
IMAGE_BYTES = b"fake-png"


def edit_api_success():
    return {
        "success": True,
        "images": [IMAGE_BYTES],
        "response": {"id": "chatcmpl-1", "model": "gemini-2.5-flash-image"},
    }


def edit_api_failure():
    return {
        "success": False,
        "images": [],
        "response": {"error": "http_error", "status": 503},
    }


def run_concurrently(*calls):
    """Run each callable in its own thread, released together; return results or exceptions."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def worker(index, call):
        try:
            barrier.wait()
            results[index] = call()
        except Exception as exc:
            results[index] = exc
        finally:
            connections.close_all()

    threads = [
        threading.Thread(target=worker, args=(index, call)) for index, call in enumerate(calls)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


# ============================================================
# Model Tests
# ============================================================


class AccountModelTest(TestCase):
    def test_create_account(self):
        account = Account.objects.create(user_id=USER)
        self.assertEqual(account.balance, 0)
        self.assertIsNotNone(account.created_at)

    def test_account_str(self):
        account = Account.objects.create(user_id=USER, balance=250)
        self.assertIn(str(USER), str(account))
        self.assertIn("250", str(account))


class LedgerEntryModelTest(TestCase):
    def setUp(self):
        self.account = Account.objects.create(user_id=USER, balance=100)
        self.entry = LedgerEntry.objects.create(
            account=self.account,
            user_id=USER,
            kind=LedgerEntry.Kind.CREDIT,
            amount=100,
            balance_after=100,
            reference_id="tx-model",
        )

    def test_entry_cannot_be_modified(self):
        self.entry.remark = "changed"
        with self.assertRaises(LedgerEntryImmutableError):
            self.entry.save()

    def test_entry_cannot_be_deleted(self):
        with self.assertRaises(LedgerEntryImmutableError):
            self.entry.delete()
        self.assertTrue(LedgerEntry.objects.filter(pk=self.entry.pk).exists())

    def test_signed_amount(self):
        self.assertEqual(self.entry.signed_amount, 100)
        debit = LedgerEntry(kind=LedgerEntry.Kind.DEBIT, amount=30)
        self.assertEqual(debit.signed_amount, -30)

    def test_entry_str(self):
        self.assertIn("CREDIT", str(self.entry))
        self.assertIn("100", str(self.entry))


class RechargeRequestModelTest(TestCase):
    def test_get_expired_pending(self):
        old = RechargeRequest.objects.create(transaction_id="tx-old", user_id=USER, amount=100)
        RechargeRequest.objects.create(transaction_id="tx-new", user_id=USER, amount=100)
        RechargeRequest.objects.filter(pk=old.pk).update(
            created_at=timezone.now() - timedelta(days=2)
        )

        expired = RechargeRequest.get_expired_pending(timezone.now() - timedelta(days=1))
        self.assertEqual(list(expired.values_list("transaction_id", flat=True)), ["tx-old"])

    def test_is_terminal(self):
        recharge = RechargeRequest(transaction_id="tx", user_id=USER, amount=1)
        self.assertFalse(recharge.is_terminal)
        recharge.status = RechargeRequest.Status.FAILED
        self.assertTrue(recharge.is_terminal)


class UsageRecordModelTest(TestCase):
    def test_count_since_skips_failed_older_and_other_users(self):
        since = timezone.now() - timedelta(hours=1)
        UsageRecord.objects.create(user_id=USER, action_type="image_edit", reference_id="u-1")
        UsageRecord.objects.create(
            user_id=USER,
            action_type="image_edit",
            reference_id="u-2",
            status=UsageRecord.Status.FAILED,
        )
        old = UsageRecord.objects.create(user_id=USER, action_type="image_edit", reference_id="u-3")
        UsageRecord.objects.filter(pk=old.pk).update(created_at=since - timedelta(minutes=1))
        UsageRecord.objects.create(user_id=OTHER_USER, action_type="image_edit", reference_id="u-4")

        self.assertEqual(UsageRecord.count_since(USER, since), 1)


# ============================================================
# Balance Ledger Tests
# ============================================================


class BalanceLedgerTest(TransactionTestCase):
    def setUp(self):
        self.ledger = BalanceLedger(LedgerStore())

    def test_get_balance_creates_zero_account(self):
        self.assertEqual(self.ledger.get_balance(USER), 0)
        self.assertTrue(Account.objects.filter(user_id=USER).exists())

    def test_credit_then_debit_scenario(self):
        entry = self.ledger.credit(USER, 500, "tx-a", "recharge")

        self.assertEqual(self.ledger.get_balance(USER), 500)
        history = self.ledger.get_history(USER, 10, 0)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].kind, LedgerEntry.Kind.CREDIT)
        self.assertEqual(history[0].balance_after, 500)
        self.assertEqual(history[0].entry_id, entry.entry_id)

        debit = self.ledger.debit(USER, 150, "edit-1", "usage")
        self.assertEqual(debit.balance_after, 350)
        self.assertEqual(self.ledger.get_balance(USER), 350)

        with self.assertRaises(InsufficientBalance) as ctx:
            self.ledger.debit(USER, 400, "edit-2", "usage")
        self.assertEqual(ctx.exception.balance, 350)
        self.assertEqual(self.ledger.get_balance(USER), 350)
        self.assertEqual(LedgerEntry.objects.filter(user_id=USER).count(), 2)

    def test_invalid_amounts_rejected_before_storage(self):
        for amount in (0, -5, 1.5, True, "100", None):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    self.ledger.credit(USER, amount)
                with self.assertRaises(InvalidAmount):
                    self.ledger.debit(USER, amount)
        self.assertFalse(Account.objects.exists())

    def test_debit_from_empty_account_rejected(self):
        with self.assertRaises(InsufficientBalance):
            self.ledger.debit(USER, 1)
        self.assertEqual(self.ledger.get_balance(USER), 0)
        self.assertFalse(LedgerEntry.objects.exists())

    def test_debit_exact_balance_reaches_zero(self):
        self.ledger.credit(USER, 100)
        entry = self.ledger.debit(USER, 100)
        self.assertEqual(entry.balance_after, 0)
        self.assertEqual(self.ledger.get_balance(USER), 0)

    def test_conservation_over_mixed_sequence(self):
        operations = [
            ("credit", 1000),
            ("debit", 120),
            ("debit", 300),
            ("credit", 50),
            ("debit", 2000),
            ("debit", 630),
            ("debit", 1),
        ]
        for op, amount in operations:
            try:
                getattr(self.ledger, op)(USER, amount)
            except InsufficientBalance:
                pass
            balance = self.ledger.get_balance(USER)
            self.assertGreaterEqual(balance, 0)
            credited, debited = self.ledger.store.totals(USER)
            self.assertEqual(credited - debited, balance)

        self.assertEqual(self.ledger.get_balance(USER), 0)
        audit = self.ledger.audit(USER)
        self.assertTrue(audit.is_consistent)
        self.assertEqual(audit.credited, 1050)
        self.assertEqual(audit.debited, 1050)

    def test_balance_after_matches_running_sum(self):
        self.ledger.credit(USER, 300)
        self.ledger.debit(USER, 100)
        self.ledger.credit(USER, 25)

        running = 0
        for entry in reversed(self.ledger.get_history(USER, 10, 0)):
            running += entry.signed_amount
            self.assertEqual(entry.balance_after, running)

    def test_history_most_recent_first_and_pages_cover_every_entry(self):
        self.ledger.credit(USER, 10_000)
        for i in range(24):
            self.ledger.debit(USER, 10, reference_id=f"edit-{i}")

        seen = []
        offset = 0
        while True:
            page = self.ledger.get_history(USER, 10, offset)
            if not page:
                break
            seen.extend(page)
            offset += 10

        self.assertEqual(len(seen), 25)
        self.assertEqual(len({entry.entry_id for entry in seen}), 25)
        keys = [(entry.created_at, entry.id) for entry in seen]
        self.assertEqual(keys, sorted(keys, reverse=True))
        self.assertEqual(len(set(keys)), 25)
        self.assertEqual(seen[-1].kind, LedgerEntry.Kind.CREDIT)

    def test_history_is_per_user(self):
        self.ledger.credit(USER, 100)
        self.ledger.credit(OTHER_USER, 200)
        history = self.ledger.get_history(OTHER_USER, 10, 0)
        self.assertEqual([entry.amount for entry in history], [200])

    def test_history_rejects_bad_paging(self):
        with self.assertRaises(ValueError):
            self.ledger.get_history(USER, 0, 0)
        with self.assertRaises(ValueError):
            self.ledger.get_history(USER, 10, -1)

    def test_storage_failure_raises_storage_error(self):
        with patch.object(
            LedgerStore, "lock_account", side_effect=OperationalError("database is locked")
        ):
            with self.assertRaises(StorageError):
                self.ledger.credit(USER, 100)
        self.assertFalse(LedgerEntry.objects.exists())

    def test_failure_after_balance_write_rolls_back(self):
        self.ledger.credit(USER, 100)

        def failing_append(store, account, *args, **kwargs):
            account.balance = 999
            account.save(update_fields=["balance", "updated_at"])
            raise DatabaseError("insert failed")

        with patch.object(LedgerStore, "append_entry", failing_append):
            with self.assertRaises(StorageError):
                self.ledger.credit(USER, 899)

        self.assertEqual(self.ledger.get_balance(USER), 100)
        self.assertEqual(LedgerEntry.objects.count(), 1)
        self.assertTrue(self.ledger.audit(USER).is_consistent)

    def test_audit_detects_drift(self):
        self.ledger.credit(USER, 100)
        Account.objects.filter(user_id=USER).update(balance=150)

        audit = self.ledger.audit(USER)
        self.assertFalse(audit.is_consistent)
        self.assertEqual(audit.derived_balance, 100)
        self.assertEqual(audit.balance, 150)


class LedgerStoreTest(TestCase):
    @patch("billing.services.store.connections")
    def test_postgres_transactions_carry_lock_and_statement_timeouts(self, mock_connections):
        connection = mock_connections.__getitem__.return_value
        connection.vendor = "postgresql"
        cursor = connection.cursor.return_value.__enter__.return_value

        LedgerStore(lock_timeout_ms=1500, statement_timeout_ms=20000)._apply_timeouts()

        sql, params = cursor.execute.call_args.args
        self.assertIn("lock_timeout", sql)
        self.assertIn("statement_timeout", sql)
        self.assertEqual(params, ["1500ms", "20000ms"])
        mock_connections.__getitem__.assert_called_with("default")

    @patch("billing.services.store.connections")
    def test_sqlite_relies_on_busy_timeout(self, mock_connections):
        connection = mock_connections.__getitem__.return_value
        connection.vendor = "sqlite"

        LedgerStore()._apply_timeouts()

        connection.cursor.assert_not_called()


class BalanceLedgerConcurrencyTest(TransactionTestCase):
    def setUp(self):
        self.ledger = BalanceLedger(LedgerStore())
        self.ledger.credit(USER, 100, "tx-seed")

    def test_concurrent_debits_cannot_overdraw(self):
        results = run_concurrently(
            lambda: self.ledger.debit(USER, 60, "edit-a"),
            lambda: self.ledger.debit(USER, 60, "edit-b"),
        )

        successes = [r for r in results if isinstance(r, LedgerEntry)]
        rejections = [r for r in results if isinstance(r, InsufficientBalance)]
        self.assertEqual(len(successes), 1, results)
        self.assertEqual(len(rejections), 1, results)
        self.assertEqual(successes[0].balance_after, 40)
        self.assertEqual(self.ledger.get_balance(USER), 40)
        self.assertTrue(self.ledger.audit(USER).is_consistent)

    def test_concurrent_credits_all_apply(self):
        results = run_concurrently(*[
            (lambda i=i: self.ledger.credit(USER, 10, f"tx-{i}")) for i in range(4)
        ])

        self.assertTrue(all(isinstance(r, LedgerEntry) for r in results), results)
        self.assertEqual(self.ledger.get_balance(USER), 140)
        self.assertEqual(
            sorted(r.balance_after for r in results), [110, 120, 130, 140]
        )


# ============================================================
# Usage Metering Tests
# ============================================================


class UsageMeterTest(TransactionTestCase):
    def setUp(self):
        self.ledger = BalanceLedger(LedgerStore())
        self.meter = UsageMeter(
            self.ledger, prices={"image_edit": 100, "preview": 0}, free_daily_actions=2
        )

    def test_quote(self):
        self.assertEqual(self.meter.quote("image_edit"), 100)
        self.assertEqual(self.meter.quote("preview"), 0)

    def test_quote_unknown_action(self):
        with self.assertRaises(UnknownAction):
            self.meter.quote("upscale")

    def test_free_allowance_then_charge(self):
        self.ledger.credit(USER, 500)

        first = self.meter.charge_for_action(USER, "image_edit", "edit-1")
        second = self.meter.charge_for_action(USER, "image_edit", "edit-2")
        third = self.meter.charge_for_action(USER, "image_edit", "edit-3")

        self.assertTrue(first.is_free)
        self.assertTrue(second.is_free)
        self.assertEqual(first.amount, 0)
        self.assertFalse(third.is_free)
        self.assertEqual(third.amount, 100)
        self.assertEqual(third.ledger_entry.kind, LedgerEntry.Kind.DEBIT)
        self.assertEqual(third.ledger_entry.reference_id, "edit-3")
        self.assertEqual(self.ledger.get_balance(USER), 400)
        self.assertEqual(LedgerEntry.objects.filter(kind=LedgerEntry.Kind.DEBIT).count(), 1)

    def test_insufficient_balance_records_nothing(self):
        meter = UsageMeter(self.ledger, prices={"image_edit": 100}, free_daily_actions=0)
        with self.assertRaises(InsufficientBalance):
            meter.charge_for_action(USER, "image_edit", "edit-1")
        self.assertFalse(UsageRecord.objects.exists())
        self.assertEqual(meter.daily_usage_count(USER), 0)

    def test_zero_price_action_is_always_free(self):
        meter = UsageMeter(self.ledger, prices={"preview": 0}, free_daily_actions=0)
        record = meter.charge_for_action(USER, "preview", "preview-1")
        self.assertTrue(record.is_free)
        self.assertIsNone(record.ledger_entry)
        self.assertFalse(LedgerEntry.objects.exists())

    def test_replayed_reference_charges_once(self):
        meter = UsageMeter(self.ledger, prices={"image_edit": 100}, free_daily_actions=0)
        self.ledger.credit(USER, 500)

        first = meter.charge_for_action(USER, "image_edit", "edit-1")
        again = meter.charge_for_action(USER, "image_edit", "edit-1")

        self.assertEqual(first.pk, again.pk)
        self.assertEqual(self.ledger.get_balance(USER), 400)

    def test_reference_reused_by_other_user_conflicts(self):
        self.meter.charge_for_action(USER, "image_edit", "edit-1")
        with self.assertRaises(IdempotencyConflict):
            self.meter.charge_for_action(OTHER_USER, "image_edit", "edit-1")

    def test_daily_usage_count_ignores_failed_and_previous_days(self):
        self.meter.charge_for_action(USER, "image_edit", "edit-1")
        self.meter.charge_for_action(USER, "image_edit", "edit-2")
        self.meter.record_outcome("edit-2", succeeded=False)
        yesterday = UsageRecord.objects.create(
            user_id=USER, action_type="image_edit", reference_id="edit-old", is_free=True
        )
        UsageRecord.objects.filter(pk=yesterday.pk).update(
            created_at=timezone.now() - timedelta(days=1, hours=1)
        )

        self.assertEqual(self.meter.daily_usage_count(USER), 1)
        self.assertEqual(self.meter.daily_usage_count(OTHER_USER), 0)

    def test_failed_free_usage_releases_its_slot(self):
        self.meter.charge_for_action(USER, "image_edit", "edit-1")
        self.meter.charge_for_action(USER, "image_edit", "edit-2")
        self.meter.record_outcome("edit-2", succeeded=False)

        record = self.meter.charge_for_action(USER, "image_edit", "edit-3")
        self.assertTrue(record.is_free)

    def test_record_outcome(self):
        self.meter.charge_for_action(USER, "image_edit", "edit-1")
        record = self.meter.record_outcome("edit-1", succeeded=True)
        self.assertEqual(record.status, UsageRecord.Status.SUCCEEDED)

        # Terminal: a late failure report does not flip it.
        record = self.meter.record_outcome("edit-1", succeeded=False)
        self.assertEqual(record.status, UsageRecord.Status.SUCCEEDED)

    def test_refund_applies_once(self):
        meter = UsageMeter(self.ledger, prices={"image_edit": 100}, free_daily_actions=0)
        self.ledger.credit(USER, 300)
        meter.charge_for_action(USER, "image_edit", "edit-1")

        refund = meter.refund("edit-1")
        again = meter.refund("edit-1")

        self.assertEqual(refund.entry_id, again.entry_id)
        self.assertEqual(refund.kind, LedgerEntry.Kind.CREDIT)
        self.assertEqual(refund.reference_id, "edit-1")
        self.assertEqual(self.ledger.get_balance(USER), 300)
        kinds = [entry.kind for entry in self.ledger.get_history(USER, 10, 0)]
        self.assertEqual(kinds, ["CREDIT", "DEBIT", "CREDIT"])

    def test_refund_of_free_usage_is_noop(self):
        self.meter.charge_for_action(USER, "image_edit", "edit-1")
        self.assertIsNone(self.meter.refund("edit-1"))
        self.assertFalse(LedgerEntry.objects.exists())

    def test_failed_charge_without_refund_stays_in_history(self):
        meter = UsageMeter(self.ledger, prices={"image_edit": 100}, free_daily_actions=0)
        self.ledger.credit(USER, 300)
        meter.charge_for_action(USER, "image_edit", "edit-1")
        meter.record_outcome("edit-1", succeeded=False)

        history = self.ledger.get_history(USER, 10, 0)
        self.assertEqual(history[0].kind, LedgerEntry.Kind.DEBIT)
        self.assertEqual(history[0].reference_id, "edit-1")
        self.assertEqual(self.ledger.get_balance(USER), 200)


class UsageMeterConcurrencyTest(TransactionTestCase):
    def test_concurrent_charges_share_one_free_slot(self):
        ledger = BalanceLedger(LedgerStore())
        meter = UsageMeter(ledger, prices={"image_edit": 100}, free_daily_actions=1)
        ledger.credit(USER, 1000, "tx-seed")

        results = run_concurrently(*[
            (lambda i=i: meter.charge_for_action(USER, "image_edit", f"edit-{i}"))
            for i in range(4)
        ])

        self.assertTrue(all(isinstance(r, UsageRecord) for r in results), results)
        self.assertEqual(sum(1 for r in results if r.is_free), 1)
        self.assertEqual(sorted(r.amount for r in results), [0, 100, 100, 100])
        self.assertEqual(ledger.get_balance(USER), 700)
        self.assertTrue(ledger.audit(USER).is_consistent)


# ============================================================
# Recharge Guard Tests
# ============================================================


class RechargeGuardTest(TransactionTestCase):
    def setUp(self):
        self.ledger = BalanceLedger(LedgerStore())
        self.guard = RechargeGuard(self.ledger)

    def test_settle_is_idempotent(self):
        first = self.guard.settle("tx-1", USER, 100)
        second = self.guard.settle("tx-1", USER, 100)

        self.assertTrue(first.applied)
        self.assertFalse(second.applied)
        self.assertEqual(first.entry.entry_id, second.entry.entry_id)
        self.assertEqual(self.ledger.get_balance(USER), 100)
        self.assertEqual(LedgerEntry.objects.filter(kind=LedgerEntry.Kind.CREDIT).count(), 1)

        recharge = RechargeRequest.objects.get(transaction_id="tx-1")
        self.assertEqual(recharge.status, RechargeRequest.Status.SETTLED)
        self.assertEqual(recharge.ledger_entry.reference_id, "tx-1")
        self.assertIsNotNone(recharge.settled_at)

    def test_settle_after_mark_failed_rejected(self):
        self.guard.mark_failed("tx-2")
        with self.assertRaises(AlreadyTerminal):
            self.guard.settle("tx-2", USER, 100)
        self.assertEqual(self.ledger.get_balance(USER), 0)
        self.assertFalse(LedgerEntry.objects.exists())

    def test_mark_failed_after_settle_rejected(self):
        self.guard.settle("tx-3", USER, 100)
        with self.assertRaises(AlreadyTerminal):
            self.guard.mark_failed("tx-3")
        self.assertEqual(
            RechargeRequest.objects.get(transaction_id="tx-3").status,
            RechargeRequest.Status.SETTLED,
        )

    def test_mark_failed_twice_is_noop(self):
        first = self.guard.mark_failed("tx-4")
        second = self.guard.mark_failed("tx-4")
        self.assertEqual(first.failed_at, second.failed_at)
        self.assertEqual(second.status, RechargeRequest.Status.FAILED)

    def test_open_then_settle(self):
        recharge = self.guard.open("tx-5", USER, 300)
        self.assertEqual(recharge.status, RechargeRequest.Status.PENDING)
        self.assertEqual(self.ledger.get_balance(USER), 0)

        settlement = self.guard.settle("tx-5", USER, 300)
        self.assertTrue(settlement.applied)
        self.assertEqual(self.ledger.get_balance(USER), 300)

    def test_open_replay_returns_same_request(self):
        first = self.guard.open("tx-6", USER, 300)
        second = self.guard.open("tx-6", USER, 300)
        self.assertEqual(first.pk, second.pk)

    def test_mismatched_parameters_conflict(self):
        self.guard.open("tx-7", USER, 300)
        with self.assertRaises(IdempotencyConflict):
            self.guard.settle("tx-7", USER, 500)
        with self.assertRaises(IdempotencyConflict):
            self.guard.settle("tx-7", OTHER_USER, 300)
        self.assertEqual(self.ledger.get_balance(USER), 0)

    def test_open_after_mark_failed_rejected(self):
        self.guard.mark_failed("tx-9")
        with self.assertRaises(AlreadyTerminal):
            self.guard.open("tx-9", USER, 100)

    def test_invalid_amount(self):
        with self.assertRaises(InvalidAmount):
            self.guard.settle("tx-8", USER, 0)
        self.assertFalse(RechargeRequest.objects.exists())

    def test_expire_pending(self):
        self.guard.open("tx-old", USER, 100)
        self.guard.open("tx-fresh", USER, 100)
        self.guard.open("tx-old-settled", USER, 100)
        self.guard.settle("tx-old-settled", USER, 100)
        RechargeRequest.objects.filter(transaction_id__startswith="tx-old").update(
            created_at=timezone.now() - timedelta(days=2)
        )

        expired = self.guard.expire_pending(timezone.now() - timedelta(days=1))

        self.assertEqual(expired, 1)
        statuses = dict(RechargeRequest.objects.values_list("transaction_id", "status"))
        self.assertEqual(statuses["tx-old"], RechargeRequest.Status.FAILED)
        self.assertEqual(statuses["tx-fresh"], RechargeRequest.Status.PENDING)
        self.assertEqual(statuses["tx-old-settled"], RechargeRequest.Status.SETTLED)
        with self.assertRaises(AlreadyTerminal):
            self.guard.settle("tx-old", USER, 100)


class RechargeGuardConcurrencyTest(TransactionTestCase):
    def test_concurrent_replays_credit_once(self):
        guard = RechargeGuard(BalanceLedger(LedgerStore()))

        results = run_concurrently(
            lambda: guard.settle("tx-race", USER, 100),
            lambda: guard.settle("tx-race", USER, 100),
            lambda: guard.settle("tx-race", USER, 100),
        )

        self.assertFalse([r for r in results if isinstance(r, Exception)], results)
        self.assertEqual(sum(1 for r in results if r.applied), 1)
        self.assertEqual(len({r.entry.entry_id for r in results}), 1)
        self.assertEqual(guard.ledger.get_balance(USER), 100)
        self.assertEqual(LedgerEntry.objects.count(), 1)


# ============================================================
# Edit Service Tests
# ============================================================


class EditServiceTest(TransactionTestCase):
    def setUp(self):
        self.ledger = BalanceLedger(LedgerStore())
        self.meter = UsageMeter(self.ledger, prices={"image_edit": 100}, free_daily_actions=0)
        self.storage = InMemoryStorage()
        self.service = EditService(self.meter, storage=self.storage)
        self.ledger.credit(USER, 500, "tx-seed")

    def submit(self):
        return self.service.submit(USER, "make it sunny", ["https://example.com/a.png"])

    def test_submit_charges(self):
        operation = self.submit()

        self.assertEqual(operation.status, EditOperation.Status.PROCESSING)
        self.assertEqual(operation.cost, 100)
        self.assertEqual(self.ledger.get_balance(USER), 400)
        usage = UsageRecord.objects.get(reference_id=operation.reference_id)
        self.assertEqual(usage.status, UsageRecord.Status.PENDING)
        self.assertEqual(usage.ledger_entry.reference_id, str(operation.uuid))

    def test_submit_insufficient_balance_creates_nothing(self):
        self.ledger.debit(USER, 450)
        with self.assertRaises(InsufficientBalance):
            self.submit()
        self.assertFalse(EditOperation.objects.exists())
        self.assertFalse(UsageRecord.objects.exists())
        self.assertEqual(self.ledger.get_balance(USER), 50)

    @patch("billing.services.editing.request_image_edit")
    def test_execute_success(self, mock_edit):
        mock_edit.return_value = edit_api_success()
        operation = self.submit()

        result = self.service.execute(operation.id)

        self.assertEqual(result.status, EditOperation.Status.SUCCEEDED)
        self.assertEqual(len(result.output_images), 1)
        self.assertTrue(self.storage.exists(result.output_images[0]))
        self.assertIsNotNone(result.completed_at)
        self.assertEqual(
            UsageRecord.objects.get(reference_id=operation.reference_id).status,
            UsageRecord.Status.SUCCEEDED,
        )
        self.assertEqual(self.ledger.get_balance(USER), 400)
        mock_edit.assert_called_once_with("make it sunny", ["https://example.com/a.png"])

    @patch("billing.services.editing.request_image_edit")
    def test_execute_failure_refunds(self, mock_edit):
        mock_edit.return_value = edit_api_failure()
        operation = self.submit()

        result = self.service.execute(operation.id)

        self.assertEqual(result.status, EditOperation.Status.FAILED)
        self.assertEqual(result.error, {"error": "http_error", "status": 503})
        self.assertEqual(self.ledger.get_balance(USER), 500)
        usage = UsageRecord.objects.get(reference_id=operation.reference_id)
        self.assertEqual(usage.status, UsageRecord.Status.FAILED)
        self.assertTrue(usage.is_refunded)
        kinds = [entry.kind for entry in self.ledger.get_history(USER, 10, 0)]
        self.assertEqual(kinds, ["CREDIT", "DEBIT", "CREDIT"])
        self.assertTrue(self.ledger.audit(USER).is_consistent)

    @patch("billing.services.editing.request_image_edit")
    def test_execute_already_finished_raises(self, mock_edit):
        mock_edit.return_value = edit_api_success()
        operation = self.submit()
        self.service.execute(operation.id)

        with self.assertRaises(EditOperation.DoesNotExist):
            self.service.execute(operation.id)
        mock_edit.assert_called_once()

    def test_fail_stale_refunds(self):
        stale = self.submit()
        fresh = self.submit()
        EditOperation.objects.filter(pk=stale.pk).update(
            created_at=timezone.now() - timedelta(hours=1)
        )

        failed = self.service.fail_stale(timezone.now() - timedelta(minutes=15))

        self.assertEqual(failed, 1)
        stale.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(stale.status, EditOperation.Status.FAILED)
        self.assertEqual(stale.error["error"], "stale")
        self.assertEqual(fresh.status, EditOperation.Status.PROCESSING)
        self.assertEqual(self.ledger.get_balance(USER), 400)

    def test_result_for_operation_failed_meanwhile_is_discarded(self):
        operation = self.submit()

        def fail_as_stale_then_succeed(instruction, image_urls):
            self.service.fail_stale(timezone.now() + timedelta(minutes=1))
            return edit_api_success()

        with patch("billing.services.editing.request_image_edit", fail_as_stale_then_succeed):
            result = self.service.execute(operation.id)

        self.assertEqual(result.status, EditOperation.Status.FAILED)
        self.assertEqual(result.output_images, [])
        self.assertFalse(self.storage.exists(f"edits/{operation.uuid}_0.png"))
        self.assertEqual(self.ledger.get_balance(USER), 500)


# ============================================================
# Generative API Client Tests
# ============================================================


class GenerativeClientTest(TestCase):
    def test_build_edit_payload(self):
        payload = build_edit_payload("add a hat", ["https://example.com/a.png"])
        content = payload["messages"][0]["content"]
        self.assertFalse(payload["stream"])
        self.assertEqual(content[0], {"type": "text", "text": "add a hat"})
        self.assertEqual(content[1]["image_url"]["url"], "https://example.com/a.png")

    def test_extract_images(self):
        data = {
            "choices": [
                {"message": {"content": f"![image](data:image/png;base64,{IMAGE_B64})"}},
                {"message": {"content": "Sorry, I cannot do that."}},
                {"message": None},
                {"message": {"content": "(not base64!)"}},
            ]
        }
        self.assertEqual(extract_images(data), [IMAGE_BYTES])

    @patch("billing.utils.generative.requests.post")
    def test_request_success(self, mock_post):
        mock_post.return_value.status_code = 200
        mock_post.return_value.json.return_value = {
            "id": "chatcmpl-1",
            "model": "gemini-2.5-flash-image",
            "choices": [{"message": {"content": f"![image](data:image/png;base64,{IMAGE_B64})"}}],
        }

        result = request_image_edit("add a hat", ["https://example.com/a.png"])

        self.assertTrue(result["success"])
        self.assertEqual(result["images"], [IMAGE_BYTES])
        self.assertEqual(result["response"]["id"], "chatcmpl-1")

    @patch("billing.utils.generative.requests.post")
    def test_request_without_image_fails(self, mock_post):
        mock_post.return_value.status_code = 200
        mock_post.return_value.json.return_value = {
            "choices": [{"message": {"content": "No image"}}]
        }
        result = request_image_edit("add a hat", ["https://example.com/a.png"])
        self.assertFalse(result["success"])
        self.assertEqual(result["response"]["error"], "no_image")

    @patch("billing.utils.generative.requests.post")
    def test_request_http_error(self, mock_post):
        mock_post.return_value.status_code = 429
        mock_post.return_value.text = "rate limited"
        result = request_image_edit("add a hat", ["https://example.com/a.png"])
        self.assertFalse(result["success"])
        self.assertEqual(result["response"], {"error": "http_error", "status": 429})

    @patch("billing.utils.generative.requests.post")
    def test_request_connection_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        result = request_image_edit("add a hat", ["https://example.com/a.png"])
        self.assertFalse(result["success"])
        self.assertEqual(result["response"]["error"], "connection_error")

    @patch("billing.utils.generative.requests.post")
    def test_request_timeout(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("slow")
        result = request_image_edit("add a hat", ["https://example.com/a.png"])
        self.assertEqual(result["response"]["error"], "timeout")


# ============================================================
# API Tests
# ============================================================


class AccountAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.ledger = BalanceLedger()

    def test_balance_of_new_user(self):
        response = self.client.get(f"/accounts/{USER}/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"user_id": USER, "balance": 0})

    def test_balance_after_credit(self):
        self.ledger.credit(USER, 750)
        response = self.client.get(f"/accounts/{USER}/")
        self.assertEqual(response.data["balance"], 750)

    def test_entries_paginated(self):
        self.ledger.credit(USER, 1000)
        for i in range(4):
            self.ledger.debit(USER, 100, reference_id=f"edit-{i}")

        response = self.client.get(f"/accounts/{USER}/entries/?limit=2&offset=0")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data["results"]), 2)
        self.assertEqual(response.data["results"][0]["reference_id"], "edit-3")
        self.assertEqual(response.data["results"][0]["balance_after"], 600)

        response = self.client.get(f"/accounts/{USER}/entries/?limit=2&offset=4")
        self.assertEqual(len(response.data["results"]), 1)
        self.assertEqual(response.data["results"][0]["kind"], "CREDIT")

    def test_entries_invalid_limit(self):
        response = self.client.get(f"/accounts/{USER}/entries/?limit=0")
        self.assertEqual(response.status_code, 400)

    def test_daily_usage(self):
        UsageRecord.objects.create(
            user_id=USER, action_type="image_edit", reference_id="edit-1", is_free=True
        )
        response = self.client.get(f"/accounts/{USER}/usage/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["today_usage"], 1)
        self.assertEqual(response.data["free_daily_actions"], UsageMeter().free_daily_actions)

    def test_pricing(self):
        response = self.client.get("/pricing/")
        self.assertEqual(response.status_code, 200)
        self.assertIn("image_edit", response.data["prices"])

    def test_storage_error_is_503(self):
        with patch.object(LedgerStore, "get_or_create_account", side_effect=OperationalError("down")):
            response = self.client.get(f"/accounts/{USER}/")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["code"], "storage_error")


class RechargeAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()

    def settle(self, transaction_id="tx-api", amount=500):
        return self.client.post(
            "/recharges/settle",
            {"transaction_id": transaction_id, "user_id": USER, "amount": amount},
            format="json",
        )

    def test_open_recharge(self):
        response = self.client.post(
            "/recharges/",
            {"transaction_id": "tx-open", "user_id": USER, "amount": 500},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["status"], "PENDING")
        self.assertIsNone(response.data["entry_id"])

    def test_settle_replay(self):
        first = self.settle()
        second = self.settle()

        self.assertEqual(first.status_code, 200)
        self.assertTrue(first.data["applied"])
        self.assertEqual(first.data["entry"]["balance_after"], 500)
        self.assertEqual(second.status_code, 200)
        self.assertFalse(second.data["applied"])
        self.assertEqual(first.data["entry"]["entry_id"], second.data["entry"]["entry_id"])
        self.assertEqual(BalanceLedger().get_balance(USER), 500)

    def test_settle_after_fail(self):
        response = self.client.post("/recharges/tx-api/fail")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "FAILED")

        response = self.settle()
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "already_terminal")

    def test_settle_conflicting_amount(self):
        self.settle(amount=500)
        response = self.settle(amount=900)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "idempotency_conflict")

    def test_settle_invalid_amount(self):
        response = self.settle(amount=0)
        self.assertEqual(response.status_code, 400)

    def test_settle_missing_fields(self):
        response = self.client.post("/recharges/settle", {"amount": 100}, format="json")
        self.assertEqual(response.status_code, 400)


class EditAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.payload = {
            "instruction": "make it sunny",
            "image_urls": ["https://example.com/a.png"],
        }

    def use_free_allowance(self):
        for i in range(UsageMeter().free_daily_actions):
            UsageRecord.objects.create(
                user_id=USER, action_type="image_edit", reference_id=f"used-{i}", is_free=True
            )

    @patch("billing.views.edit.process_edit_operation")
    def test_create_edit_queues_processing(self, mock_task):
        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(f"/accounts/{USER}/edits", self.payload, format="json")

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.data["status"], "PROCESSING")
        operation = EditOperation.objects.get(uuid=response.data["uuid"])
        mock_task.delay.assert_called_once_with(operation.id)

    @patch("billing.views.edit.process_edit_operation")
    def test_create_edit_insufficient_balance(self, mock_task):
        self.use_free_allowance()

        response = self.client.post(f"/accounts/{USER}/edits", self.payload, format="json")

        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.data["code"], "insufficient_balance")
        self.assertFalse(EditOperation.objects.exists())
        mock_task.delay.assert_not_called()

    @patch("billing.views.edit.process_edit_operation")
    def test_create_edit_charges_after_free_allowance(self, mock_task):
        self.use_free_allowance()
        BalanceLedger().credit(USER, 1000)

        response = self.client.post(f"/accounts/{USER}/edits", self.payload, format="json")

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.data["cost"], UsageMeter().quote("image_edit"))
        self.assertEqual(
            BalanceLedger().get_balance(USER), 1000 - UsageMeter().quote("image_edit")
        )

    def test_create_edit_requires_images(self):
        response = self.client.post(
            f"/accounts/{USER}/edits",
            {"instruction": "make it sunny", "image_urls": []},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_create_edit_rejects_bad_url(self):
        response = self.client.post(
            f"/accounts/{USER}/edits",
            {"instruction": "make it sunny", "image_urls": ["not a url"]},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_edit_detail(self):
        operation = EditOperation.objects.create(
            user_id=USER, instruction="x", input_images=["https://example.com/a.png"]
        )
        response = self.client.get(f"/edits/{operation.uuid}/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "PROCESSING")

    def test_edit_detail_not_found(self):
        response = self.client.get(f"/edits/{uuid.uuid4()}/")
        self.assertEqual(response.status_code, 404)

    def test_requests_are_logged(self):
        with self.assertLogs("billing.middleware", level="INFO") as logs:
            self.client.get("/pricing/")
        self.assertIn("GET /pricing/ status=200", logs.output[0])


# ============================================================
# Celery Task Tests
# ============================================================


class CeleryTaskTest(TransactionTestCase):
    def setUp(self):
        self.ledger = BalanceLedger()
        self.ledger.credit(USER, 1000)

    @patch("billing.services.editing.request_image_edit")
    def test_process_edit_operation(self, mock_edit):
        mock_edit.return_value = edit_api_success()
        operation = EditService(storage=InMemoryStorage()).submit(
            USER, "make it sunny", ["https://example.com/a.png"]
        )

        from billing.tasks import process_edit_operation

        with patch("billing.services.editing.default_storage", InMemoryStorage()):
            result = process_edit_operation.apply(args=[operation.id])

        self.assertEqual(result.get()["status"], EditOperation.Status.SUCCEEDED)

    def test_process_missing_operation(self):
        from billing.tasks import process_edit_operation

        result = process_edit_operation.apply(args=[999999])
        self.assertEqual(result.get()["status"], "NOT_FOUND")

    def test_fail_stale_edit_operations(self):
        operation = EditService(storage=InMemoryStorage()).submit(
            USER, "make it sunny", ["https://example.com/a.png"]
        )
        EditOperation.objects.filter(pk=operation.pk).update(
            created_at=timezone.now() - timedelta(days=1)
        )

        from billing.tasks import fail_stale_edit_operations

        result = fail_stale_edit_operations.apply()
        self.assertEqual(result.get()["failed"], 1)
        operation.refresh_from_db()
        self.assertEqual(operation.status, EditOperation.Status.FAILED)

    def test_expire_pending_recharges(self):
        RechargeGuard().open("tx-stale", USER, 100)
        RechargeRequest.objects.filter(transaction_id="tx-stale").update(
            created_at=timezone.now() - timedelta(days=3)
        )

        from billing.tasks import expire_pending_recharges

        result = expire_pending_recharges.apply()
        self.assertEqual(result.get()["expired"], 1)


# ============================================================
# Management Command Tests
# ============================================================


class AuditLedgerCommandTest(TestCase):
    def test_consistent_ledger(self):
        ledger = BalanceLedger()
        ledger.credit(USER, 100)
        ledger.debit(USER, 40)
        ledger.credit(OTHER_USER, 10)

        out = StringIO()
        call_command("audit_ledger", stdout=out)
        self.assertIn("2 account(s) consistent", out.getvalue())

    def test_drift_fails(self):
        BalanceLedger().credit(USER, 100)
        Account.objects.filter(user_id=USER).update(balance=1)

        out = StringIO()
        with self.assertRaises(CommandError):
            call_command("audit_ledger", "--user-id", str(USER), stdout=out)
        self.assertIn(f"user={USER}", out.getvalue())
