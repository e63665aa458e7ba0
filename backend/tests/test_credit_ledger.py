"""
Credit ledger: reservation protocol, reconciliation and balance movements.

- Reserve is a single conditional update: concurrent reserves never overdraw.
- commit / rollback are terminal; a second rollback restores nothing.
- adjust_after_actual charges a shortfall as a linked reservation and refunds a surplus.
- Reads retry once on connection failure; a failed reserve write is reported as ambiguous.
"""
import asyncio
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import ConnectionFailure

from assignsavvy.errors import (
    AccountNotFoundError,
    InvalidArgumentError,
    TransactionStateError,
    TransientStoreError,
    UnknownTransactionError,
)
from assignsavvy.models.credits import AdjustmentOutcome, TransactionState, LedgerEntryType
from assignsavvy.services.credit_ledger import CreditLedger
from assignsavvy.services.plan_registry import PlanRegistryService


class TestOpenAccount:
    @pytest.mark.asyncio
    async def test_new_account_gets_signup_allotment(self, services, db):
        account = await services.ledger.open_account("user-1", email="a@example.com")
        assert account.plan_type == "freemium"
        assert account.credits == 200
        assert account.last_refresh_month is not None

        entries = await db.credit_ledger.find({"user_id": "user-1"}).to_list(10)
        assert len(entries) == 1
        assert entries[0]["entry_type"] == LedgerEntryType.SIGNUP.value
        assert entries[0]["balance_after"] == 200

    @pytest.mark.asyncio
    async def test_open_is_idempotent(self, services, db):
        await services.ledger.open_account("user-1")
        await db.users.update_one({"user_id": "user-1"}, {"$set": {"credits": 35}})

        again = await services.ledger.open_account("user-1")
        assert again.credits == 35
        assert await db.users.count_documents({"user_id": "user-1"}) == 1
        assert await db.credit_ledger.count_documents({"user_id": "user-1"}) == 1

    @pytest.mark.asyncio
    async def test_get_balance_unknown_user(self, services):
        with pytest.raises(AccountNotFoundError):
            await services.ledger.get_balance("nobody")


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_deducts_credits_for_words(self, services, make_account):
        await make_account(plan_type="pro", credits=2000)
        result = await services.ledger.reserve("user-1", 500, "pro", "writing")

        assert result.success is True
        assert result.credits_deducted == 167
        assert result.words_allocated == 500
        assert result.new_balance == 1833
        assert await services.ledger.get_balance("user-1") == 1833

        transaction = await services.ledger.get_transaction(result.transaction_id)
        assert transaction.state == TransactionState.RESERVED
        assert transaction.credits_reserved == 167
        assert transaction.plan_type == "pro"

    @pytest.mark.asyncio
    async def test_exact_balance_can_be_spent_then_nothing_more(self, services, make_account):
        await make_account(credits=200)
        full = await services.ledger.reserve("user-1", 600, "freemium", "writing")
        assert full.success is True
        assert full.new_balance == 0
        await services.ledger.commit(full.transaction_id)

        one_more = await services.ledger.reserve("user-1", 1, "freemium", "writing")
        assert one_more.success is False
        assert one_more.required_credits == 1
        assert one_more.previous_balance == 0
        assert one_more.transaction_id is None

    @pytest.mark.asyncio
    async def test_concurrent_reserves_never_overdraw(self, services, make_account):
        await make_account(credits=200)
        first, second = await asyncio.gather(
            services.ledger.reserve("user-1", 450, "freemium", "writing"),
            services.ledger.reserve("user-1", 450, "freemium", "writing"),
        )
        assert sorted([first.success, second.success]) == [False, True]
        assert await services.ledger.get_balance("user-1") == 50

    @pytest.mark.asyncio
    async def test_many_concurrent_reserves(self, services, make_account):
        await make_account(credits=100)
        results = await asyncio.gather(*[
            services.ledger.reserve("user-1", 30, "freemium", "writing") for _ in range(15)
        ])
        succeeded = [r for r in results if r.success]
        assert len(succeeded) == 10
        assert await services.ledger.get_balance("user-1") == 0

    @pytest.mark.asyncio
    async def test_reserve_unknown_account(self, services):
        with pytest.raises(AccountNotFoundError):
            await services.ledger.reserve("ghost", 10, "freemium", "writing")

    @pytest.mark.asyncio
    async def test_reserve_rejects_invalid_word_count(self, services, make_account):
        await make_account()
        with pytest.raises(InvalidArgumentError):
            await services.ledger.reserve("user-1", 0, "freemium", "writing")
        assert await services.ledger.get_balance("user-1") == 200


class TestCommitRollback:
    @pytest.mark.asyncio
    async def test_rollback_restores_exactly(self, services, make_account):
        await make_account(plan_type="pro", credits=2000)
        reservation = await services.ledger.reserve("user-1", 900, "pro", "research")

        result = await services.ledger.rollback(reservation.transaction_id)
        assert result.credits_restored == 180
        assert result.new_balance == 2000
        assert await services.ledger.get_balance("user-1") == 2000

        transaction = await services.ledger.get_transaction(reservation.transaction_id)
        assert transaction.state == TransactionState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_second_rollback_restores_nothing(self, services, make_account):
        await make_account()
        reservation = await services.ledger.reserve("user-1", 30, "freemium", "writing")
        await services.ledger.rollback(reservation.transaction_id)

        again = await services.ledger.rollback(reservation.transaction_id)
        assert again.credits_restored == 0
        assert again.already_rolled_back is True
        assert await services.ledger.get_balance("user-1") == 200

    @pytest.mark.asyncio
    async def test_concurrent_rollbacks_refund_once(self, services, make_account):
        await make_account()
        reservation = await services.ledger.reserve("user-1", 300, "freemium", "writing")
        results = await asyncio.gather(
            services.ledger.rollback(reservation.transaction_id),
            services.ledger.rollback(reservation.transaction_id),
        )
        assert sorted(r.credits_restored for r in results) == [0, 100]
        assert await services.ledger.get_balance("user-1") == 200

    @pytest.mark.asyncio
    async def test_commit_is_terminal(self, services, make_account):
        await make_account()
        reservation = await services.ledger.reserve("user-1", 30, "freemium", "writing")
        await services.ledger.commit(reservation.transaction_id)
        await services.ledger.commit(reservation.transaction_id)

        with pytest.raises(TransactionStateError):
            await services.ledger.rollback(reservation.transaction_id)
        assert await services.ledger.get_balance("user-1") == 190

    @pytest.mark.asyncio
    async def test_commit_after_rollback_raises(self, services, make_account):
        await make_account()
        reservation = await services.ledger.reserve("user-1", 30, "freemium", "writing")
        await services.ledger.rollback(reservation.transaction_id)

        with pytest.raises(TransactionStateError) as exc_info:
            await services.ledger.commit(reservation.transaction_id)
        assert exc_info.value.current_state == "rolled_back"

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, services):
        with pytest.raises(UnknownTransactionError):
            await services.ledger.commit("CTX-MISSING")
        with pytest.raises(UnknownTransactionError):
            await services.ledger.rollback("CTX-MISSING")


class TestAdjustAfterActual:
    @pytest.mark.asyncio
    async def test_shortfall_is_charged_as_linked_reservation(self, services, make_account):
        await make_account(plan_type="pro", credits=2000)
        reservation = await services.ledger.reserve("user-1", 500, "pro", "writing")
        await services.ledger.commit(reservation.transaction_id)

        result = await services.ledger.adjust_after_actual(reservation.transaction_id, 700)
        assert result.outcome == AdjustmentOutcome.SHORTFALL_CHARGED
        assert result.estimated_credits == 167
        assert result.actual_credits == 234
        assert result.credits_delta == 67
        assert result.net_credits == 234
        assert await services.ledger.get_balance("user-1") == 2000 - 234

        follow_up = await services.ledger.get_transaction(result.follow_up_transaction_id)
        assert follow_up.parent_transaction_id == reservation.transaction_id
        assert follow_up.credits_reserved == 67
        assert follow_up.state == TransactionState.COMMITTED

        original = await services.ledger.get_transaction(reservation.transaction_id)
        assert original.credits_reserved == 167

    @pytest.mark.asyncio
    async def test_surplus_is_refunded(self, services, make_account, db):
        await make_account(credits=200)
        reservation = await services.ledger.reserve("user-1", 600, "freemium", "writing")
        await services.ledger.commit(reservation.transaction_id)

        result = await services.ledger.adjust_after_actual(reservation.transaction_id, 300)
        assert result.outcome == AdjustmentOutcome.SURPLUS_REFUNDED
        assert result.net_credits == 100
        assert result.new_balance == 100
        assert result.follow_up_transaction_id.startswith("CLE-")

        refund = await db.credit_ledger.find_one({"entry_id": result.follow_up_transaction_id})
        assert refund["entry_type"] == LedgerEntryType.REFUND.value
        assert refund["reference_id"] == reservation.transaction_id

    @pytest.mark.asyncio
    async def test_shortfall_uncovered_when_balance_is_empty(self, services, make_account):
        await make_account(credits=200)
        reservation = await services.ledger.reserve("user-1", 600, "freemium", "writing")
        await services.ledger.commit(reservation.transaction_id)

        result = await services.ledger.adjust_after_actual(reservation.transaction_id, 700)
        assert result.outcome == AdjustmentOutcome.SHORTFALL_UNCOVERED
        assert result.follow_up_transaction_id is None
        assert result.net_credits == 200
        assert await services.ledger.get_balance("user-1") == 0

    @pytest.mark.asyncio
    async def test_equal_actual_is_no_change(self, services, make_account):
        await make_account()
        reservation = await services.ledger.reserve("user-1", 90, "freemium", "writing")
        await services.ledger.commit(reservation.transaction_id)
        result = await services.ledger.adjust_after_actual(reservation.transaction_id, 88)
        assert result.outcome == AdjustmentOutcome.NO_CHANGE
        assert result.credits_delta == 0
        assert result.new_balance == 170

    @pytest.mark.asyncio
    async def test_adjusts_only_once(self, services, make_account):
        await make_account(credits=200)
        reservation = await services.ledger.reserve("user-1", 300, "freemium", "writing")
        await services.ledger.commit(reservation.transaction_id)
        await services.ledger.adjust_after_actual(reservation.transaction_id, 150)

        with pytest.raises(TransactionStateError):
            await services.ledger.adjust_after_actual(reservation.transaction_id, 150)
        assert await services.ledger.get_balance("user-1") == 150

    @pytest.mark.asyncio
    async def test_rolled_back_transaction_cannot_be_adjusted(self, services, make_account):
        await make_account()
        reservation = await services.ledger.reserve("user-1", 30, "freemium", "writing")
        await services.ledger.rollback(reservation.transaction_id)
        with pytest.raises(TransactionStateError):
            await services.ledger.adjust_after_actual(reservation.transaction_id, 60)

    @pytest.mark.asyncio
    async def test_open_reservation_cannot_be_adjusted(self, services, make_account):
        await make_account(plan_type="pro", credits=1000)
        reservation = await services.ledger.reserve("user-1", 600, "pro", "writing")

        with pytest.raises(TransactionStateError) as exc_info:
            await services.ledger.adjust_after_actual(reservation.transaction_id, 300)
        assert exc_info.value.current_state == "reserved"
        assert await services.ledger.get_balance("user-1") == 800

        rollback = await services.ledger.rollback(reservation.transaction_id)
        assert rollback.credits_restored == 200
        assert await services.ledger.get_balance("user-1") == 1000

    @pytest.mark.asyncio
    async def test_negative_actual_rejected(self, services, make_account):
        await make_account()
        reservation = await services.ledger.reserve("user-1", 30, "freemium", "writing")
        await services.ledger.commit(reservation.transaction_id)
        with pytest.raises(InvalidArgumentError):
            await services.ledger.adjust_after_actual(reservation.transaction_id, -1)


class TestBalanceMovements:
    @pytest.mark.asyncio
    async def test_refund_adds_credits_with_entry(self, services, make_account, db):
        await make_account(credits=10)
        result = await services.ledger.refund_credits("user-1", 40, reason="Support goodwill")
        assert result.new_balance == 50
        entry = await db.credit_ledger.find_one({"entry_id": result.entry_id})
        assert entry["delta"] == 40
        assert entry["reason"] == "Support goodwill"

    @pytest.mark.asyncio
    async def test_refund_validation(self, services, make_account):
        await make_account()
        with pytest.raises(InvalidArgumentError):
            await services.ledger.refund_credits("user-1", 0)
        with pytest.raises(AccountNotFoundError):
            await services.ledger.refund_credits("ghost", 5)

    @pytest.mark.asyncio
    async def test_reset_respects_guard(self, services, make_account):
        await make_account(credits=12, last_refresh_month="2026-01")
        skipped = await services.ledger.reset_balance(
            "user-1", 200, "Refresh", guard={"last_refresh_month": {"$ne": "2026-01"}}
        )
        assert skipped is None
        assert await services.ledger.get_balance("user-1") == 12

        entry = await services.ledger.reset_balance("user-1", 200, "Refresh")
        assert entry.delta == 188
        assert entry.balance_after == 200

    @pytest.mark.asyncio
    async def test_reset_unknown_account(self, services):
        with pytest.raises(AccountNotFoundError):
            await services.ledger.reset_balance("ghost", 200, "Refresh")


class TestHistoryAndMonitoring:
    @pytest.mark.asyncio
    async def test_transaction_history_newest_first(self, services, make_account):
        await make_account(plan_type="pro", credits=2000)
        ids = []
        for words in (30, 60, 90):
            result = await services.ledger.reserve("user-1", words, "pro", "writing")
            ids.append(result.transaction_id)

        history = await services.ledger.get_transaction_history("user-1", limit=2)
        assert len(history) == 2
        assert {t.transaction_id for t in history} <= set(ids)
        assert history[0].created_at >= history[1].created_at

    @pytest.mark.asyncio
    async def test_history_limit_bounds(self, services):
        with pytest.raises(InvalidArgumentError):
            await services.ledger.get_transaction_history("user-1", limit=0)
        with pytest.raises(InvalidArgumentError):
            await services.ledger.get_transaction_history("user-1", limit=101)

    @pytest.mark.asyncio
    async def test_stale_reservations_are_reported_until_resolved(self, services, make_account):
        await make_account()
        reservation = await services.ledger.reserve("user-1", 30, "freemium", "writing")
        later = datetime.now(timezone.utc) + timedelta(hours=1)

        stale = await services.ledger.find_stale_reservations(older_than_minutes=30, now=later)
        assert [s.transaction_id for s in stale] == [reservation.transaction_id]
        assert await services.ledger.find_stale_reservations(older_than_minutes=30) == []

        await services.ledger.commit(reservation.transaction_id)
        assert await services.ledger.find_stale_reservations(older_than_minutes=30, now=later) == []


class TestStoreFailures:
    """Connection failures against a mocked collection."""

    def _ledger(self):
        db = MagicMock()
        return CreditLedger(db, PlanRegistryService()), db

    @pytest.mark.asyncio
    async def test_reserve_write_failure_is_ambiguous(self):
        ledger, db = self._ledger()
        db.users.find_one_and_update = AsyncMock(side_effect=ConnectionFailure("socket closed"))

        with pytest.raises(TransientStoreError) as exc_info:
            await ledger.reserve("user-1", 30, "freemium", "writing")
        assert exc_info.value.ambiguous is True
        assert db.users.find_one_and_update.await_count == 1

    @pytest.mark.asyncio
    async def test_read_is_retried_once(self):
        ledger, db = self._ledger()
        db.users.find_one = AsyncMock(side_effect=[ConnectionFailure("blip"), {"credits": 42}])
        assert await ledger.get_balance("user-1") == 42

    @pytest.mark.asyncio
    async def test_read_gives_up_after_retry(self):
        ledger, db = self._ledger()
        db.users.find_one = AsyncMock(side_effect=ConnectionFailure("down"))
        with pytest.raises(TransientStoreError) as exc_info:
            await ledger.get_balance("user-1")
        assert exc_info.value.ambiguous is False
        assert db.users.find_one.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_transaction_insert_restores_balance(self):
        ledger, db = self._ledger()
        db.users.find_one_and_update = AsyncMock(return_value={"credits": 190})
        db.users.update_one = AsyncMock()
        db.credit_transactions.insert_one = AsyncMock(side_effect=ConnectionFailure("down"))

        with pytest.raises(ConnectionFailure):
            await ledger.reserve("user-1", 30, "freemium", "writing")
        restore = db.users.update_one.call_args[0][1]
        assert restore["$inc"]["credits"] == 10

    @pytest.mark.asyncio
    async def test_failed_restore_reopens_reservation(self):
        ledger, db = self._ledger()
        flipped = {"transaction_id": "CTX-1", "user_id": "user-1", "credits_reserved": 200, "state": "rolled_back"}
        db.credit_transactions.find_one_and_update = AsyncMock(
            side_effect=[flipped, {**flipped, "state": "reserved"}, flipped]
        )
        db.users.find_one_and_update = AsyncMock(
            side_effect=[ConnectionFailure("socket closed"), {"credits": 1000}]
        )

        with pytest.raises(ConnectionFailure):
            await ledger.rollback("CTX-1")
        reopen_filter, reopen_update = db.credit_transactions.find_one_and_update.call_args_list[1][0]
        assert reopen_filter == {"transaction_id": "CTX-1", "state": "rolled_back"}
        assert reopen_update["$set"]["state"] == "reserved"

        retry = await ledger.rollback("CTX-1")
        assert retry.credits_restored == 200
        assert retry.new_balance == 1000
        assert retry.already_rolled_back is False
