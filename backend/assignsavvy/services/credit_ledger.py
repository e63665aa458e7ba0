"""AssignSavvy Credit Ledger

Handles every movement of a user's credit balance:
- Reservation protocol (reserve -> commit | rollback)
- Reconciliation of estimated vs actual words
- Refunds, grants and resets with an append-only audit entry
- Account opening with the signup allotment

NON-NEGOTIABLE RULES:
1. The balance check and the decrement are ONE conditional update
   ({"credits": {"$gte": required}} + $inc). Never read-modify-write.
2. Every state transition is conditional on the current state. Leaving
   "reserved" is final, except that a rollback whose balance restore fails
   reopens the reservation.
3. Only committed transactions are reconciled.
4. Reads may be retried once on connection failure. Reserve writes never are.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List, Union, Callable, Awaitable
import logging

from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from assignsavvy.config import STALE_RESERVATION_MINUTES
from assignsavvy.errors import (
    InvalidArgumentError,
    AccountNotFoundError,
    UnknownTransactionError,
    TransactionStateError,
    TransientStoreError,
)
from assignsavvy.models.credits import (
    ToolType,
    QualityTier,
    TransactionState,
    CreditTransaction,
    LedgerEntry,
    LedgerEntryType,
    ReservationResult,
    RollbackResult,
    RefundResult,
    AdjustmentResult,
    AdjustmentOutcome,
    StaleReservation,
)
from assignsavvy.models.user import UserAccount, PlanType, DEFAULT_SIGNUP_CREDITS
from assignsavvy.services.plan_registry import PlanRegistryService
from assignsavvy.services.usage_tracker import current_month

logger = logging.getLogger(__name__)

MAX_HISTORY_PAGE = 100
STALE_SWEEP_LIMIT = 500


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_positive_int(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgumentError(f"{name} must be a positive integer, got {value!r}")


class CreditLedger:
    """Atomic credit balance operations against the users collection."""

    def __init__(self, db, plan_registry: PlanRegistryService):
        self.db = db
        self.plan_registry = plan_registry

    async def ensure_indexes(self) -> None:
        await self.db.users.create_index("user_id", unique=True)
        await self.db.credit_transactions.create_index("transaction_id", unique=True)
        await self.db.credit_transactions.create_index([("state", 1), ("created_at", 1)])
        await self.db.credit_transactions.create_index([("user_id", 1), ("created_at", -1)])
        await self.db.credit_ledger.create_index([("user_id", 1), ("created_at", -1)])
        await self.db.credit_ledger.create_index("entry_id", unique=True)
        await self.db.credit_adjustments.create_index("transaction_id", unique=True)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _read_with_retry(self, operation: str, read: Callable[[], Awaitable[Any]]) -> Any:
        """Run an idempotent read, retrying once on connection failure."""
        try:
            return await read()
        except ConnectionFailure as e:
            logger.warning(f"{operation}: store unavailable ({e}), retrying once")
        try:
            return await read()
        except ConnectionFailure as e:
            raise TransientStoreError(
                f"Document store unavailable during {operation}", operation=operation
            ) from e

    async def get_account(self, user_id: str) -> Optional[UserAccount]:
        doc = await self._read_with_retry(
            "get_account",
            lambda: self.db.users.find_one({"user_id": user_id}, {"_id": 0}),
        )
        return UserAccount(**doc) if doc else None

    async def get_balance(self, user_id: str) -> int:
        """Current balance. Raises AccountNotFoundError."""
        doc = await self._read_with_retry(
            "get_balance",
            lambda: self.db.users.find_one({"user_id": user_id}, {"_id": 0, "credits": 1}),
        )
        if not doc:
            raise AccountNotFoundError(user_id)
        return doc.get("credits", 0)

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        doc = await self._read_with_retry(
            "get_transaction",
            lambda: self.db.credit_transactions.find_one({"transaction_id": transaction_id}, {"_id": 0}),
        )
        return CreditTransaction(**doc) if doc else None

    async def get_transaction_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> List[CreditTransaction]:
        """Reservations for a user, newest first."""
        if not 1 <= limit <= MAX_HISTORY_PAGE:
            raise InvalidArgumentError(f"limit must be between 1 and {MAX_HISTORY_PAGE}")
        if offset < 0:
            raise InvalidArgumentError("offset must not be negative")

        async def read():
            cursor = self.db.credit_transactions.find(
                {"user_id": user_id}, {"_id": 0}
            ).sort("created_at", -1).skip(offset).limit(limit)
            return await cursor.to_list(length=limit)

        docs = await self._read_with_retry("get_transaction_history", read)
        return [CreditTransaction(**doc) for doc in docs]

    # -------------------------------------------------------------------------
    # Account opening
    # -------------------------------------------------------------------------

    async def open_account(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: str = "",
    ) -> UserAccount:
        """Return the user's account, creating it on first sight.

        New accounts start on freemium with the signup allotment, recorded
        as a SIGNUP ledger entry that counts as the signup month's refresh.
        Concurrent first requests create one account.
        """
        created_at = datetime.now(timezone.utc)
        account = UserAccount(
            user_id=user_id,
            email=email,
            display_name=display_name,
            plan_type=PlanType.FREEMIUM.value,
            credits=DEFAULT_SIGNUP_CREDITS,
            last_credit_refresh=created_at.isoformat(),
            last_refresh_month=current_month(created_at),
            created_at=created_at.isoformat(),
            updated_at=created_at.isoformat(),
        )
        on_insert = account.model_dump(mode="json")
        on_insert.pop("user_id")

        try:
            existing = await self.db.users.find_one_and_update(
                {"user_id": user_id},
                {"$setOnInsert": on_insert},
                projection={"_id": 0},
                upsert=True,
                return_document=ReturnDocument.BEFORE,
            )
        except DuplicateKeyError:
            existing = await self.db.users.find_one({"user_id": user_id}, {"_id": 0})

        if existing:
            return UserAccount(**existing)

        entry = LedgerEntry(
            user_id=user_id,
            entry_type=LedgerEntryType.SIGNUP,
            delta=DEFAULT_SIGNUP_CREDITS,
            balance_after=DEFAULT_SIGNUP_CREDITS,
            reason="Signup allotment",
        )
        await self.db.credit_ledger.insert_one(entry.model_dump(mode="json"))
        logger.info(f"Opened account {user_id} with {DEFAULT_SIGNUP_CREDITS} credits")
        return account

    # -------------------------------------------------------------------------
    # Reservation protocol
    # -------------------------------------------------------------------------

    async def reserve(
        self,
        user_id: str,
        word_count: int,
        plan_type: Union[str, PlanType],
        tool_type: Union[str, ToolType],
        quality: Union[str, QualityTier] = QualityTier.STANDARD,
    ) -> ReservationResult:
        """Place a hold of credits_for_words(word_count) on the balance.

        Insufficient balance is a result, not an exception. A missing account
        raises AccountNotFoundError. A connection failure during the write
        raises TransientStoreError(ambiguous=True): the balance must be
        re-read before resubmitting.
        """
        required_credits = self.plan_registry.credits_for_words(word_count, tool_type, quality)
        return await self._reserve_credits(
            user_id=user_id,
            required_credits=required_credits,
            words_allocated=word_count,
            plan_type=self.plan_registry.resolve_plan_type(plan_type).value,
            tool_type=ToolType(tool_type),
            quality=QualityTier(quality),
        )

    async def _reserve_credits(
        self,
        user_id: str,
        required_credits: int,
        words_allocated: int,
        plan_type: Optional[str],
        tool_type: ToolType,
        quality: QualityTier,
        parent_transaction_id: Optional[str] = None,
    ) -> ReservationResult:
        try:
            account = await self.db.users.find_one_and_update(
                {"user_id": user_id, "credits": {"$gte": required_credits}},
                {
                    "$inc": {"credits": -required_credits, "lifetime_credits_used": required_credits},
                    "$set": {"updated_at": _now_iso()},
                },
                projection={"credits": 1},
                return_document=ReturnDocument.AFTER,
            )
        except ConnectionFailure as e:
            logger.error(f"Reserve of {required_credits} credits for {user_id} has unknown outcome: {e}")
            raise TransientStoreError(
                "Reservation outcome unknown; re-read balance before retrying",
                ambiguous=True,
                operation="reserve",
            ) from e

        if account is None:
            previous_balance = await self.get_balance(user_id)
            logger.warning(
                f"Insufficient credits for {user_id}: required {required_credits}, "
                f"available {previous_balance}"
            )
            return ReservationResult(
                success=False,
                required_credits=required_credits,
                previous_balance=previous_balance,
            )

        transaction = CreditTransaction(
            user_id=user_id,
            tool_type=tool_type,
            quality=quality,
            plan_type=plan_type,
            credits_reserved=required_credits,
            words_allocated=words_allocated,
            parent_transaction_id=parent_transaction_id,
        )
        try:
            await self.db.credit_transactions.insert_one(transaction.model_dump(mode="json"))
        except PyMongoError:
            logger.error(
                f"Failed to record reservation for {user_id}; restoring {required_credits} credits",
                exc_info=True,
            )
            await self.db.users.update_one(
                {"user_id": user_id},
                {"$inc": {"credits": required_credits, "lifetime_credits_used": -required_credits}},
            )
            raise

        logger.info(
            f"Reserved {required_credits} credits for {user_id} "
            f"({tool_type.value}, {transaction.transaction_id}); balance {account['credits']}"
        )
        return ReservationResult(
            success=True,
            transaction_id=transaction.transaction_id,
            credits_deducted=required_credits,
            words_allocated=words_allocated,
            new_balance=account["credits"],
            required_credits=required_credits,
        )

    async def _transition(
        self,
        transaction_id: str,
        target: TransactionState,
        source: TransactionState = TransactionState.RESERVED,
    ) -> Optional[Dict[str, Any]]:
        """Move source -> target. None if the transaction was not in source."""
        doc = await self.db.credit_transactions.find_one_and_update(
            {"transaction_id": transaction_id, "state": source.value},
            {"$set": {"state": target.value}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            doc.pop("_id", None)
        return doc

    async def commit(self, transaction_id: str) -> None:
        """Finalize a reservation. Repeated commits are no-ops.

        Raises UnknownTransactionError, or TransactionStateError if the
        transaction was rolled back.
        """
        doc = await self._transition(transaction_id, TransactionState.COMMITTED)
        if doc:
            logger.info(f"Committed {doc['credits_reserved']} credits for {doc['user_id']} ({transaction_id})")
            return

        existing = await self.get_transaction(transaction_id)
        if existing is None:
            logger.error(f"Commit of unknown credit transaction {transaction_id}")
            raise UnknownTransactionError(transaction_id)
        if existing.state == TransactionState.COMMITTED:
            logger.info(f"Credit transaction {transaction_id} already committed")
            return
        logger.error(f"Commit of rolled back credit transaction {transaction_id}")
        raise TransactionStateError(transaction_id, existing.state.value, "commit")

    async def rollback(self, transaction_id: str) -> RollbackResult:
        """Return exactly the reserved credits and mark the reservation rolled back.

        The state flip happens first so that concurrent rollbacks refund once.
        A second rollback returns credits_restored=0. If restoring the balance
        fails, the flip is reverted so the reservation stays visible to the
        stale sweep and the rollback can be retried.
        """
        doc = await self._transition(transaction_id, TransactionState.ROLLED_BACK)
        if doc is None:
            existing = await self.get_transaction(transaction_id)
            if existing is None:
                logger.error(f"Rollback of unknown credit transaction {transaction_id}")
                raise UnknownTransactionError(transaction_id)
            if existing.state == TransactionState.ROLLED_BACK:
                return RollbackResult(
                    transaction_id=transaction_id,
                    credits_restored=0,
                    already_rolled_back=True,
                )
            logger.error(f"Rollback of committed credit transaction {transaction_id}")
            raise TransactionStateError(transaction_id, existing.state.value, "rollback")

        credits = doc["credits_reserved"]
        user_id = doc["user_id"]
        try:
            account = await self.db.users.find_one_and_update(
                {"user_id": user_id},
                {
                    "$inc": {"credits": credits, "lifetime_credits_used": -credits},
                    "$set": {"updated_at": _now_iso()},
                },
                projection={"credits": 1},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError:
            logger.error(
                f"Restoring {credits} credits for {user_id} failed; reopening {transaction_id}",
                exc_info=True,
            )
            reopened = await self._transition(
                transaction_id, TransactionState.RESERVED, source=TransactionState.ROLLED_BACK
            )
            if reopened is None:
                logger.error(f"Could not reopen {transaction_id}; {credits} credits need manual restore")
            raise
        if account is None:
            logger.error(f"Rolled back {transaction_id} but account {user_id} no longer exists")
            return RollbackResult(transaction_id=transaction_id, credits_restored=0)

        logger.info(
            f"Rolled back {credits} credits for {user_id} ({transaction_id}); balance {account['credits']}"
        )
        return RollbackResult(
            transaction_id=transaction_id,
            credits_restored=credits,
            new_balance=account["credits"],
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def adjust_after_actual(self, transaction_id: str, actual_word_count: int) -> AdjustmentResult:
        """Settle the difference between estimated and actual words.

        Only committed transactions reconcile. A shortfall is charged as a
        second reservation linked through parent_transaction_id; a surplus is
        refunded. The original transaction is never modified. Each
        transaction reconciles once.
        """
        if isinstance(actual_word_count, bool) or not isinstance(actual_word_count, int) or actual_word_count < 0:
            raise InvalidArgumentError(f"actual_word_count must be a non-negative integer, got {actual_word_count!r}")

        transaction = await self.get_transaction(transaction_id)
        if transaction is None:
            raise UnknownTransactionError(transaction_id)
        if transaction.state != TransactionState.COMMITTED:
            logger.error(f"Adjust of {transaction.state.value} credit transaction {transaction_id}")
            raise TransactionStateError(transaction_id, transaction.state.value, "adjust")

        estimated = transaction.credits_reserved
        actual = 0
        if actual_word_count > 0:
            actual = self.plan_registry.credits_for_words(
                actual_word_count, transaction.tool_type, transaction.quality
            )
        delta = actual - estimated

        await self._claim_adjustment(transaction, actual, delta)

        outcome = AdjustmentOutcome.NO_CHANGE
        follow_up_id = None
        net_credits = estimated
        new_balance = None

        if delta > 0:
            shortfall = await self._reserve_credits(
                user_id=transaction.user_id,
                required_credits=delta,
                words_allocated=max(actual_word_count - transaction.words_allocated, 0),
                plan_type=transaction.plan_type,
                tool_type=transaction.tool_type,
                quality=transaction.quality,
                parent_transaction_id=transaction_id,
            )
            if shortfall.success:
                await self.commit(shortfall.transaction_id)
                outcome = AdjustmentOutcome.SHORTFALL_CHARGED
                follow_up_id = shortfall.transaction_id
                net_credits = actual
                new_balance = shortfall.new_balance
            else:
                outcome = AdjustmentOutcome.SHORTFALL_UNCOVERED
                new_balance = shortfall.previous_balance
                logger.warning(
                    f"Shortfall of {delta} credits on {transaction_id} not covered; "
                    f"balance {new_balance}"
                )
        elif delta < 0:
            refund = await self.refund_credits(
                transaction.user_id,
                -delta,
                reason_transaction_id=transaction_id,
                reason="Surplus after reconciliation",
            )
            outcome = AdjustmentOutcome.SURPLUS_REFUNDED
            follow_up_id = refund.entry_id
            net_credits = actual
            new_balance = refund.new_balance
        else:
            new_balance = await self.get_balance(transaction.user_id)

        await self.db.credit_adjustments.update_one(
            {"transaction_id": transaction_id},
            {"$set": {"outcome": outcome.value, "follow_up_transaction_id": follow_up_id}},
        )
        logger.info(
            f"Reconciled {transaction_id}: estimated {estimated}, actual {actual}, "
            f"outcome {outcome.value}"
        )
        return AdjustmentResult(
            transaction_id=transaction_id,
            estimated_credits=estimated,
            actual_credits=actual,
            credits_delta=delta,
            outcome=outcome,
            follow_up_transaction_id=follow_up_id,
            net_credits=net_credits,
            new_balance=new_balance,
        )

    async def _claim_adjustment(self, transaction: CreditTransaction, actual: int, delta: int) -> None:
        """Insert the adjustment record, or raise if one already exists."""
        record = {
            "transaction_id": transaction.transaction_id,
            "user_id": transaction.user_id,
            "estimated_credits": transaction.credits_reserved,
            "actual_credits": actual,
            "delta": delta,
            "outcome": None,
            "follow_up_transaction_id": None,
            "created_at": _now_iso(),
        }
        try:
            existing = await self.db.credit_adjustments.find_one_and_update(
                {"transaction_id": transaction.transaction_id},
                {"$setOnInsert": {k: v for k, v in record.items() if k != "transaction_id"}},
                projection={"_id": 0},
                upsert=True,
                return_document=ReturnDocument.BEFORE,
            )
        except DuplicateKeyError:
            existing = True
        if existing:
            logger.error(f"Credit transaction {transaction.transaction_id} already reconciled")
            raise TransactionStateError(transaction.transaction_id, "adjusted", "adjust")

    # -------------------------------------------------------------------------
    # Balance movements outside the reservation protocol
    # -------------------------------------------------------------------------

    async def _append_entry(
        self,
        user_id: str,
        entry_type: LedgerEntryType,
        delta: int,
        balance_after: int,
        reason: str,
        reference_id: Optional[str],
    ) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            entry_type=entry_type,
            delta=delta,
            balance_after=balance_after,
            reason=reason,
            reference_id=reference_id,
        )
        await self.db.credit_ledger.insert_one(entry.model_dump(mode="json"))
        return entry

    async def refund_credits(
        self,
        user_id: str,
        amount: int,
        reason_transaction_id: Optional[str] = None,
        reason: str = "Refund",
    ) -> RefundResult:
        """Unconditionally add credits back, with a REFUND ledger entry."""
        _require_positive_int("amount", amount)

        account = await self.db.users.find_one_and_update(
            {"user_id": user_id},
            {"$inc": {"credits": amount}, "$set": {"updated_at": _now_iso()}},
            projection={"credits": 1},
            return_document=ReturnDocument.AFTER,
        )
        if account is None:
            raise AccountNotFoundError(user_id)

        entry = await self._append_entry(
            user_id, LedgerEntryType.REFUND, amount, account["credits"], reason, reason_transaction_id
        )
        logger.info(
            f"Refunded {amount} credits to {user_id} (reason: {reason}, ref: {reason_transaction_id}); "
            f"balance {account['credits']}"
        )
        return RefundResult(
            user_id=user_id,
            credits_refunded=amount,
            new_balance=account["credits"],
            entry_id=entry.entry_id,
        )

    async def grant_credits(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_id: Optional[str] = None,
        set_fields: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Increment the balance (top-up), optionally updating account fields in the same write."""
        _require_positive_int("amount", amount)

        account = await self.db.users.find_one_and_update(
            {"user_id": user_id},
            {"$inc": {"credits": amount}, "$set": {**(set_fields or {}), "updated_at": _now_iso()}},
            projection={"credits": 1},
            return_document=ReturnDocument.AFTER,
        )
        if account is None:
            raise AccountNotFoundError(user_id)

        entry = await self._append_entry(
            user_id, LedgerEntryType.GRANT, amount, account["credits"], reason, reference_id
        )
        logger.info(f"Granted {amount} credits to {user_id} ({reason}); balance {account['credits']}")
        return entry

    async def reset_balance(
        self,
        user_id: str,
        new_balance: int,
        reason: str,
        reference_id: Optional[str] = None,
        guard: Optional[Dict[str, Any]] = None,
        set_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[LedgerEntry]:
        """Set the balance to a plan allotment.

        guard adds conditions to the filter; when they do not hold nothing is
        written and None is returned. A missing account raises.
        """
        if isinstance(new_balance, bool) or not isinstance(new_balance, int) or new_balance < 0:
            raise InvalidArgumentError(f"new_balance must be a non-negative integer, got {new_balance!r}")

        before = await self.db.users.find_one_and_update(
            {**(guard or {}), "user_id": user_id},
            {"$set": {**(set_fields or {}), "credits": new_balance, "updated_at": _now_iso()}},
            projection={"credits": 1},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            if await self.get_account(user_id) is None:
                raise AccountNotFoundError(user_id)
            return None

        delta = new_balance - before.get("credits", 0)
        entry = await self._append_entry(
            user_id, LedgerEntryType.RESET, delta, new_balance, reason, reference_id
        )
        logger.info(f"Reset balance of {user_id} to {new_balance} ({reason}, delta {delta})")
        return entry

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    async def find_stale_reservations(
        self,
        older_than_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[StaleReservation]:
        """Reservations still unresolved after the grace period, oldest first."""
        minutes = STALE_RESERVATION_MINUTES if older_than_minutes is None else older_than_minutes
        if minutes < 0:
            raise InvalidArgumentError("older_than_minutes must not be negative")
        cutoff = ((now or datetime.now(timezone.utc)) - timedelta(minutes=minutes)).isoformat()

        async def read():
            cursor = self.db.credit_transactions.find(
                {"state": TransactionState.RESERVED.value, "created_at": {"$lt": cutoff}},
                {"_id": 0},
            ).sort("created_at", 1).limit(STALE_SWEEP_LIMIT)
            return await cursor.to_list(length=STALE_SWEEP_LIMIT)

        docs = await self._read_with_retry("find_stale_reservations", read)
        return [StaleReservation(**doc) for doc in docs]
