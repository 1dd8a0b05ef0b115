"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Idempotency is enforced by unique constraints plus ``INSERT ... ON CONFLICT
DO NOTHING`` and by conditional ``UPDATE ... WHERE <expected state>``
statements whose ``rowcount`` tells the caller whether it won the race.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.errors import AccountNotFoundError, ConcurrentUpdateError
from billing_core.models.account import AccountSnapshot, DisputeStatus
from billing_core.models.charge import LeadChargeStatus, lead_charge_idempotency_key
from billing_core.models.dispute import TERMINAL_DISPUTE_STATUSES, DisputeDetails
from billing_core.models.webhook import WebhookEventStatus
from billing_core.state.tables import (
    DisputeTable,
    LeadChargeTable,
    NotificationLogTable,
    PaymentRecordTable,
    ProviderAccountTable,
    WebhookEventTable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PAYMENT_STATUS_SUCCEEDED = "succeeded"
PAYMENT_STATUS_FAILED = "failed"


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str] | None = None,
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    With no *index_elements* any unique violation is ignored.  The result's
    ``rowcount`` is 1 when the row was inserted and 0 when it already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ---------------------------------------------------------------------------
# ProviderAccountRepository
# ---------------------------------------------------------------------------


class ProviderAccountRepository:
    """Reads and versioned writes of the ``provider_accounts`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        provider_id: str,
        *,
        tier: str = "free",
        gateway_customer_ref: str | None = None,
        lead_credits_used_this_period: int = 0,
        subscription_status: str = "active",
    ) -> AccountSnapshot:
        """Insert a new provider account and return its snapshot."""
        row = ProviderAccountTable(
            id=provider_id,
            tier=_column_value(tier),
            gateway_customer_ref=gateway_customer_ref,
            lead_credits_used_this_period=lead_credits_used_this_period,
            subscription_status=_column_value(subscription_status),
            payment_failure_count=0,
            dispute_count=0,
            dispute_status=DisputeStatus.NONE.value,
            version=0,
        )
        self._session.add(row)
        await self._session.flush()
        return AccountSnapshot.from_row(row)

    async def get(self, provider_id: str) -> AccountSnapshot | None:
        """Read the current committed state of an account.

        ``populate_existing`` forces a fresh read even when the row is
        already in the session identity map, which matters when retrying
        a lost compare-and-swap.
        """
        stmt = (
            select(ProviderAccountTable)
            .where(ProviderAccountTable.id == provider_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return AccountSnapshot.from_row(row) if row is not None else None

    async def get_by_customer_ref(self, customer_ref: str) -> AccountSnapshot | None:
        stmt = (
            select(ProviderAccountTable)
            .where(ProviderAccountTable.gateway_customer_ref == customer_ref)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return AccountSnapshot.from_row(row) if row is not None else None

    async def lock(self, provider_id: str) -> bool:
        """Take a row lock on the account until the transaction ends.

        Used before reading data the next transition depends on (such as the
        open dispute count) so concurrent writers queue behind each other.
        SQLite serialises writers anyway and ignores ``FOR UPDATE``.
        """
        stmt = select(ProviderAccountTable.id).where(ProviderAccountTable.id == provider_id).with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def apply_transition(
        self,
        provider_id: str,
        transition: Callable[[AccountSnapshot], tuple[dict[str, Any], T]],
        *,
        max_attempts: int = 5,
    ) -> tuple[AccountSnapshot, T]:
        """Apply a pure state transition with optimistic concurrency.

        The transition receives a fresh snapshot and returns the fields to
        change plus an arbitrary result.  The change is written only if the
        row's ``version`` still matches the snapshot; otherwise the snapshot
        is re-read and the transition recomputed.

        Parameters
        ----------
        provider_id:
            Account to transition.
        transition:
            Pure function of the snapshot.  Must not have side effects, since
            it may run more than once.
        max_attempts:
            Compare-and-swap attempts before giving up.

        Returns
        -------
        tuple
            The post-transition snapshot and the transition's result.

        Raises
        ------
        AccountNotFoundError
            If the account does not exist.
        ConcurrentUpdateError
            If every attempt lost the race to another writer.
        """
        for attempt in range(1, max_attempts + 1):
            snapshot = await self.get(provider_id)
            if snapshot is None:
                raise AccountNotFoundError(provider_id)

            changes, result = transition(snapshot)
            if not changes:
                return snapshot, result

            new_version = snapshot.version + 1
            stmt = (
                update(ProviderAccountTable)
                .where(
                    ProviderAccountTable.id == provider_id,
                    ProviderAccountTable.version == snapshot.version,
                )
                .values(
                    **{key: _column_value(value) for key, value in changes.items()},
                    version=new_version,
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )
            outcome = await self._session.execute(stmt)
            if outcome.rowcount == 1:
                await self._session.flush()
                return snapshot.model_copy(update={**changes, "version": new_version}), result

            logger.info(
                "Account %s changed concurrently (version %d); retrying transition (%d/%d)",
                provider_id,
                snapshot.version,
                attempt,
                max_attempts,
            )

        raise ConcurrentUpdateError(
            f"Account '{provider_id}' transition lost {max_attempts} consecutive races"
        )

    async def increment_dispute_count(self, provider_id: str) -> bool:
        """Atomically count a new dispute and flag the account under review.

        Returns ``False`` if the account does not exist.
        """
        stmt = (
            update(ProviderAccountTable)
            .where(ProviderAccountTable.id == provider_id)
            .values(
                dispute_count=ProviderAccountTable.dispute_count + 1,
                dispute_status=DisputeStatus.UNDER_REVIEW.value,
                version=ProviderAccountTable.version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1


# ---------------------------------------------------------------------------
# LeadChargeRepository
# ---------------------------------------------------------------------------


class LeadChargeRepository:
    """Attempt rows for per-lead payments."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, charge_id: str) -> LeadChargeTable | None:
        stmt = (
            select(LeadChargeTable)
            .where(LeadChargeTable.id == charge_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_lead(self, provider_id: str, lead_id: str) -> list[LeadChargeTable]:
        """Return every attempt for a ``(provider, lead)`` pair, oldest first."""
        stmt = (
            select(LeadChargeTable)
            .where(
                LeadChargeTable.provider_id == provider_id,
                LeadChargeTable.lead_id == lead_id,
            )
            .order_by(LeadChargeTable.attempt)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def open_attempt(
        self,
        provider_id: str,
        lead_id: str,
        amount_cents: int,
        currency: str = "usd",
    ) -> tuple[LeadChargeTable, bool]:
        """Return the attempt row the next gateway call must use.

        * An existing ``succeeded`` row is returned as-is (the lead is paid).
        * An existing ``pending`` row is returned so the caller retries with
          the same idempotency key.
        * Otherwise attempt ``n + 1`` is inserted.  A concurrent writer
          inserting the same attempt wins silently and its row is returned.

        Returns
        -------
        tuple
            ``(row, created)`` where *created* is True only if this call
            inserted the row.
        """
        attempts = await self.list_for_lead(provider_id, lead_id)
        for row in attempts:
            if row.status == LeadChargeStatus.SUCCEEDED.value:
                return row, False
        for row in attempts:
            if row.status == LeadChargeStatus.PENDING.value:
                return row, False

        next_attempt = attempts[-1].attempt + 1 if attempts else 1
        key = lead_charge_idempotency_key(provider_id, lead_id, next_attempt)
        result = await _dialect_insert_nothing(
            self._session,
            LeadChargeTable,
            values={
                "id": uuid.uuid4().hex,
                "provider_id": provider_id,
                "lead_id": lead_id,
                "attempt": next_attempt,
                "idempotency_key": key,
                "amount_cents": amount_cents,
                "currency": currency,
                "status": LeadChargeStatus.PENDING.value,
                "created_at": datetime.now(UTC),
            },
        )
        await self._session.flush()

        stmt = (
            select(LeadChargeTable)
            .where(LeadChargeTable.idempotency_key == key)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one()
        return row, result.rowcount == 1

    async def mark_succeeded(
        self,
        charge_id: str,
        *,
        provider_charge_ref: str | None,
        charge_ref: str | None = None,
    ) -> bool:
        """Move a ``pending`` attempt to ``succeeded``.

        Returns ``False`` if the row was no longer pending.
        """
        return await self._resolve(
            charge_id,
            LeadChargeStatus.SUCCEEDED,
            provider_charge_ref=provider_charge_ref,
            charge_ref=charge_ref,
        )

    async def mark_failed(
        self,
        charge_id: str,
        *,
        failure_reason: str | None,
        provider_charge_ref: str | None = None,
    ) -> bool:
        """Move a ``pending`` attempt to ``failed``.

        Returns ``False`` if the row was no longer pending.
        """
        return await self._resolve(
            charge_id,
            LeadChargeStatus.FAILED,
            provider_charge_ref=provider_charge_ref,
            failure_reason=failure_reason,
        )

    async def _resolve(self, charge_id: str, status: LeadChargeStatus, **values: Any) -> bool:
        stmt = (
            update(LeadChargeTable)
            .where(
                LeadChargeTable.id == charge_id,
                LeadChargeTable.status == LeadChargeStatus.PENDING.value,
            )
            .values(status=status.value, resolved_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1

    async def find_by_provider_charge_ref(self, ref: str) -> LeadChargeTable | None:
        """Find the attempt that produced a given gateway payment or charge id."""
        stmt = (
            select(LeadChargeTable)
            .where((LeadChargeTable.provider_charge_ref == ref) | (LeadChargeTable.charge_ref == ref))
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# PaymentRecordRepository
# ---------------------------------------------------------------------------


class PaymentRecordRepository:
    """Unified payment history (lead fees and subscription invoices)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        provider_id: str,
        kind: str,
        *,
        amount_cents: int,
        payment_intent_ref: str | None = None,
        invoice_ref: str | None = None,
        charge_ref: str | None = None,
        currency: str = "usd",
        status: str = PAYMENT_STATUS_SUCCEEDED,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        paid_at: datetime | None = None,
    ) -> bool:
        """Insert a payment record unless one exists for the same reference.

        Returns ``True`` if a new row was written.
        """
        result = await _dialect_insert_nothing(
            self._session,
            PaymentRecordTable,
            values={
                "provider_id": provider_id,
                "kind": kind,
                "payment_intent_ref": payment_intent_ref,
                "invoice_ref": invoice_ref,
                "charge_ref": charge_ref,
                "amount_cents": amount_cents,
                "currency": currency,
                "status": status,
                "description": description,
                "metadata_json": metadata,
                "paid_at": paid_at or datetime.now(UTC),
                "created_at": datetime.now(UTC),
            },
        )
        await self._session.flush()
        return result.rowcount == 1

    async def record_invoice(
        self,
        provider_id: str,
        kind: str,
        invoice_ref: str,
        *,
        status: str,
        amount_cents: int,
        payment_intent_ref: str | None = None,
        charge_ref: str | None = None,
        currency: str = "usd",
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        paid_at: datetime | None = None,
    ) -> bool:
        """Record the outcome of an invoice, one row per ``invoice_ref``.

        A ``failed`` row is later promoted to ``succeeded`` when the invoice
        is paid; a ``succeeded`` row is never changed.  Returns ``True`` if
        a row was written or promoted.
        """
        if await self.record(
            provider_id,
            kind,
            amount_cents=amount_cents,
            payment_intent_ref=payment_intent_ref,
            invoice_ref=invoice_ref,
            charge_ref=charge_ref,
            currency=currency,
            status=status,
            description=description,
            metadata=metadata,
            paid_at=paid_at,
        ):
            return True
        if status != PAYMENT_STATUS_SUCCEEDED:
            return False

        stmt = (
            update(PaymentRecordTable)
            .where(
                PaymentRecordTable.invoice_ref == invoice_ref,
                PaymentRecordTable.status != PAYMENT_STATUS_SUCCEEDED,
            )
            .values(
                status=PAYMENT_STATUS_SUCCEEDED,
                amount_cents=amount_cents,
                payment_intent_ref=payment_intent_ref,
                charge_ref=charge_ref,
                description=description,
                metadata_json=metadata,
                paid_at=paid_at or datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1

    async def find_by_invoice_ref(self, invoice_ref: str) -> PaymentRecordTable | None:
        stmt = (
            select(PaymentRecordTable)
            .where(PaymentRecordTable.invoice_ref == invoice_ref)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_charge_ref(self, charge_ref: str) -> PaymentRecordTable | None:
        stmt = select(PaymentRecordTable).where(PaymentRecordTable.charge_ref == charge_ref).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_payment_intent_ref(self, payment_intent_ref: str) -> PaymentRecordTable | None:
        stmt = select(PaymentRecordTable).where(PaymentRecordTable.payment_intent_ref == payment_intent_ref)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# DisputeRepository
# ---------------------------------------------------------------------------


class DisputeRepository:
    """Chargeback disputes keyed by the provider's dispute id."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(self, details: DisputeDetails, provider_id: str | None) -> bool:
        """Record a dispute once.  Returns ``False`` for a duplicate."""
        now = datetime.now(UTC)
        result = await _dialect_insert_nothing(
            self._session,
            DisputeTable,
            values={
                "dispute_ref": details.dispute_ref,
                "provider_id": provider_id,
                "charge_ref": details.charge_ref,
                "payment_intent_ref": details.payment_intent_ref,
                "amount_cents": details.amount_cents,
                "currency": details.currency,
                "reason": details.reason,
                "status": details.status,
                "evidence_due_by": details.evidence_due_by,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["dispute_ref"],
        )
        await self._session.flush()
        return result.rowcount == 1

    async def get_by_ref(self, dispute_ref: str) -> DisputeTable | None:
        stmt = (
            select(DisputeTable)
            .where(DisputeTable.dispute_ref == dispute_ref)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def close(self, dispute_ref: str, status: str, *, resolved_at: datetime | None = None) -> bool:
        """Move a non-terminal dispute to a terminal *status*.

        Returns ``False`` if the dispute is unknown or already closed.
        """
        now = resolved_at or datetime.now(UTC)
        stmt = (
            update(DisputeTable)
            .where(
                DisputeTable.dispute_ref == dispute_ref,
                DisputeTable.status.not_in(TERMINAL_DISPUTE_STATUSES),
            )
            .values(status=status, resolved_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount == 1

    async def count_open(self, provider_id: str) -> int:
        """Count the provider's disputes that have not reached a terminal status."""
        stmt = select(func.count()).where(
            DisputeTable.provider_id == provider_id,
            DisputeTable.status.not_in(TERMINAL_DISPUTE_STATUSES),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# WebhookEventRepository
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Idempotency ledger of processed webhook events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def claim(self, event_id: str, event_type: str, payload: dict[str, Any] | None = None) -> bool:
        """Claim an event for processing inside the current transaction.

        Returns ``True`` if this transaction owns the event: either it
        inserted the ledger row, or it re-claimed a row left ``failed`` by
        an earlier delivery.  Any other existing row means the event was
        already handled.
        """
        result = await _dialect_insert_nothing(
            self._session,
            WebhookEventTable,
            values={
                "event_id": event_id,
                "event_type": event_type,
                "status": WebhookEventStatus.PROCESSING.value,
                "attempts": 1,
                "payload": payload,
                "received_at": datetime.now(UTC),
            },
            index_elements=["event_id"],
        )
        if result.rowcount == 1:
            await self._session.flush()
            return True

        stmt = (
            update(WebhookEventTable)
            .where(
                WebhookEventTable.event_id == event_id,
                WebhookEventTable.status == WebhookEventStatus.FAILED.value,
            )
            .values(
                status=WebhookEventStatus.PROCESSING.value,
                attempts=WebhookEventTable.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        reclaimed = await self._session.execute(stmt)
        await self._session.flush()
        return reclaimed.rowcount == 1

    async def mark_status(
        self,
        event_id: str,
        status: WebhookEventStatus,
        *,
        detail: str | None = None,
    ) -> None:
        stmt = (
            update(WebhookEventTable)
            .where(WebhookEventTable.event_id == event_id)
            .values(status=status.value, last_error=detail, processed_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def record_failure(
        self,
        event_id: str,
        event_type: str,
        error: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Record that processing an event failed.

        Called in a fresh transaction after the processing transaction has
        rolled back, so the failed row is what a redelivery will re-claim.
        """
        stmt = (
            update(WebhookEventTable)
            .where(WebhookEventTable.event_id == event_id)
            .values(
                status=WebhookEventStatus.FAILED.value,
                attempts=WebhookEventTable.attempts + 1,
                last_error=error,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            await _dialect_upsert(
                self._session,
                WebhookEventTable,
                values={
                    "event_id": event_id,
                    "event_type": event_type,
                    "status": WebhookEventStatus.FAILED.value,
                    "attempts": 1,
                    "last_error": error,
                    "payload": payload,
                    "received_at": datetime.now(UTC),
                },
                index_elements=["event_id"],
                update_columns=["status", "last_error"],
            )
        await self._session.flush()

    async def get(self, event_id: str) -> WebhookEventTable | None:
        stmt = (
            select(WebhookEventTable)
            .where(WebhookEventTable.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_failed(self, limit: int = 50) -> list[WebhookEventTable]:
        """Return events that need operator attention, newest first."""
        stmt = (
            select(WebhookEventTable)
            .where(
                WebhookEventTable.status.in_(
                    [WebhookEventStatus.FAILED.value, WebhookEventStatus.UNATTRIBUTED.value]
                )
            )
            .order_by(WebhookEventTable.received_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# NotificationLogRepository
# ---------------------------------------------------------------------------


class NotificationLogRepository:
    """Append-only log of notifications sent to providers and operators."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        kind: str,
        recipient_ref: str,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self._session.add(
            NotificationLogTable(
                kind=kind,
                recipient_ref=recipient_ref,
                data=data,
                correlation_id=correlation_id,
                created_at=datetime.now(UTC),
            )
        )
        await self._session.flush()

    async def list_for_recipient(self, recipient_ref: str, limit: int = 100) -> list[NotificationLogTable]:
        stmt = (
            select(NotificationLogTable)
            .where(NotificationLogTable.recipient_ref == recipient_ref)
            .order_by(NotificationLogTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
