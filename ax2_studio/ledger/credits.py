"""Credit ledger: pricing plus the reserve -> confirm | refund protocol.

Balances live in two pools per account (signed-in and anonymous); the login
flag of the calling session picks the active one. Credits leave a pool when
they are reserved and come back only through a refund. History entries are
written when a reservation is settled, never when it is opened.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel

from ax2_studio.core.auth import AccountContext
from ax2_studio.core.clock import Clock, utcnow
from ax2_studio.core.config import Settings, settings as default_settings
from ax2_studio.core.errors import (
    AlreadyConfirmedError,
    AlreadyRefundedError,
    InsufficientCreditsError,
    ReservationNotFoundError,
)
from ax2_studio.core.events import BALANCE_CHANGED, EventBus
from ax2_studio.core.store import AccountStore, LedgerStore

logger = logging.getLogger(__name__)

SECONDS_PER_CREDIT = 6
CREDITS_PER_LANGUAGE = 10

GRANTED_TOTAL_FLAG = "granted_total"
HAS_CHARGED_FLAG = "has_charged"


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    REFUNDED = "refunded"


class HistoryType(str, Enum):
    CHARGE = "charge"
    DEBIT = "debit"
    REFUND = "refund"


class Reservation(BaseModel):
    id: str
    job_id: str
    amount: int
    pool: str
    reserved_at: datetime
    status: ReservationStatus = ReservationStatus.RESERVED
    confirmed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    refund_amount: Optional[int] = None


class CreditHistoryEntry(BaseModel):
    id: str
    date: datetime
    type: HistoryType
    description: str
    amount: int
    balance_after: int
    pool: str
    job_id: Optional[str] = None
    reserved_id: Optional[str] = None


@dataclass
class ReservationResult:
    reserved_id: str
    balance: int


def compute_required_credits(duration_seconds: float, language_count: int) -> int:
    """One credit per whole 6 seconds of video plus a flat 10 per target language.

    278 s with no translation costs 46 credits; with two languages, 66.
    """
    if duration_seconds < 0 or language_count < 0:
        raise ValueError("duration and language count must be non-negative")
    return math.floor(duration_seconds / SECONDS_PER_CREDIT) + language_count * CREDITS_PER_LANGUAGE


def affordable_language_count(duration_seconds: float, balance: int) -> int:
    base = math.floor(duration_seconds / SECONDS_PER_CREDIT)
    spare = balance - base
    if spare <= 0:
        return 0
    return spare // CREDITS_PER_LANGUAGE


class CreditLedger:
    def __init__(
        self,
        store: LedgerStore,
        bus: EventBus | None = None,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.bus = bus or EventBus()
        self.settings = settings
        self.clock = clock

    def on_balance_changed(self, callback: Callable[..., None]) -> Callable[[], None]:
        return self.bus.subscribe(BALANCE_CHANGED, callback)

    # Reads

    def get_balance(self, account: AccountContext) -> int:
        return self.store.account(account.account_id).get("balances", account.pool, 0)

    def get_reservation(self, account: AccountContext, reserved_id: str) -> Optional[Reservation]:
        raw = self.store.account(account.account_id).get("reservations", reserved_id)
        return Reservation.model_validate(raw) if raw else None

    def open_reservations(self, account: AccountContext) -> List[Reservation]:
        raws = self.store.account(account.account_id).values("reservations")
        return [r for r in map(Reservation.model_validate, raws) if r.status == ReservationStatus.RESERVED]

    def history(self, account: AccountContext) -> List[CreditHistoryEntry]:
        entries = self.store.account(account.account_id).values("history")
        return [CreditHistoryEntry.model_validate(e) for e in reversed(entries)]

    def granted_total(self, account: AccountContext) -> int:
        return self.store.account(account.account_id).get("flags", GRANTED_TOTAL_FLAG, 0)

    def has_charged(self, account: AccountContext) -> bool:
        return bool(self.store.account(account.account_id).get("flags", HAS_CHARGED_FLAG, False))

    # Grants

    def ensure_welcome_grant(self, account: AccountContext) -> bool:
        """Give an untouched pool its one-time welcome credits.

        Returns True when this call made the grant.
        """
        flag = f"welcome_granted:{account.pool}"
        tx = self.store.account(account.account_id)
        with tx.transaction():
            if tx.get("flags", flag):
                return False
            if tx.get("balances", account.pool, 0) != 0:
                tx.put("flags", flag, self.clock().isoformat())
                return False
            description = (
                "Welcome credits for new members" if account.is_logged_in else "Welcome credits for guests"
            )
            balance = self._grant(tx, account.pool, self.settings.welcome_credits, description)
            tx.put("flags", flag, self.clock().isoformat())
        logger.info("Welcome grant of %s credits to %s (%s)", self.settings.welcome_credits, account.account_id, account.pool)
        self._publish(account.account_id, account.pool, balance)
        return True

    def charge_credits(self, account: AccountContext, amount: int, description: str = "Credit top-up") -> int:
        if amount <= 0:
            raise ValueError("charge amount must be positive")
        tx = self.store.account(account.account_id)
        with tx.transaction():
            balance = self._grant(tx, account.pool, amount, description)
            tx.put("flags", HAS_CHARGED_FLAG, True)
        logger.info("Charged %s credits to %s (%s)", amount, account.account_id, account.pool)
        self._publish(account.account_id, account.pool, balance)
        return balance

    # Reservation protocol

    def reserve(self, account: AccountContext, job_id: str, amount: int) -> ReservationResult:
        if amount < 0:
            raise ValueError("reservation amount must be non-negative")
        tx = self.store.account(account.account_id)
        with tx.transaction():
            balance = tx.get("balances", account.pool, 0)
            if amount > balance:
                raise InsufficientCreditsError(required=amount, balance=balance)
            new_balance = balance - amount
            reservation = Reservation(
                id=str(uuid.uuid4()),
                job_id=job_id,
                amount=amount,
                pool=account.pool,
                reserved_at=self.clock(),
            )
            tx.put("balances", account.pool, new_balance)
            tx.put("reservations", reservation.id, reservation.model_dump(mode="json"))
        logger.info("Reserved %s credits for job %s (reservation %s)", amount, job_id, reservation.id)
        self._publish(account.account_id, account.pool, new_balance)
        return ReservationResult(reserved_id=reservation.id, balance=new_balance)

    def confirm_deduction(
        self,
        account: AccountContext,
        reserved_id: str,
        job_id: str,
        description: str,
        refund_amount: int | None = None,
        refund_reason: str | None = None,
    ) -> Reservation:
        """Settle a reservation as spent.

        ``refund_amount`` returns part of the hold in the same transaction, for
        jobs that delivered less than was reserved. The debit entry records what
        was actually spent.
        """
        tx = self.store.account(account.account_id)
        with tx.transaction():
            reservation = self._open_reservation(tx, reserved_id, job_id)
            now = self.clock()
            spent = reservation.amount
            if refund_amount:
                if not 0 < refund_amount <= reservation.amount:
                    raise ValueError("partial refund cannot exceed the reserved amount")
                balance = tx.get("balances", reservation.pool, 0) + refund_amount
                tx.put("balances", reservation.pool, balance)
                reservation.refund_amount = refund_amount
                reservation.refund_reason = refund_reason
                reservation.refunded_at = now
                self._append(tx, HistoryType.REFUND, refund_reason or "Partial refund", refund_amount, reservation)
                spent -= refund_amount
            reservation.status = ReservationStatus.CONFIRMED
            reservation.confirmed_at = now
            tx.put("reservations", reservation.id, reservation.model_dump(mode="json"))
            self._append(tx, HistoryType.DEBIT, description, spent, reservation)
            balance = tx.get("balances", reservation.pool, 0)
        logger.info("Confirmed %s credits for job %s (reservation %s)", spent, job_id, reserved_id)
        if refund_amount:
            self._publish(account.account_id, reservation.pool, balance)
        return reservation

    def refund_credits(
        self,
        account: AccountContext,
        reserved_id: str,
        job_id: str,
        reason: str,
        partial_amount: int | None = None,
    ) -> int:
        """Return credits held by a reservation and close it.

        A partial refund closes the reservation as well; whatever was not
        returned stays spent. Returns the refunded amount.
        """
        tx = self.store.account(account.account_id)
        with tx.transaction():
            reservation = self._open_reservation(tx, reserved_id, job_id)
            amount = reservation.amount if partial_amount is None else partial_amount
            if amount < 0 or amount > reservation.amount:
                raise ValueError("refund amount must be between 0 and the reserved amount")
            balance = tx.get("balances", reservation.pool, 0) + amount
            tx.put("balances", reservation.pool, balance)
            reservation.status = ReservationStatus.REFUNDED
            reservation.refunded_at = self.clock()
            reservation.refund_reason = reason
            reservation.refund_amount = amount
            tx.put("reservations", reservation.id, reservation.model_dump(mode="json"))
            self._append(tx, HistoryType.REFUND, reason, amount, reservation)
        logger.info("Refunded %s credits for job %s (%s)", amount, job_id, reason)
        self._publish(account.account_id, reservation.pool, balance)
        return amount

    # Internals, callers must hold the account transaction

    def _grant(self, tx: AccountStore, pool: str, amount: int, description: str) -> int:
        balance = tx.get("balances", pool, 0) + amount
        tx.put("balances", pool, balance)
        tx.put("flags", GRANTED_TOTAL_FLAG, tx.get("flags", GRANTED_TOTAL_FLAG, 0) + amount)
        entry = CreditHistoryEntry(
            id=str(uuid.uuid4()),
            date=self.clock(),
            type=HistoryType.CHARGE,
            description=description,
            amount=amount,
            balance_after=balance,
            pool=pool,
        )
        tx.put("history", entry.id, entry.model_dump(mode="json"))
        return balance

    def _open_reservation(self, tx: AccountStore, reserved_id: str, job_id: str) -> Reservation:
        raw = tx.get("reservations", reserved_id)
        if not raw or raw.get("job_id") != job_id:
            logger.error("Reservation %s for job %s not found", reserved_id, job_id)
            raise ReservationNotFoundError(reserved_id, job_id)
        reservation = Reservation.model_validate(raw)
        if reservation.status == ReservationStatus.CONFIRMED:
            raise AlreadyConfirmedError(reserved_id, reservation.status.value)
        if reservation.status == ReservationStatus.REFUNDED:
            raise AlreadyRefundedError(reserved_id, reservation.status.value)
        return reservation

    def _append(
        self,
        tx: AccountStore,
        kind: HistoryType,
        description: str,
        amount: int,
        reservation: Reservation,
    ) -> None:
        entry = CreditHistoryEntry(
            id=str(uuid.uuid4()),
            date=self.clock(),
            type=kind,
            description=description,
            amount=amount,
            balance_after=tx.get("balances", reservation.pool, 0),
            pool=reservation.pool,
            job_id=reservation.job_id,
            reserved_id=reservation.id,
        )
        tx.put("history", entry.id, entry.model_dump(mode="json"))

    def _publish(self, account_id: str, pool: str, balance: int) -> None:
        self.bus.publish(BALANCE_CHANGED, account_id=account_id, pool=pool, balance=balance)
