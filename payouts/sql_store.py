"""SQLAlchemy ledger store for the referral payout tables."""

import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    Uuid,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .models import (
    AccountStatus,
    EarningLog,
    PayoutAccount,
    PayoutRequest,
    PayoutStatus,
    utcnow,
)
from .storage import LedgerStore, UserLocks

Money = Numeric(12, 2)

LEASE_POLL_SECONDS = 0.05


class Base(DeclarativeBase):
    pass


class PayoutRequestRow(Base):
    __tablename__ = "payout_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount_requested: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_net: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    stripe_transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ReferralLogRow(Base):
    __tablename__ = "referral_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referrer_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount_earned: Mapped[Decimal] = mapped_column(Money, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    is_paid_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payout_request_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("payout_requests.id"), nullable=True, index=True
    )


class UserPayoutDetailsRow(Base):
    __tablename__ = "user_payout_details"

    user_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    stripe_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    account_status: Mapped[str] = mapped_column(String(20), nullable=False, default=AccountStatus.PENDING.value)
    payout_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bank_account_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    bank_account_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PayoutUserLockRow(Base):
    """One lease row per user; the current holder serializes that user's ledger writes."""

    __tablename__ = "payout_user_locks"

    user_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    holder: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


def _earning(row: ReferralLogRow) -> EarningLog:
    return EarningLog(
        id=row.id,
        referrer_id=row.referrer_id,
        amount_earned=row.amount_earned,
        occurred_at=row.date,
        is_paid_out=row.is_paid_out,
        payout_request_id=row.payout_request_id,
    )


def _account(row: UserPayoutDetailsRow) -> PayoutAccount:
    return PayoutAccount(
        user_id=row.user_id,
        external_account_id=row.stripe_account_id,
        status=AccountStatus(row.account_status),
        payout_enabled=row.payout_enabled,
        bank_account_last4=row.bank_account_last4,
        bank_account_country=row.bank_account_country,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _payout(row: PayoutRequestRow) -> PayoutRequest:
    return PayoutRequest(
        id=row.id,
        user_id=row.user_id,
        amount_requested=row.amount_requested,
        amount_fee=row.amount_fee,
        amount_net=row.amount_net,
        status=PayoutStatus(row.status),
        external_transfer_id=row.stripe_transfer_id,
        failure_reason=row.failure_reason,
        created_at=row.requested_at,
        processed_at=row.processed_at,
    )


def _copy_payout(row: PayoutRequestRow, payout: PayoutRequest) -> None:
    row.amount_requested = payout.amount_requested
    row.amount_fee = payout.amount_fee
    row.amount_net = payout.amount_net
    row.status = payout.status.value
    row.stripe_transfer_id = payout.external_transfer_id
    row.failure_reason = payout.failure_reason
    row.processed_at = payout.processed_at


def _update_payout_row(session: Session, payout: PayoutRequest) -> None:
    row = session.get(PayoutRequestRow, payout.id)
    if row is None:
        raise KeyError(f"Payout request {payout.id} not found")
    _copy_payout(row, payout)
    session.flush()


def _attach_rows(session: Session, earning_ids: list[UUID], payout_request_id: UUID) -> int:
    if not earning_ids:
        return 0
    result = session.execute(
        update(ReferralLogRow)
        .where(ReferralLogRow.id.in_(earning_ids), ReferralLogRow.is_paid_out.is_(False))
        .values(is_paid_out=True, payout_request_id=payout_request_id)
    )
    return result.rowcount


def _release_rows(session: Session, payout_request_id: UUID) -> int:
    result = session.execute(
        update(ReferralLogRow)
        .where(ReferralLogRow.payout_request_id == payout_request_id)
        .values(is_paid_out=False, payout_request_id=None)
    )
    return result.rowcount


class SqlLedgerStore(LedgerStore):
    """Ledger store over SQLAlchemy.

    ``lock_user`` is a lease on the user's ``payout_user_locks`` row rather
    than an open ``FOR UPDATE`` transaction, so no connection is held while
    the lock is. Every store call opens and closes its own short session.
    The lease expires after ``lock_ttl_seconds``, which must exceed the
    longest processor call made under the lock.
    """

    def __init__(
        self,
        database_url: str,
        create_tables: bool = True,
        lock_ttl_seconds: float = 120.0,
        lock_wait_seconds: float = 60.0,
        **engine_kwargs,
    ):
        if database_url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        else:
            engine_kwargs.setdefault("pool_pre_ping", True)
        self.engine = create_engine(database_url, **engine_kwargs)
        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.lock_wait_seconds = lock_wait_seconds
        self._user_locks = UserLocks()
        self._held = threading.local()
        if create_tables:
            Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def lock_user(self, user_id: UUID) -> Iterator[None]:
        if not hasattr(self._held, "users"):
            self._held.users = set()
        held = self._held.users
        if user_id in held:
            yield
            return
        with self._user_locks.get(user_id):
            token = self._acquire_lease(user_id)
            held.add(user_id)
            try:
                yield
            finally:
                held.discard(user_id)
                self._release_lease(user_id, token)

    def _acquire_lease(self, user_id: UUID) -> str:
        self._ensure_lock_row(user_id)
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.lock_wait_seconds
        while True:
            now = utcnow()
            with self.session_scope() as session:
                result = session.execute(
                    update(PayoutUserLockRow)
                    .where(
                        PayoutUserLockRow.user_id == user_id,
                        or_(PayoutUserLockRow.holder.is_(None), PayoutUserLockRow.expires_at < now),
                    )
                    .values(holder=token, expires_at=now + self.lock_ttl)
                    .execution_options(synchronize_session=False)
                )
                acquired = result.rowcount == 1
            if acquired:
                return token
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Timed out waiting for the ledger lock of user {user_id}")
            time.sleep(LEASE_POLL_SECONDS)

    def _release_lease(self, user_id: UUID, token: str) -> None:
        with self.session_scope() as session:
            session.execute(
                update(PayoutUserLockRow)
                .where(PayoutUserLockRow.user_id == user_id, PayoutUserLockRow.holder == token)
                .values(holder=None, expires_at=None)
                .execution_options(synchronize_session=False)
            )

    def _ensure_lock_row(self, user_id: UUID) -> None:
        with self.session_factory() as session:
            if session.get(PayoutUserLockRow, user_id) is not None:
                return
            session.add(PayoutUserLockRow(user_id=user_id))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()

    def add_earning(self, log: EarningLog) -> EarningLog:
        with self.session_scope() as session:
            session.add(ReferralLogRow(
                id=log.id,
                referrer_id=log.referrer_id,
                amount_earned=log.amount_earned,
                date=log.occurred_at,
                is_paid_out=log.is_paid_out,
                payout_request_id=log.payout_request_id,
            ))
        return log

    def list_earnings(self, user_id: UUID) -> list[EarningLog]:
        with self.session_scope() as session:
            rows = session.scalars(
                select(ReferralLogRow)
                .where(ReferralLogRow.referrer_id == user_id)
                .order_by(ReferralLogRow.date.asc())
            ).all()
            return [_earning(row) for row in rows]

    def list_unpaid_earnings(self, user_id: UUID) -> list[EarningLog]:
        with self.session_scope() as session:
            rows = session.scalars(
                select(ReferralLogRow)
                .where(ReferralLogRow.referrer_id == user_id, ReferralLogRow.is_paid_out.is_(False))
                .order_by(ReferralLogRow.date.asc())
            ).all()
            return [_earning(row) for row in rows]

    def attach_earnings(self, earning_ids: list[UUID], payout_request_id: UUID) -> int:
        with self.session_scope() as session:
            return _attach_rows(session, earning_ids, payout_request_id)

    def release_earnings(self, payout_request_id: UUID) -> int:
        with self.session_scope() as session:
            return _release_rows(session, payout_request_id)

    def get_payout_account(self, user_id: UUID) -> Optional[PayoutAccount]:
        with self.session_scope() as session:
            row = session.get(UserPayoutDetailsRow, user_id)
            return _account(row) if row else None

    def find_payout_account(self, external_account_id: str) -> Optional[PayoutAccount]:
        with self.session_scope() as session:
            row = session.scalars(
                select(UserPayoutDetailsRow)
                .where(UserPayoutDetailsRow.stripe_account_id == external_account_id)
            ).first()
            return _account(row) if row else None

    def save_payout_account(self, account: PayoutAccount) -> PayoutAccount:
        with self.session_scope() as session:
            row = session.get(UserPayoutDetailsRow, account.user_id)
            if row is None:
                row = UserPayoutDetailsRow(user_id=account.user_id, created_at=account.created_at)
                session.add(row)
            row.stripe_account_id = account.external_account_id
            row.account_status = account.status.value
            row.payout_enabled = account.payout_enabled
            row.bank_account_last4 = account.bank_account_last4
            row.bank_account_country = account.bank_account_country
            row.updated_at = account.updated_at
        return account

    def insert_payout_request(self, payout: PayoutRequest) -> PayoutRequest:
        with self.session_scope() as session:
            row = PayoutRequestRow(id=payout.id, user_id=payout.user_id, requested_at=payout.created_at)
            _copy_payout(row, payout)
            session.add(row)
        return payout

    def get_payout_request(self, payout_request_id: UUID) -> Optional[PayoutRequest]:
        with self.session_scope() as session:
            row = session.get(PayoutRequestRow, payout_request_id)
            return _payout(row) if row else None

    def update_payout_request(self, payout: PayoutRequest) -> PayoutRequest:
        with self.session_scope() as session:
            _update_payout_row(session, payout)
        return payout

    def settle_payout(self, payout: PayoutRequest, earning_ids: list[UUID]) -> int:
        with self.session_scope() as session:
            _update_payout_row(session, payout)
            return _attach_rows(session, earning_ids, payout.id)

    def close_payout(self, payout: PayoutRequest) -> int:
        with self.session_scope() as session:
            _update_payout_row(session, payout)
            return _release_rows(session, payout.id)

    def list_payout_requests(self, user_id: UUID) -> list[PayoutRequest]:
        with self.session_scope() as session:
            rows = session.scalars(
                select(PayoutRequestRow)
                .where(PayoutRequestRow.user_id == user_id)
                .order_by(PayoutRequestRow.requested_at.desc())
            ).all()
            return [_payout(row) for row in rows]
