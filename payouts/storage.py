import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from .models import EarningLog, PayoutAccount, PayoutRequest


class LedgerStore(ABC):
    """Durable state shared by the validator, settlement engine and reconciler.

    Every mutation of a user's earning set (attach or release) and every
    status write on that user's payout requests must happen while holding
    ``lock_user`` for the owning user. Reads may happen without the lock.
    """

    @abstractmethod
    def lock_user(self, user_id: UUID):
        """Context manager serializing writes for one user."""

    @abstractmethod
    def add_earning(self, log: EarningLog) -> EarningLog: ...

    @abstractmethod
    def list_earnings(self, user_id: UUID) -> list[EarningLog]: ...

    @abstractmethod
    def list_unpaid_earnings(self, user_id: UUID) -> list[EarningLog]:
        """Unpaid logs for ``user_id``, oldest first."""

    @abstractmethod
    def attach_earnings(self, earning_ids: list[UUID], payout_request_id: UUID) -> int:
        """Mark still-unpaid logs as paid by ``payout_request_id``; returns rows changed."""

    @abstractmethod
    def release_earnings(self, payout_request_id: UUID) -> int:
        """Return every log attached to ``payout_request_id`` to unpaid; returns rows changed."""

    @abstractmethod
    def get_payout_account(self, user_id: UUID) -> Optional[PayoutAccount]: ...

    @abstractmethod
    def find_payout_account(self, external_account_id: str) -> Optional[PayoutAccount]: ...

    @abstractmethod
    def save_payout_account(self, account: PayoutAccount) -> PayoutAccount: ...

    @abstractmethod
    def insert_payout_request(self, payout: PayoutRequest) -> PayoutRequest: ...

    @abstractmethod
    def get_payout_request(self, payout_request_id: UUID) -> Optional[PayoutRequest]: ...

    @abstractmethod
    def update_payout_request(self, payout: PayoutRequest) -> PayoutRequest: ...

    @abstractmethod
    def list_payout_requests(self, user_id: UUID) -> list[PayoutRequest]:
        """Requests for ``user_id``, newest first."""

    @abstractmethod
    def settle_payout(self, payout: PayoutRequest, earning_ids: list[UUID]) -> int:
        """Save ``payout`` and attach ``earning_ids`` to it as one unit; returns rows attached."""

    @abstractmethod
    def close_payout(self, payout: PayoutRequest) -> int:
        """Save a failed or cancelled ``payout`` and release its logs as one unit; returns rows released."""

    def available_earnings(self, user_id: UUID) -> Decimal:
        return sum(
            (log.amount_earned for log in self.list_unpaid_earnings(user_id)),
            Decimal("0.00"),
        )


class UserLocks:
    """One re-entrant lock per user id, created on demand."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[UUID, threading.RLock] = {}

    def get(self, user_id: UUID) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.RLock()
            return lock


class InMemoryStorage(LedgerStore):
    def __init__(self):
        self.earning_logs: dict[UUID, dict] = {}
        self.payout_accounts: dict[UUID, dict] = {}
        self.payout_requests: dict[UUID, dict] = {}
        self.account_index: dict[str, UUID] = {}
        self._user_locks = UserLocks()
        self._write_lock = threading.RLock()

    @contextmanager
    def lock_user(self, user_id: UUID) -> Iterator[None]:
        with self._user_locks.get(user_id):
            yield

    def add_earning(self, log: EarningLog) -> EarningLog:
        with self._write_lock:
            self.earning_logs[log.id] = log.model_dump()
        return log

    def list_earnings(self, user_id: UUID) -> list[EarningLog]:
        with self._write_lock:
            logs = [
                EarningLog(**data) for data in self.earning_logs.values()
                if data["referrer_id"] == user_id
            ]
        logs.sort(key=lambda log: log.occurred_at)
        return logs

    def list_unpaid_earnings(self, user_id: UUID) -> list[EarningLog]:
        return [log for log in self.list_earnings(user_id) if not log.is_paid_out]

    def attach_earnings(self, earning_ids: list[UUID], payout_request_id: UUID) -> int:
        attached = 0
        with self._write_lock:
            for earning_id in earning_ids:
                data = self.earning_logs.get(earning_id)
                if data is None or data["is_paid_out"]:
                    continue
                data["is_paid_out"] = True
                data["payout_request_id"] = payout_request_id
                attached += 1
        return attached

    def release_earnings(self, payout_request_id: UUID) -> int:
        released = 0
        with self._write_lock:
            for data in self.earning_logs.values():
                if data["payout_request_id"] == payout_request_id:
                    data["is_paid_out"] = False
                    data["payout_request_id"] = None
                    released += 1
        return released

    def get_payout_account(self, user_id: UUID) -> Optional[PayoutAccount]:
        data = self.payout_accounts.get(user_id)
        return PayoutAccount(**data) if data else None

    def find_payout_account(self, external_account_id: str) -> Optional[PayoutAccount]:
        user_id = self.account_index.get(external_account_id)
        if user_id is None:
            return None
        return self.get_payout_account(user_id)

    def save_payout_account(self, account: PayoutAccount) -> PayoutAccount:
        with self._write_lock:
            previous = self.payout_accounts.get(account.user_id)
            if previous and previous["external_account_id"] != account.external_account_id:
                self.account_index.pop(previous["external_account_id"], None)
            self.payout_accounts[account.user_id] = account.model_dump()
            self.account_index[account.external_account_id] = account.user_id
        return account

    def insert_payout_request(self, payout: PayoutRequest) -> PayoutRequest:
        with self._write_lock:
            if payout.id in self.payout_requests:
                raise ValueError(f"Payout request {payout.id} already exists")
            self.payout_requests[payout.id] = payout.model_dump()
        return payout

    def get_payout_request(self, payout_request_id: UUID) -> Optional[PayoutRequest]:
        data = self.payout_requests.get(payout_request_id)
        return PayoutRequest(**data) if data else None

    def update_payout_request(self, payout: PayoutRequest) -> PayoutRequest:
        with self._write_lock:
            if payout.id not in self.payout_requests:
                raise KeyError(f"Payout request {payout.id} not found")
            self.payout_requests[payout.id] = payout.model_dump()
        return payout

    def list_payout_requests(self, user_id: UUID) -> list[PayoutRequest]:
        with self._write_lock:
            payouts = [
                PayoutRequest(**data) for data in self.payout_requests.values()
                if data["user_id"] == user_id
            ]
        payouts.sort(key=lambda p: p.created_at, reverse=True)
        return payouts

    def settle_payout(self, payout: PayoutRequest, earning_ids: list[UUID]) -> int:
        with self._write_lock:
            self.update_payout_request(payout)
            return self.attach_earnings(earning_ids, payout.id)

    def close_payout(self, payout: PayoutRequest) -> int:
        with self._write_lock:
            self.update_payout_request(payout)
            return self.release_earnings(payout.id)
