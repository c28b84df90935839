"""
Typed envelope for processor webhook events.

Known kinds parse into their own model; anything else becomes an
``UnknownEvent`` so callers never need to poke at raw dictionaries.
"""

from typing import Any, Literal, Mapping, Optional, Union
from uuid import UUID

from pydantic import BaseModel

from .processor import ProcessorAccount, ProcessorTransfer

PAYOUT_REQUEST_KEY = "payout_request_id"


class MalformedEventError(ValueError):
    pass


class _TransferEvent(BaseModel):
    id: str
    transfer: ProcessorTransfer

    @property
    def payout_request_id(self) -> Optional[UUID]:
        raw = self.transfer.metadata.get(PAYOUT_REQUEST_KEY)
        if not raw:
            return None
        try:
            return UUID(raw)
        except ValueError:
            return None


class TransferCreated(_TransferEvent):
    kind: Literal["transfer.created"] = "transfer.created"


class TransferUpdated(_TransferEvent):
    kind: Literal["transfer.updated"] = "transfer.updated"


class TransferFailed(_TransferEvent):
    kind: Literal["transfer.failed"] = "transfer.failed"


class AccountUpdated(BaseModel):
    kind: Literal["account.updated"] = "account.updated"
    id: str
    account: ProcessorAccount


class UnknownEvent(BaseModel):
    kind: str
    id: str


ProcessorEvent = Union[TransferCreated, TransferUpdated, TransferFailed, AccountUpdated, UnknownEvent]

_TRANSFER_EVENTS = {
    "transfer.created": TransferCreated,
    "transfer.updated": TransferUpdated,
    "transfer.failed": TransferFailed,
}


def parse_event(payload: Mapping[str, Any]) -> ProcessorEvent:
    try:
        kind = payload["type"]
        event_id = payload.get("id") or ""
        if kind in _TRANSFER_EVENTS:
            obj = payload["data"]["object"]
            return _TRANSFER_EVENTS[kind](id=event_id, transfer=ProcessorTransfer.from_payload(obj))
        if kind == "account.updated":
            obj = payload["data"]["object"]
            return AccountUpdated(id=event_id, account=ProcessorAccount.from_payload(obj))
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise MalformedEventError(f"Malformed event payload: {e}") from e
    return UnknownEvent(kind=str(kind), id=event_id)
