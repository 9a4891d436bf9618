"""
Serialization -- CountSession <-> persisted record.

Responsibility:
    Converts the session aggregate into a JSON-compatible dict and back.
    The observed-identifier set is written as an explicit (sorted) list and
    rebuilt into a ``frozenset`` on load; nothing depends on the order.

Architecture position:
    Kernel > Domain -- pure functions, zero I/O.  The session store owns
    where the record lives.

Invariants enforced:
    - Decimal prices round-trip as strings (no float intermediates).
    - ``status`` is written for readers of the record but ``stage`` is
      authoritative on load; records without ``stage`` fall back to
      ``status``.

Failure modes:
    - SessionRecordError for a record with missing keys, unknown enum
      values, unparseable dates/prices, or an unsupported schema version.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from count_kernel.domain.values import (
    CountMode,
    CountSession,
    Discrepancy,
    DiscrepancyReason,
    DiscrepancyType,
    Item,
    LastAction,
    LifecycleState,
    SessionStatus,
)
from count_kernel.exceptions import SessionRecordError

SCHEMA_VERSION = 1

_STATUS_TO_STAGE = {
    SessionStatus.PENDING: LifecycleState.PENDING,
    SessionStatus.IN_PROGRESS: LifecycleState.IN_PROGRESS,
    SessionStatus.COMPLETED: LifecycleState.COMPLETED,
}


def session_to_record(session: CountSession) -> dict[str, Any]:
    """Encode a session as a JSON-compatible dict."""
    return {
        "schema_version": SCHEMA_VERSION,
        "id": session.session_id,
        "date": session.created_on.isoformat(),
        "status": session.status.value,
        "stage": session.stage.value,
        "version": session.version,
        "items": [_item_to_dict(item) for item in session.items],
        "observed": sorted(session.observed),
        "discrepancies": [_discrepancy_to_dict(d) for d in session.discrepancies],
        "last_action": (
            {
                "name": session.last_action.name,
                "identifier": session.last_action.identifier,
                "at": session.last_action.at.isoformat(),
            }
            if session.last_action is not None
            else None
        ),
        "end_time": session.end_time.isoformat() if session.end_time else None,
    }


def session_from_record(record: Any) -> CountSession:
    """Decode a record produced by ``session_to_record``.

    Raises:
        SessionRecordError: if the record cannot be decoded.
    """
    if not isinstance(record, dict):
        raise SessionRecordError(f"expected an object, got {type(record).__name__}")
    schema_version = record.get("schema_version", SCHEMA_VERSION)
    if schema_version != SCHEMA_VERSION:
        raise SessionRecordError(f"unsupported schema version {schema_version!r}")

    try:
        if record.get("stage") is not None:
            stage = LifecycleState(record["stage"])
        else:
            stage = _STATUS_TO_STAGE[SessionStatus(record["status"])]

        last_action_data = record.get("last_action")
        last_action = (
            LastAction(
                name=last_action_data["name"],
                identifier=last_action_data["identifier"],
                at=datetime.fromisoformat(last_action_data["at"]),
            )
            if last_action_data
            else None
        )
        end_time = record.get("end_time")

        return CountSession(
            session_id=record["id"],
            created_on=date.fromisoformat(record["date"]),
            items=tuple(_item_from_dict(d) for d in record["items"]),
            observed=frozenset(record.get("observed") or ()),
            stage=stage,
            discrepancies=tuple(
                _discrepancy_from_dict(d) for d in record.get("discrepancies") or ()
            ),
            last_action=last_action,
            end_time=datetime.fromisoformat(end_time) if end_time else None,
            version=int(record.get("version", 0)),
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise SessionRecordError(f"{type(exc).__name__}: {exc}") from exc


def _item_to_dict(item: Item) -> dict[str, Any]:
    return {
        "identifier": item.identifier,
        "sku": item.sku,
        "name": item.name,
        "price": str(item.price),
        "count_mode": item.count_mode.value,
        "manual_count": item.manual_count,
        "image_url": item.image_url,
    }


def _item_from_dict(data: dict[str, Any]) -> Item:
    manual_count = data.get("manual_count")
    return Item(
        identifier=data["identifier"],
        sku=data["sku"],
        name=data["name"],
        price=Decimal(data["price"]),
        count_mode=CountMode(data.get("count_mode", CountMode.IDENTIFIER_SCAN.value)),
        manual_count=int(manual_count) if manual_count is not None else None,
        image_url=data.get("image_url"),
    )


def _discrepancy_to_dict(discrepancy: Discrepancy) -> dict[str, Any]:
    return {
        "identifier": discrepancy.identifier,
        "sku": discrepancy.sku,
        "name": discrepancy.name,
        "price": str(discrepancy.price),
        "type": discrepancy.type.value,
        "auto_resolved": discrepancy.auto_resolved,
        "reason": discrepancy.reason.value if discrepancy.reason else None,
        "note": discrepancy.note,
    }


def _discrepancy_from_dict(data: dict[str, Any]) -> Discrepancy:
    reason = data.get("reason")
    return Discrepancy(
        identifier=data["identifier"],
        sku=data["sku"],
        name=data["name"],
        price=Decimal(data["price"]),
        type=DiscrepancyType(data["type"]),
        auto_resolved=bool(data.get("auto_resolved", False)),
        reason=DiscrepancyReason(reason) if reason else None,
        note=data.get("note"),
    )
