"""
Compare-and-swap status updates and the escrow audit trail.

Every state change in the service is a single conditional UPDATE:

    UPDATE <table> SET status = :target, ... WHERE id = :id AND status IN (:expected)

A rowcount of 1 means this caller won; 0 means the row moved on (or never
existed) and nothing was written. No row is ever read and then written back.
"""
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Type, TypeVar, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.database.models import Base, Booking, EscrowEvent, Payment, Payout
from escrow_ledger.domain.errors import OperationResult
from escrow_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)
StatusLike = Union[Enum, str]

_AGGREGATE_TYPES = {Booking: "booking", Payment: "payment", Payout: "payout"}


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def _status_value(status: StatusLike) -> str:
    return status.value if isinstance(status, Enum) else status


async def compare_and_swap(
    db: AsyncSession,
    model: Type[ModelT],
    entity_id: str,
    expected: Union[StatusLike, Iterable[StatusLike]],
    values: Dict[str, Any],
    *extra_where: Any,
) -> bool:
    """
    Conditionally update one row.

    Args:
        db: Database session (the caller owns the transaction)
        model: Mapped class with ``id`` and ``status`` columns
        entity_id: Primary key of the row
        expected: Status or statuses the row must currently have
        values: Column values to set
        extra_where: Additional WHERE criteria

    Returns:
        bool: True if exactly one row changed
    """
    if isinstance(expected, (str, Enum)):
        expected = [expected]
    expected_values = [_status_value(s) for s in expected]
    values = {k: _status_value(v) if isinstance(v, Enum) else v for k, v in values.items()}

    stmt = (
        update(model)
        .where(model.id == entity_id, model.status.in_(expected_values), *extra_where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


def record_event(
    db: AsyncSession,
    aggregate_type: str,
    aggregate_id: str,
    event_type: str,
    from_status: Optional[StatusLike] = None,
    to_status: Optional[StatusLike] = None,
    actor_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """Append an audit event to the current transaction."""
    db.add(
        EscrowEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            from_status=_status_value(from_status) if from_status is not None else None,
            to_status=_status_value(to_status) if to_status is not None else None,
            actor_id=actor_id,
            correlation_id=correlation_id,
            data=data or {},
        )
    )


async def transition(
    db: AsyncSession,
    model: Type[ModelT],
    entity_id: str,
    current: Union[StatusLike, Iterable[StatusLike]],
    target: StatusLike,
    *extra_where: Any,
    values: Optional[Dict[str, Any]] = None,
    event_type: Optional[str] = None,
    actor_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    CAS the row to ``target`` and, when applied, append the audit event.

    Returns:
        bool: True if this call applied the transition
    """
    aggregate_type = _AGGREGATE_TYPES[model]
    applied = await compare_and_swap(
        db, model, entity_id, current, {"status": target, **(values or {})}, *extra_where
    )
    if not applied:
        return False

    from_status = current if isinstance(current, (str, Enum)) else None
    record_event(
        db,
        aggregate_type,
        entity_id,
        event_type or f"{aggregate_type}.{_status_value(target).lower()}",
        from_status=from_status,
        to_status=target,
        actor_id=actor_id,
        correlation_id=correlation_id,
        data=data,
    )
    metrics.record_transition(aggregate_type, _status_value(target))
    logger.info(
        "status_transition_applied",
        entity=aggregate_type,
        entity_id=entity_id,
        to_status=_status_value(target),
        correlation_id=correlation_id,
    )
    return True


async def load(db: AsyncSession, model: Type[ModelT], entity_id: str) -> Optional[ModelT]:
    """Fetch a row, refreshing any stale copy in the identity map."""
    result = await db.execute(
        select(model).where(model.id == entity_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def finalize(db: AsyncSession, command: str, result: OperationResult) -> OperationResult:
    """
    Commit an applied (or no-op) command, roll back a rejected one.

    A rejected result may follow partial writes (e.g. a booking CAS that
    succeeded before the payment CAS failed); rolling back discards them.
    """
    if result.ok:
        await db.commit()
    else:
        await db.rollback()
        logger.info(
            "command_rejected",
            command=command,
            error_code=result.error.code if result.error else None,
            reason=result.message,
        )
    metrics.record_command(command, result.outcome.value)
    return result
