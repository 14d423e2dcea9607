"""
Celery tasks for escrow settlement and slot hold upkeep.

``release_escrow`` is the target of release timers; the other tasks run on
the beat schedule. Every task opens its own session and is safe to run
twice: settlement is guarded by claim tokens and conditional updates.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, ParamSpec, Protocol, TypeVar, cast

from celery.result import AsyncResult
from sqlalchemy.orm import Session

from meetbook.core.clock import ensure_utc
from meetbook.integrations.ledger_client import LedgerClient, build_ledger_client
from meetbook.services.booking_service import BookingService
from meetbook.services.escrow_scheduler import EscrowScheduler
from meetbook.services.partner_directory import default_partner_directory
from meetbook.tasks.celery_app import celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)

logger = logging.getLogger(__name__)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


class CeleryReleaseTimer:
    """Arms a release by queueing ``release_escrow`` with an ETA."""

    def arm(self, booking_id: str, at: datetime) -> None:
        release_escrow.apply_async(args=[booking_id], eta=ensure_utc(at))
        logger.debug(
            "Release timer armed", extra={"booking_id": booking_id, "eta": at.isoformat()}
        )

    def disarm(self, booking_id: str) -> None:
        # Queued ETA messages are not tracked; a fire for a frozen or settled
        # record finds nothing to release
        logger.debug("Release timer disarmed", extra={"booking_id": booking_id})


def _session() -> Session:
    from meetbook.database import SessionLocal

    return SessionLocal()


def _ledger() -> LedgerClient:
    return build_ledger_client()


def _scheduler(db: Session) -> EscrowScheduler:
    return EscrowScheduler(db, _ledger(), timer=CeleryReleaseTimer())


def _booking_service(db: Session) -> BookingService:
    return BookingService(
        db, default_partner_directory, escrow_scheduler=_scheduler(db)
    )


def _processed_at() -> str:
    return datetime.now(timezone.utc).isoformat()


@typed_task(bind=True, max_retries=3, name="meetbook.tasks.escrow_tasks.release_escrow")
def release_escrow(self: Any, booking_id: str) -> Dict[str, Any]:
    """Fire a scheduled release. Does nothing unless the release is due and unfrozen."""
    db = _session()
    try:
        result = _scheduler(db).fire_release(booking_id)
        return {
            "booking_id": booking_id,
            "state": result.state.value,
            "acknowledged": result.acknowledged,
            "attempted": result.attempted,
            "processed_at": _processed_at(),
        }
    except Exception as exc:
        logger.error(f"Escrow release failed for {booking_id}: {exc}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()


@typed_task(bind=True, max_retries=3, name="meetbook.tasks.escrow_tasks.sweep_escrow")
def sweep_escrow(self: Any) -> Dict[str, Any]:
    """Fire due releases, retry pending ledger instructions, and pay late-acknowledged holds."""
    db = _session()
    try:
        report = _booking_service(db).run_escrow_sweep()
        if report.failed:
            logger.warning(f"Escrow sweep completed with {len(report.failed)} failures")
        return {
            "released": len(report.released),
            "holds_acknowledged": len(report.holds_acknowledged),
            "refunds_acknowledged": len(report.refunds_acknowledged),
            "failed": len(report.failed),
            "processed_at": _processed_at(),
        }
    except Exception as exc:
        logger.error(f"Escrow sweep failed: {exc}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()


@typed_task(bind=True, max_retries=3, name="meetbook.tasks.escrow_tasks.expire_slot_holds")
def expire_slot_holds(self: Any) -> Dict[str, Any]:
    """Revert lapsed slot holds and cancel the PENDING bookings that owned them."""
    db = _session()
    try:
        expired = _booking_service(db).expire_stale_holds()
        return {"expired": expired, "processed_at": _processed_at()}
    except Exception as exc:
        logger.error(f"Slot hold expiry failed: {exc}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()


@typed_task(bind=True, max_retries=5, name="meetbook.tasks.escrow_tasks.recover_escrow_schedule")
def recover_escrow_schedule(self: Any) -> Dict[str, Any]:
    """Re-arm future release timers and fire releases that fell due while workers were down."""
    db = _session()
    try:
        report = _scheduler(db).recover()
        logger.info(
            f"Escrow schedule recovered: {len(report.rearmed)} re-armed, "
            f"{len(report.sweep.released)} released"
        )
        return {
            "rearmed": len(report.rearmed),
            "released": len(report.sweep.released),
            "failed": len(report.sweep.failed),
            "processed_at": _processed_at(),
        }
    except Exception as exc:
        logger.error(f"Escrow recovery failed: {exc}")
        raise self.retry(exc=exc, countdown=30)
    finally:
        db.close()
