# backend/meetbook/tasks/__init__.py
"""
Celery tasks package for Meetbook.

- Escrow release timers and the periodic settlement sweep
- Slot hold expiry
- Release schedule recovery on worker start

Run a worker with: celery -A meetbook.tasks worker -Q payments,celery
"""

from meetbook.tasks.celery_app import BaseTask, celery_app
from meetbook.tasks.escrow_tasks import (
    expire_slot_holds,
    recover_escrow_schedule,
    release_escrow,
    sweep_escrow,
)

__all__ = [
    "celery_app",
    "BaseTask",
    "expire_slot_holds",
    "recover_escrow_schedule",
    "release_escrow",
    "sweep_escrow",
]
