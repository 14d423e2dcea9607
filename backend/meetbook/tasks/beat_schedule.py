# backend/meetbook/tasks/beat_schedule.py
"""
Celery Beat schedule for Meetbook.

The escrow sweep and the hold expiry run every minute everywhere. Timer
recovery is not scheduled: it runs once per worker start, and the minute
sweep fires any release whose timer message was lost.
"""

from datetime import timedelta
from typing import Any, Dict

ESCROW_QUEUE = "payments"


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return {
        "sweep-escrow": {
            "task": "meetbook.tasks.escrow_tasks.sweep_escrow",
            "schedule": timedelta(minutes=1),
            "options": {"queue": ESCROW_QUEUE, "expires": 55},
        },
        "expire-slot-holds": {
            "task": "meetbook.tasks.escrow_tasks.expire_slot_holds",
            "schedule": timedelta(minutes=1),
            "options": {"queue": ESCROW_QUEUE, "expires": 55},
        },
    }
