"""Schemas for partner availability slots."""

from datetime import date, datetime, time
from typing import Optional

from pydantic import ConfigDict, Field, field_validator, model_validator

from ..core.constants import MAX_NOTE_LENGTH
from ..core.enums import SlotStatus
from ._strict_base import StrictModel, StrictRequestModel
from .booking import _ensure_date_only, _parse_hhmm


class SlotCreate(StrictRequestModel):
    slot_date: date
    start_time: time
    end_time: time
    note: Optional[str] = Field(None, max_length=MAX_NOTE_LENGTH)

    @field_validator("slot_date", mode="before")
    @classmethod
    def _enforce_date_only(cls, v: object) -> object:
        return _ensure_date_only(v, "slot_date")

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_time_string(cls, v: object) -> object:
        return _parse_hhmm(v)

    @model_validator(mode="after")
    def validate_window(self) -> "SlotCreate":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class SlotUpdate(StrictRequestModel):
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    note: Optional[str] = Field(None, max_length=MAX_NOTE_LENGTH)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_time_string(cls, v: object) -> object:
        return _parse_hhmm(v)


class SlotResponse(StrictModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str
    partner_id: str
    slot_date: date
    start_time: time
    end_time: time
    status: SlotStatus
    note: Optional[str] = None
    hold_expires_at: Optional[datetime] = None
