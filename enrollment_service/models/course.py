from __future__ import annotations

from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True, slots=True)
class Course:
    id: int
    name: str
    short_name: str
    start_date: date
    end_date: date


@dataclass(frozen=True, slots=True)
class MessagingChannel:
    """Course group on the messaging platform; created outside this service."""

    course_id: int
    name: str
    invitation_link: str | None = None
    active: bool = True
