from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class Person:
    id: int
    national_id: str
    first_names: str
    last_names: str
    email: str

    @property
    def full_name(self) -> str:
        return f"{self.first_names} {self.last_names}".strip()


@dataclass(frozen=True, slots=True)
class BillingRecord:
    id: int
    business_name: str
    tax_id: str


@dataclass(frozen=True, slots=True)
class Receipt:
    """Uploaded proof of payment; storage lives elsewhere."""

    id: int
    file_name: str
    uploaded_at: datetime | None = None
