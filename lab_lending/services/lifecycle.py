"""Loan request lifecycle rules.

Statuses form a closed set and every move between them goes through
``STATE_TRANSITIONS``. The functions here are pure: they validate and decide,
the request service applies the result to the database.

    pending   --approve-->  approved
    pending   --reject--->  rechazado
    approved  --deliver-->  entregado
    entregado --return--->  devuelto
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from lab_lending.services.errors import (
    InvalidTransitionError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)


MAX_LOAN_DAYS = int(os.environ.get("MAX_LOAN_DAYS") or "14")


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rechazado"
    DELIVERED = "entregado"
    RETURNED = "devuelto"


STATUS_ALIASES = {
    "rejected": RequestStatus.REJECTED,
    "delivered": RequestStatus.DELIVERED,
    "returned": RequestStatus.RETURNED,
}
INITIAL_STATUS = RequestStatus.PENDING
TERMINAL_STATES = {RequestStatus.REJECTED, RequestStatus.RETURNED}
STATE_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: {RequestStatus.DELIVERED},
    RequestStatus.DELIVERED: {RequestStatus.RETURNED},
    RequestStatus.REJECTED: set(),
    RequestStatus.RETURNED: set(),
}
ACTIONS = {
    "approve": RequestStatus.APPROVED,
    "reject": RequestStatus.REJECTED,
    "deliver": RequestStatus.DELIVERED,
    "return": RequestStatus.RETURNED,
}


@dataclass(frozen=True)
class TransitionPlan:
    current: RequestStatus
    target: RequestStatus
    reconcile_inventory: bool

    @property
    def is_noop(self) -> bool:
        return self.current == self.target


def normalize_status(raw: Any) -> RequestStatus:
    if isinstance(raw, RequestStatus):
        return raw
    value = str(raw or "").strip().lower()
    if value in STATUS_ALIASES:
        return STATUS_ALIASES[value]
    try:
        return RequestStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown request status: {raw!r}.") from None


def plan_transition(current_raw: Any, target_raw: Any) -> TransitionPlan:
    """Decide how a request moves from its stored status to ``target_raw``.

    Asking for the status the request already has is a no-op. Any move that is
    not in the table raises InvalidTransitionError. Only entering ``devuelto``
    puts a unit back into inventory.
    """
    current = normalize_status(current_raw)
    target = normalize_status(target_raw)
    if target == current:
        return TransitionPlan(current, target, reconcile_inventory=False)
    if target not in STATE_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Invalid status transition: {current.value} -> {target.value}")
    return TransitionPlan(current, target, reconcile_inventory=target == RequestStatus.RETURNED)


def _coerce_date(value: Any, label: str) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    try:
        return date.fromisoformat(raw)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        raise ValidationError(f"{label} must be a date (YYYY-MM-DD).") from None


def validate_new_request(
    user_id: str | None,
    material_id: str | None,
    start_raw: Any,
    end_raw: Any,
    today: date,
    max_days: int = MAX_LOAN_DAYS,
) -> tuple[date, date]:
    if not user_id or not material_id:
        raise ValidationError("Missing required data: userId or materialId.")

    start_date = _coerce_date(start_raw, "startDate")
    end_date = _coerce_date(end_raw, "endDate")
    if start_date is None or end_date is None:
        raise ValidationError("Please select the loan start and end dates.")
    if end_date <= start_date:
        raise ValidationError("The end date must be after the start date.")
    if start_date < today:
        raise ValidationError("Loans cannot start in the past.")
    if (end_date - start_date).days > max_days:
        raise ValidationError(f"The maximum loan is {max_days} days.")
    return start_date, end_date


def check_material_loanable(material: Any) -> None:
    if material is None:
        raise NotFoundError("Material not found.")
    if int(material.Available or 0) <= 0:
        raise UnavailableError("Material is not available.")


def returned_available(quantity: int | None, available: int | None) -> int:
    # Clamped so repeated returns never exceed the owned quantity.
    return min(int(quantity or 0), int(available or 0) + 1)
