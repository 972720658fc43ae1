from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import Select, case, inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lab_lending.models.lending_models import LoanRequest, Material, new_document_id
from lab_lending.services.errors import IndexUnavailableError, NotFoundError, StoreError
from lab_lending.services.lifecycle import (
    INITIAL_STATUS,
    RequestStatus,
    check_material_loanable,
    normalize_status,
    plan_transition,
    returned_available,
    validate_new_request,
)
from lab_lending.services.unit_of_work import commit_or_raise


REQUESTS_LOGGER = logging.getLogger("lab_lending.requests")

DEFAULT_PURPOSE = "Uso académico"
USER_INDEX = "ix_requests_user_created"
STATUS_INDEX = "ix_requests_status_created"


@dataclass(frozen=True)
class RequestFilter:
    user_id: str | None = None
    status: RequestStatus | None = None

    def required_index(self) -> str | None:
        if self.user_id is not None:
            return USER_INDEX
        if self.status is not None:
            return STATUS_INDEX
        return None

    def matches(self, row: LoanRequest) -> bool:
        if self.user_id is not None and row.UserID != self.user_id:
            return False
        if self.status is not None and row.Status != self.status.value:
            return False
        return True


def _newest_first_key(row: LoanRequest) -> tuple:
    # Rows without a creation time sort after every dated row.
    return (row.CreatedDate is not None, row.CreatedDate or datetime.min, row.RequestID)


class IndexedRequestQuery:
    """Filtered, ordered scan that needs the composite index for its filter."""

    name = "indexed"

    def statement(self, request_filter: RequestFilter) -> Select:
        stmt = select(LoanRequest)
        if request_filter.user_id is not None:
            stmt = stmt.where(LoanRequest.UserID == request_filter.user_id)
        if request_filter.status is not None:
            stmt = stmt.where(LoanRequest.Status == request_filter.status.value)
        # SQL Server rejects IS NULL as a sort key; CASE works everywhere.
        return stmt.order_by(
            case((LoanRequest.CreatedDate.is_(None), 1), else_=0),
            LoanRequest.CreatedDate.desc(),
            LoanRequest.RequestID.desc(),
        )

    def fetch(self, db: Session, request_filter: RequestFilter) -> list[LoanRequest]:
        index_name = request_filter.required_index()
        try:
            if index_name and not self._index_exists(db, index_name):
                raise IndexUnavailableError(f"Index {index_name} is not available on requests.")
            return list(db.execute(self.statement(request_filter)).scalars().all())
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not query requests: {exc.__class__.__name__}") from exc

    @staticmethod
    def _index_exists(db: Session, index_name: str) -> bool:
        inspector = inspect(db.connection())
        return any(index.get("name") == index_name for index in inspector.get_indexes(LoanRequest.__tablename__))


class ScanRequestQuery:
    """Full unfiltered scan, filtered and sorted in memory."""

    name = "scan"

    def fetch(self, db: Session, request_filter: RequestFilter) -> list[LoanRequest]:
        try:
            rows = db.execute(select(LoanRequest)).scalars().all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not query requests: {exc.__class__.__name__}") from exc
        matching = [row for row in rows if request_filter.matches(row)]
        matching.sort(key=_newest_first_key, reverse=True)
        return matching


INDEXED_QUERY = IndexedRequestQuery()
SCAN_QUERY = ScanRequestQuery()


def serialize_request(row: LoanRequest) -> dict:
    return {
        "id": row.RequestID,
        "userId": row.UserID,
        "materialId": row.MaterialID,
        "materialName": row.MaterialName,
        "materialImage": row.MaterialImage,
        "studentName": row.StudentName,
        "studentEmail": row.StudentEmail,
        "startDate": row.StartDate,
        "endDate": row.EndDate,
        "purpose": row.Purpose,
        "status": row.Status,
        "adminNotes": row.AdminNotes,
        "createdAt": row.CreatedDate,
        "updatedAt": row.UpdatedDate,
    }


def create_request(db: Session, data: dict[str, Any], today: date | None = None) -> dict:
    """Validate and store a new loan request in ``pending``.

    The material is read fresh for the availability check. Creating a request
    never changes the material's ``available`` count.
    """
    user_id = str(data.get("userId") or "").strip()
    material_id = str(data.get("materialId") or "").strip()
    start_date, end_date = validate_new_request(
        user_id,
        material_id,
        data.get("startDate"),
        data.get("endDate"),
        today or date.today(),
    )

    material = db.get(Material, material_id, populate_existing=True)
    check_material_loanable(material)

    now = datetime.now()
    row = LoanRequest(
        RequestID=new_document_id(),
        UserID=user_id,
        MaterialID=material_id,
        MaterialName=material.Name,
        MaterialImage=material.ImageUrl,
        StudentName=str(data.get("studentName") or ""),
        StudentEmail=str(data.get("studentEmail") or ""),
        StartDate=start_date,
        EndDate=end_date,
        Purpose=str(data.get("purpose") or "").strip() or DEFAULT_PURPOSE,
        Status=INITIAL_STATUS.value,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(row)
    commit_or_raise(db)
    REQUESTS_LOGGER.info("Request created id=%s user=%s material=%s", row.RequestID, user_id, material_id)
    return serialize_request(row)


def _reconcile_return(db: Session, material_id: str) -> None:
    material = db.get(Material, material_id)
    if material is None:
        REQUESTS_LOGGER.warning("Returned request references missing material id=%s", material_id)
        return
    before = material.Available
    material.Available = returned_available(material.Quantity, material.Available)
    material.UpdatedDate = datetime.now()
    REQUESTS_LOGGER.info(
        "Inventory reconciled material=%s available=%s->%s quantity=%s",
        material_id,
        before,
        material.Available,
        material.Quantity,
    )


def set_request_status(db: Session, request_id: str, status: Any, notes: str | None = None) -> dict:
    row = db.get(LoanRequest, request_id)
    if row is None:
        raise NotFoundError("Request not found.")

    plan = plan_transition(row.Status, status)
    if plan.is_noop:
        return serialize_request(row)

    if plan.reconcile_inventory and row.MaterialID:
        _reconcile_return(db, row.MaterialID)

    row.Status = plan.target.value
    if notes:
        row.AdminNotes = notes
    row.UpdatedDate = datetime.now()
    commit_or_raise(db)
    REQUESTS_LOGGER.info("Request %s moved %s -> %s", request_id, plan.current.value, plan.target.value)
    return serialize_request(row)


def get_request(db: Session, request_id: str) -> dict | None:
    row = db.get(LoanRequest, request_id)
    return serialize_request(row) if row else None


def delete_request(db: Session, request_id: str) -> bool:
    row = db.get(LoanRequest, request_id)
    if row is not None:
        db.delete(row)
        commit_or_raise(db)
        REQUESTS_LOGGER.info("Request deleted id=%s", request_id)
    return True


def fetch_requests(db: Session, request_filter: RequestFilter) -> list[LoanRequest]:
    try:
        return INDEXED_QUERY.fetch(db, request_filter)
    except IndexUnavailableError as exc:
        REQUESTS_LOGGER.warning("%s Falling back to full scan for %s.", exc, request_filter)
        return SCAN_QUERY.fetch(db, request_filter)


def list_requests(db: Session, request_filter: RequestFilter | None = None) -> list[dict]:
    rows = fetch_requests(db, request_filter or RequestFilter())
    return [serialize_request(row) for row in rows]


def list_user_requests(db: Session, user_id: str) -> list[dict]:
    return list_requests(db, RequestFilter(user_id=user_id))


def list_requests_by_status(db: Session, status: Any) -> list[dict]:
    return list_requests(db, RequestFilter(status=normalize_status(status)))


def list_pending_requests(db: Session) -> list[dict]:
    return list_requests_by_status(db, RequestStatus.PENDING)
