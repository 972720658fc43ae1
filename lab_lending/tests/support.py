import os
import tempfile
from datetime import date, timedelta


os.environ.setdefault("LAB_LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="lab-lending-uploads-"))

from sqlalchemy import func, select, text

from lab_lending.db.base import Base
from lab_lending.db.session import SessionLocal, engine
from lab_lending.models.lending_models import LoanRequest
from lab_lending.services.inventory_service import upsert_material


TODAY = date(2031, 3, 3)


def reset_database() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def open_session():
    return SessionLocal()


def drop_request_index(db, index_name: str) -> None:
    db.execute(text(f"DROP INDEX {index_name}"))
    db.commit()


def count_requests(db) -> int:
    return db.execute(select(func.count()).select_from(LoanRequest)).scalar_one()


def add_material(db, quantity: int = 2, available: int | None = None, **extra) -> str:
    data = {
        "name": extra.pop("name", "Microscopio"),
        "category": extra.pop("category", "Óptica"),
        "quantity": quantity,
        "available": quantity if available is None else available,
    }
    data.update(extra)
    return upsert_material(db, None, data)


def request_payload(user_id: str, material_id: str, start_offset: int = 1, days: int = 3, today: date = TODAY) -> dict:
    start = today + timedelta(days=start_offset)
    return {
        "userId": user_id,
        "materialId": material_id,
        "startDate": start.isoformat(),
        "endDate": (start + timedelta(days=days)).isoformat(),
        "studentName": "Ana Pérez",
        "studentEmail": "ana@lab.edu",
    }
