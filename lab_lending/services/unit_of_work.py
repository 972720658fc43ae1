from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from lab_lending.services.errors import ConflictError, StoreError


def commit_or_raise(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError("The material was changed by someone else. Reload and try again.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"Could not save changes: {exc.__class__.__name__}") from exc
