# Overview: Service-layer helpers for locking and single-attempt units of work.

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db


class StorageError(RuntimeError):
    """
    Raised when the database fails underneath a service operation.

    Wraps the SQLAlchemy exception (available as __cause__). The unit of work
    has already been rolled back when this is raised; callers decide whether
    to retry.
    """
    code = "STORAGE_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


@contextmanager
def atomic(operation: str):
    """
    Run the enclosed block as one transaction: commit once on success,
    roll back on any exception.

    Domain errors raised inside the block propagate unchanged. Database
    failures are re-raised as StorageError, so a failed operation never
    leaves partial rows behind.
    """
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise StorageError(
            f"{operation} was rejected by a database constraint; another change may have "
            "been saved at the same time. Reload and try again.",
            code="STORAGE_CONFLICT",
        ) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageError(f"{operation} failed: database error") from exc
    except Exception:
        db.session.rollback()
        raise
