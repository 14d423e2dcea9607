# backend/meetbook/repositories/base_repository.py
"""
Base Repository Pattern for the Meetbook booking core.

Every repository shares:
- Row lookup, insert, field update and delete
- Conditional (compare-and-set) updates, the only way status columns change
- Translation of SQLAlchemy errors into RepositoryException

Repositories flush but never commit. Services own transaction boundaries.
"""

import logging
from typing import Any, Dict, Generic, List, NoReturn, Optional, Type, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException
from ..database import get_dialect_name

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Data access shared by the booking, slot and escrow repositories.

    Attributes:
        db: SQLAlchemy session
        model: Mapped class this repository reads and writes
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        return get_dialect_name(self.db)

    def _fail(self, action: str, exc: SQLAlchemyError) -> NoReturn:
        name = self.model.__name__
        self.logger.error(f"{name} {action} failed: {exc}")
        raise RepositoryException(f"Failed to {action} {name}: {exc}") from exc

    def get_by_id(self, id: str, *, for_update: bool = False) -> Optional[T]:
        try:
            query = self.db.query(self.model).filter(self.model.id == id)
            if for_update:
                query = query.with_for_update()
            return query.first()
        except SQLAlchemyError as e:
            self._fail("load", e)

    def refresh(self, instance: T) -> None:
        self.db.refresh(instance)

    def create(self, **kwargs: Any) -> T:
        """Add and flush a new row so generated keys and defaults are visible."""
        try:
            entity = self.model(**kwargs)
            self.db.add(entity)
            self.db.flush()
            return entity
        except IntegrityError as exc:
            self.logger.error(
                "Integrity error inserting %s: %s", self.model.__name__, exc, exc_info=True
            )
            raise RepositoryException(f"Integrity constraint violated: {exc}") from exc
        except SQLAlchemyError as e:
            self._fail("insert", e)

    def update(self, id: str, **kwargs: Any) -> Optional[T]:
        """
        Set plain fields on a row. Not for status columns; those go through
        ``conditional_update``.
        """
        try:
            entity = self.get_by_id(id)
            if entity is None:
                return None
            for key, value in kwargs.items():
                if hasattr(entity, key):
                    setattr(entity, key, value)
            self.db.flush()
            return entity
        except SQLAlchemyError as e:
            self._fail("update", e)

    def conditional_update(self, id: str, expected: Dict[str, Any], values: Dict[str, Any]) -> bool:
        """
        Apply ``values`` only if every column in ``expected`` still holds its value.

        Returns True when exactly this call changed the row. A False result
        means another writer got there first and the caller must reload.
        """
        try:
            self.db.flush()
            stmt = update(self.model).where(self.model.id == id)
            for column, value in expected.items():
                attr = getattr(self.model, column)
                stmt = stmt.where(attr.is_(None) if value is None else attr == value)
            result = self.db.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            entity = self.db.get(self.model, id)
            if entity is not None:
                self.db.refresh(entity)
            return True
        except SQLAlchemyError as e:
            self._fail("conditionally update", e)

    def delete(self, id: str) -> bool:
        try:
            entity = self.get_by_id(id)
            if entity is None:
                return False
            self.db.delete(entity)
            self.db.flush()
            return True
        except IntegrityError as exc:
            self.logger.error(f"{self.model.__name__} {id} is still referenced: {exc}")
            raise RepositoryException(f"Cannot delete due to existing references: {exc}") from exc
        except SQLAlchemyError as e:
            self._fail("delete", e)

    def exists(self, **kwargs: Any) -> bool:
        try:
            return self.db.query(self.model).filter_by(**kwargs).first() is not None
        except SQLAlchemyError as e:
            self._fail("check existence of", e)

    def find_one_by(self, **kwargs: Any) -> Optional[T]:
        try:
            return self.db.query(self.model).filter_by(**kwargs).first()
        except SQLAlchemyError as e:
            self._fail("find", e)

    # Helpers for subclass queries

    def _build_query(self) -> Query:
        return self.db.query(self.model)

    def _execute_query(self, query: Query) -> List[T]:
        try:
            return query.all()
        except SQLAlchemyError as e:
            self._fail("query", e)

    def _execute_scalar(self, query: Query) -> Any:
        try:
            return query.scalar()
        except SQLAlchemyError as e:
            self._fail("aggregate", e)
