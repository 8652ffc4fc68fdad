import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qbank.db.session import DatabaseSessionManager
from qbank.workflow.exceptions import StorageFailure

logger = logging.getLogger(__name__)


@contextmanager
def storage_scope(db: DatabaseSessionManager, operation: str) -> Generator[Session, None, None]:
    """Transactional session scope that surfaces SQLAlchemy errors as StorageFailure."""
    try:
        with db.session_scope() as session:
            yield session
    except SQLAlchemyError as e:
        logger.error(f"Storage operation '{operation}' failed: {e}")
        raise StorageFailure(f"Storage operation '{operation}' failed", {"operation": operation}) from e
