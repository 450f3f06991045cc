from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from parish_authz.errors import AuthzError, StorageError

logger = logging.getLogger(__name__)


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit on success; roll back on any error.

    Guard failures propagate unchanged, storage failures surface as StorageError. Nothing is
    retried here.
    """
    try:
        yield session
        session.commit()
    except AuthzError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.error('Authorization mutation rolled back: %s', e)
        raise StorageError() from e
    except Exception:
        session.rollback()
        raise
