"""Shared Flask extension instances."""

import logging

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import SQLAlchemyError

from errors import ExternalDependencyError

logger = logging.getLogger(__name__)

db = SQLAlchemy()
limiter = Limiter(get_remote_address, storage_uri="memory://")


def commit_session(action: str) -> None:
    """Commit the current session; roll back and report a retryable error on failure."""
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Database commit failed during %s: %s", action, exc)
        raise ExternalDependencyError(f"Could not save changes ({action}); please retry.") from exc
