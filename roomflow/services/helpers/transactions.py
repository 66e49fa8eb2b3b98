"""
Transaction helpers for service functions.

Service functions own the commit. Each write runs inside ``transaction()``:
on success the session is committed, on any exception it is rolled back
and the exception propagates unchanged. ``StaleDataError`` raised by the
mapper version counter is translated to ``StaleWriteError`` so callers
only ever see the platform exception types.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.orm.exc import StaleDataError

from roomflow.core.exceptions import StaleWriteError
from roomflow.models import db

logger = logging.getLogger(__name__)


@contextmanager
def transaction(label: str, *, resource: str = "RoomFFEItem", resource_id: str | None = None):
    """Commit on success, roll back and re-raise on failure.

    ``resource``/``resource_id`` name the row reported when the mapper
    detects a lost update.
    """
    try:
        yield db.session
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("%s: concurrent modification detected: %s", label, exc)
        raise StaleWriteError(resource=resource, resource_id=resource_id) from exc
    except Exception:
        db.session.rollback()
        logger.debug("%s: rolled back", label)
        raise


def check_version(obj, expected_version: int | None, resource: str) -> None:
    """Reject a write based on an outdated read.

    ``expected_version`` is the ``version`` the caller last saw; ``None``
    skips the check.
    """
    if expected_version is None:
        return
    if obj.version != expected_version:
        raise StaleWriteError(
            resource=resource,
            resource_id=obj.id,
            expected_version=expected_version,
            actual_version=obj.version,
        )
