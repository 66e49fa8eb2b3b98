"""
Soft delete support for workflow rows.

Retired rows keep their data and get a ``deleted_at`` stamp. Duplicate
detection and the stage uniqueness index only look at rows where
``deleted_at IS NULL``.
"""

from datetime import datetime, timezone

from roomflow.models import db


class SoftDeleteMixin:
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self) -> None:
        self.deleted_at = datetime.now(timezone.utc)

    @classmethod
    def query_active(cls):
        """Query restricted to rows that have not been retired."""
        return cls.query.filter(cls.deleted_at.is_(None))
