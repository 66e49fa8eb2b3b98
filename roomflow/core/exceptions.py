"""
Roomflow exception hierarchy.

Every service raises these types and nothing else for business failures.
Callers (CLI commands, scripts, a future HTTP layer) can map them once:

    NotFoundError      -> 404
    ValidationError    -> 422
    ConflictError      -> 409  (StaleWriteError, MergeConflictError included)

Usage:
    from roomflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Room", resource_id=room_id)
    raise ValidationError("quantity must be >= 1", details={"quantity": 0})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Args:
        resource: Human-readable entity name (e.g. "Room", "FFETemplate").
        resource_id: The key that was looked up.
        org_id: Optional organisation scope that was enforced. Logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        org_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.org_id = org_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if org_id is not None:
            msg += f" (org={org_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Examples: a quantity below 1, a status outside the current set, a
    template whose linked items nest more than one level.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with existing state.

    The default message describes a duplicate unique value. Pass
    ``message`` for other conflicts (e.g. a quantity reduction that would
    discard customised rows).

    Args:
        resource: Model name.
        field: The field the conflict is about.
        value: The conflicting value.
        message: Optional override for the default message.
        details: Optional structured payload for callers.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value=None,
        *,
        message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        self.details = details or {}
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StaleWriteError(ConflictError):
    """Raised when a write was based on an out-of-date version of a row.

    Not retried inside the services; the caller reloads and decides.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            resource,
            "version",
            expected_version,
            message=(
                f"{resource} id={resource_id} was modified concurrently "
                f"(expected version={expected_version}, current={actual_version})"
            ),
            details={
                "id": resource_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class MergeConflictError(ConflictError):
    """Raised when duplicate stages cannot be merged without losing work.

    Two or more candidates show independent activity, so no survivor can
    be picked automatically. Nothing is deleted for the group.

    Args:
        room_id: Room that owns the duplicate group.
        stage_type: Canonical stage type of the group.
        stage_ids: Every stage id in the group.
        active_ids: The ids that carry activity.
    """

    def __init__(
        self,
        room_id: str,
        stage_type: str,
        stage_ids: list[str],
        active_ids: list[str],
    ) -> None:
        self.room_id = room_id
        self.stage_type = stage_type
        self.stage_ids = list(stage_ids)
        self.active_ids = list(active_ids)
        super().__init__(
            "Stage",
            "type",
            stage_type,
            message=(
                f"Room {room_id} has {len(self.active_ids)} active {stage_type} "
                f"stages ({', '.join(self.active_ids)}); manual merge required"
            ),
            details={
                "room_id": room_id,
                "stage_type": stage_type,
                "stage_ids": self.stage_ids,
                "active_ids": self.active_ids,
            },
        )
