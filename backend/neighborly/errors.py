"""Error taxonomy shared by the policy engine, the workflows and the HTTP layer.

Every error carries a stable machine readable ``kind`` next to a human
message. The HTTP layer renders them through a single exception handler.
"""


class NeighborlyError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind}


class ValidationError(NeighborlyError):
    """A required field is missing or holds an invalid value."""

    kind = "validation"
    status_code = 400


class AuthorizationError(NeighborlyError):
    """The access policy or a workflow refused the action."""

    kind = "authorization"
    status_code = 403


class NotFoundError(NeighborlyError):
    kind = "not_found"
    status_code = 404


class ConflictError(NeighborlyError):
    """A uniqueness constraint or a guarded state update lost against stored data."""

    kind = "conflict"
    status_code = 409

    def __init__(self, message: str, constraint: str | None = None):
        super().__init__(message)
        self.constraint = constraint

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["constraint"] = self.constraint
        return payload


class TransientError(NeighborlyError):
    """Storage or network trouble; the caller may retry."""

    kind = "transient"
    status_code = 503
