"""Error taxonomy for the staging / commit / push workflow.

Every error carries a machine-readable code and the HTTP status the API
answers with. Validation errors are raised synchronously to the caller;
BackendFailure is only ever recorded in push-job state.
"""

from typing import Any


class CurationError(Exception):
    """Base exception for the curation backend."""

    code = "curation_error"
    status_code = 500

    def __init__(self, message: str, detail: Any = None):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail is not None:
            d["detail"] = self.detail
        return d


class NotFoundError(CurationError):
    """Referenced staged change, commit or job does not exist."""

    code = "not_found"
    status_code = 404


class AlreadyCommittedError(NotFoundError):
    """Requested change ids are no longer uncommitted (absorbed by another commit)."""

    code = "already_committed"
    status_code = 409

    def __init__(self, change_ids: list[str]):
        self.change_ids = change_ids
        super().__init__(
            f"Changes already committed or missing: {', '.join(change_ids)}",
            detail={"change_ids": change_ids},
        )


class InvalidArgumentError(CurationError):
    """Empty commit message, empty change set, malformed identity."""

    code = "invalid_argument"
    status_code = 422


class InvalidStateError(CurationError):
    """Operation not permitted in the current status."""

    code = "invalid_state"
    status_code = 409


class ImmutableChangeError(CurationError):
    """Attempt to mutate or delete a change already bound to a commit."""

    code = "immutable"
    status_code = 409

    def __init__(self, change_id: str, commit_id: str | None):
        self.change_id = change_id
        self.commit_id = commit_id
        super().__init__(
            f"Staged change {change_id} belongs to commit {commit_id} and cannot be modified",
            detail={"change_id": change_id, "commit_id": commit_id},
        )


class BackendFailure(CurationError):
    """Portfolio or enrichment adapter reported an error."""

    code = "backend_failure"
    status_code = 502

    def __init__(self, target: str, message: str):
        self.target = target
        super().__init__(message, detail={"target": target})


class AuthRequiredError(CurationError):
    """Session missing or expired at the access gateway."""

    code = "auth_required"
    status_code = 401

    def __init__(self, message: str = "Authentication required", expired: bool = False):
        if expired:
            self.code = "session_expired"
        super().__init__(message)
