"""
core/errors.py -- Domain error taxonomy shared by every Rollcall package.

Every error a service operation can raise on purpose is a ServiceError
subclass carrying a stable machine-readable code, a user-facing message and
the HTTP status the API layer should answer with. Anything else that escapes
an operation is a bug and is answered with a generic 500.

The API layer turns ServiceError into the standard error envelope:
    {"error": {"code": "...", "message": "..."}}

The web layer renders .message inline on forms. UpstreamFailure messages are
deliberately generic -- the underlying cause is logged, never shown.

Layer rule: core/ is the kernel and imports nothing from the project.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for expected, typed failures of a service operation."""

    code: str = "service_error"
    message: str = "The request could not be completed."
    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class NotFound(ServiceError):
    code = "not_found"
    message = "Resource not found or you are not allowed to access it."
    status_code = 404


class AlreadyExists(ServiceError):
    code = "already_exists"
    message = "Resource already exists."
    status_code = 409


class UserExists(AlreadyExists):
    code = "user_exists"
    message = "An account with that email address already exists."


class AlreadyEnrolled(AlreadyExists):
    code = "user_enrolled"
    message = "You are already enrolled in this class."


class WrongCredential(ServiceError):
    """Email or password mismatch.

    The two subclasses stay distinct for callers that need to know which one
    failed; user-facing pages show WrongCredential.message for both.
    """

    code = "wrong_credential"
    message = "Invalid email or password."
    status_code = 401


class WrongEmail(WrongCredential):
    code = "wrong_email"


class WrongPassword(WrongCredential):
    code = "wrong_password"


class Forbidden(ServiceError):
    code = "forbidden"
    message = "You are not allowed to perform this action."
    status_code = 403


class InvariantViolation(ServiceError):
    code = "invariant_violation"
    message = "This change would leave the data in an invalid state."
    status_code = 409


class MustReassignOwner(InvariantViolation):
    code = "must_set_owner"
    message = "You own this class. Transfer ownership to another member before leaving."


class OwnerCannotBeDeleted(InvariantViolation):
    code = "delete_owner"
    message = "You still own one or more classes. Transfer or delete them before deleting your account."


class UpstreamFailure(ServiceError):
    code = "upstream_failure"
    message = "We're having a problem on our end. Please try again later."
    status_code = 502


class HashingFailure(ServiceError):
    code = "hash_failed"
    message = "We're having a problem on our end. Please try again later."
    status_code = 500
