"""Error taxonomy shared by the ledger, scheduler, reporting and API layers."""


class MicrofinanceError(Exception):
    """Base exception for all back office errors."""

    code = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgumentError(MicrofinanceError):
    """Malformed or missing input: bad ids, non-numeric or non-positive amounts, bad dates."""

    code = "invalid_argument"


class NotFoundError(MicrofinanceError):
    """A referenced loan or payment entry does not exist."""

    code = "not_found"


class FailedPreconditionError(MicrofinanceError):
    """The loan is not in the state the operation requires."""

    code = "failed_precondition"


class InternalError(MicrofinanceError):
    """Arithmetic corruption, commit failure or unexpected store error."""

    code = "internal"


class UnauthenticatedError(MicrofinanceError):
    """The caller presented no valid credentials."""

    code = "unauthenticated"


class PermissionDeniedError(MicrofinanceError):
    """The caller is authenticated but lacks the required role."""

    code = "permission_denied"
