"""Custom HTTP exceptions shared by the engine and the API."""

from fastapi import HTTPException, status


class NotFoundError(HTTPException):
    """Exception raised when a resource is not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} with id '{identifier}' not found",
        )


class InvalidStateError(HTTPException):
    """Exception raised when a proposal is no longer pending."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class UnauthorizedError(HTTPException):
    """Exception raised when the actor may not perform the action."""

    def __init__(self, detail: str = "You are not allowed to perform this action"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
        )


class InvalidDecisionError(HTTPException):
    """Exception raised for a malformed decision or counter price."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
        )


class BadRequestError(HTTPException):
    """Exception raised for bad requests."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
        )


class ConflictError(HTTPException):
    """Exception raised when there's a resource conflict."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class TransientBackendError(HTTPException):
    """Exception raised when the backend is unreachable, times out or returns 5xx."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Backend unavailable: {detail}",
        )


class BackendRejectedError(HTTPException):
    """Exception raised when the backend rejects a request with a 4xx."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Backend rejected request ({status_code}): {detail}",
        )
        self.backend_status = status_code


class MissingIdentityError(HTTPException):
    """Exception raised when a request carries no acting user."""

    def __init__(self, detail: str = "Missing X-User-Id or X-User-Role header"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
        )
