from fastapi import HTTPException, status


class ImageBoardError(Exception):
    """Base class for every error raised by the admission engine and its collaborators."""

    kind = "Error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.kind


class ValidationError(ImageBoardError):
    kind = "ValidationError"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ImageBoardError):
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND


class CapacityError(ImageBoardError):
    kind = "CapacityExceeded"
    status_code = status.HTTP_403_FORBIDDEN


class ForbiddenError(ImageBoardError):
    kind = "Forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class DependencyError(ImageBoardError):
    """A repository or blob store call failed or timed out."""

    kind = "DependencyFailure"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message = "An unexpected error occurred"


class StorageError(DependencyError):
    kind = "StorageFailure"


class UnsupportedExtensionError(StorageError, ValidationError):
    kind = "UnsupportedExtension"
    status_code = status.HTTP_400_BAD_REQUEST


class SizeExceededError(StorageError, ValidationError):
    kind = "SizeExceeded"
    status_code = status.HTTP_400_BAD_REQUEST


def to_http_exception(exc: ImageBoardError) -> HTTPException:
    # Dependency failures never leak internal detail to the client
    if isinstance(exc, DependencyError) and not isinstance(exc, ValidationError):
        return HTTPException(exc.status_code, DependencyError.public_message)
    return HTTPException(exc.status_code, exc.message)


class Exceptions:
    UNAUTHORIZED = HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid credentials")
    MISSING_TOKEN = HTTPException(status.HTTP_401_UNAUTHORIZED, "Authorization header missing or invalid")
    ADMIN_REQUIRED = HTTPException(status.HTTP_403_FORBIDDEN, "Admin access required")
    THREAD_NOT_FOUND = HTTPException(status.HTTP_404_NOT_FOUND, "Thread not found or archived")
    BOARD_NOT_FOUND = HTTPException(status.HTTP_404_NOT_FOUND, "Board not found")
