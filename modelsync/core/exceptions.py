from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from fastapi.encoders import jsonable_encoder


@dataclass
class ErrorDetail:
    message: str
    code: str

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"ErrorDetail(message={self.message!r}, code={self.code!r})"


class ModelSyncError(Exception):
    """Base exception for errors surfaced by fetch callbacks."""

    status_code: int = 500
    default_detail: Union[str, Dict, List] = "A server error occurred."
    default_code: str = "error"

    def __init__(
        self,
        detail: Optional[Union[str, Dict, List]] = None,
        code: Optional[str] = None,
    ):
        detail = detail if detail is not None else self.default_detail
        self.detail = self._normalize_detail(detail, code or self.default_code)
        super().__init__(str(self.detail))

    def _normalize_detail(
        self, detail: Union[str, Dict, List], code: Optional[str]
    ) -> Union[ErrorDetail, Dict, List]:
        """Convert details to ErrorDetail objects recursively."""
        if isinstance(detail, str):
            return ErrorDetail(detail, code or self.default_code)
        elif isinstance(detail, dict):
            return {
                key: self._normalize_detail(value, code)
                for key, value in detail.items()
            }
        elif isinstance(detail, list):
            return [self._normalize_detail(item, code) for item in detail]
        return detail


class ValidationError(ModelSyncError):
    """Error raised for invalid input. Corresponds to HTTP 400."""

    status_code = 400
    default_detail = "Invalid input."
    default_code = "validation_error"

    def __init__(self, detail: Optional[Union[str, Dict, List]] = None):
        super().__init__(detail, self.default_code)


class DoesNotExist(ModelSyncError):
    """Error raised when an object is not found. Corresponds to HTTP 404."""

    status_code = 404
    default_detail = "Not found."
    default_code = "not_found"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, self.default_code)


class PermissionDenied(ModelSyncError):
    """Error raised for permission issues. Corresponds to HTTP 403."""

    status_code = 403
    default_detail = "Permission denied."
    default_code = "permission_denied"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, self.default_code)


class MultipleObjectsReturned(ModelSyncError):
    """Error raised when multiple objects are returned but only one was expected."""

    status_code = 400
    default_detail = "Multiple objects returned."
    default_code = "multiple_objects_returned"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, self.default_code)


class NetworkError(ModelSyncError):
    """Error raised when the backend could not be reached."""

    status_code = 503
    default_detail = "The backend could not be reached."
    default_code = "network_error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, self.default_code)


class ConfigError(Exception):
    """Error raised for configuration issues."""
    pass


def describe_error(exc: BaseException) -> Dict[str, Any]:
    """
    Structured summary of an error raised by a fetch callback, for logging.
    Errors outside the ModelSyncError hierarchy have no status.
    """
    if isinstance(exc, ModelSyncError):
        return {
            "status": exc.status_code,
            "type": exc.__class__.__name__,
            "detail": jsonable_encoder(exc.detail),
        }
    return {"status": None, "type": exc.__class__.__name__, "detail": str(exc)}
