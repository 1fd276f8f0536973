from typing import Any, Dict, Optional


class CeltsError(Exception):
    """Base domain error; rendered by the handlers registered in main.py."""

    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.code = code
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.code:
            body["code"] = self.code
        body.update(self.extra)
        return body


class BadRequestError(CeltsError):
    status_code = 400


class AuthenticationError(CeltsError):
    status_code = 401


class AuthorizationError(CeltsError):
    status_code = 403


class NotFoundError(CeltsError):
    status_code = 404


class ConflictError(CeltsError):
    status_code = 409


class RateLimitError(CeltsError):
    status_code = 429
