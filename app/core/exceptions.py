"""
Chat error taxonomy.

Services raise these; the FastAPI handlers registered in ``app.main`` render
them as ``{"detail": ...}`` with the matching status code. Endpoints do not
catch them.
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse


class ChatError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal server error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class UnauthenticatedError(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Not authenticated"


class ForbiddenError(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Forbidden"


class NotFoundError(ChatError):
    """Raised both for missing rows and rows the caller may not see."""
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class ChatValidationError(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class TransientError(ChatError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Temporarily unavailable"


class AlreadySubscribedError(TransientError):
    default_detail = "subscribe can only be called a single time per channel instance"


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    headers = None
    if isinstance(exc, UnauthenticatedError):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)
