import functools
import inspect
from fastapi import HTTPException

from src.utils.errors import CardSearchValidationError, UpstreamSourceError
from src.utils.logger import api_logger


def _log_http_exception(he: HTTPException):
    status = getattr(he, "status_code", None)
    detail = getattr(he, "detail", None)
    if status and status >= 500:
        api_logger.exception("HTTPException raised (status=%s): %s", status, detail)
    else:
        api_logger.warning("HTTPException raised (status=%s): %s", status, detail)


def _translate(e: Exception, default_status: int, default_detail: str) -> HTTPException:
    """Map domain errors to HTTP; everything else becomes the default without internals."""
    if isinstance(e, CardSearchValidationError):
        api_logger.warning("Invalid search request: %s", e)
        return HTTPException(
            status_code=400, detail={"error": e.message, "missing": e.missing}
        )
    if isinstance(e, UpstreamSourceError):
        api_logger.warning("Upstream source unavailable: %s", e)
        return HTTPException(
            status_code=503,
            detail={"error": e.message, "retryable": True},
        )
    api_logger.exception("Unhandled exception in handler: %s", e)
    return HTTPException(status_code=default_status, detail=default_detail)


# -------------------------
# safe_handler decorator (sync & async aware)
# -------------------------
def safe_handler(default_status: int = 500, default_detail: str = "Unexpected error"):
    """
    Decorator that:
    - logs HTTPException (WARNING for 4xx, ERROR with stack for 5xx) and re-raises it
    - turns CardSearchValidationError into 400 and UpstreamSourceError into 503
    - logs anything else with a stack trace and converts it to default_status
    Supports both sync and async handlers.
    """

    def decorator(func):
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except HTTPException as he:
                    _log_http_exception(he)
                    raise
                except Exception as e:
                    raise _translate(e, default_status, default_detail) from e

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except HTTPException as he:
                _log_http_exception(he)
                raise
            except Exception as e:
                raise _translate(e, default_status, default_detail) from e

        return sync_wrapper

    return decorator
