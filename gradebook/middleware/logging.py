import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from gradebook.config import settings

REQUEST_ID_HEADER = "X-Request-ID"

# Request id of the request being served, "-" outside of a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Stamp every record with the current request id so service logs can be traced to a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


# Configure logging
def setup_logging():
    """Configure application logging."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.LOG_FILE:
        os.makedirs(Path(settings.LOG_FILE).parent, exist_ok=True)
        handlers.append(logging.FileHandler(settings.LOG_FILE))

    for handler in handlers:
        handler.addFilter(RequestIdFilter())

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
        handlers=handlers,
    )

    # Set specific log levels for noisy libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger = logging.getLogger("gradebook")
    logger.setLevel(log_level)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with its duration and tag the response with a request id."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = logging.getLogger("gradebook.request")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Honour an id supplied by the caller
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start_time = time.time()

        self.logger.info(
            f"Request started: {request.method} {request.url.path} "
            f"[client: {request.client.host if request.client else 'unknown'}]"
        )

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            log = self.logger.warning if response.status_code >= 500 else self.logger.info
            log(
                f"Request completed: {request.method} {request.url.path} "
                f"[status: {response.status_code}] [duration: {duration:.3f}s]"
            )

            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        except Exception as e:
            self.logger.error(
                f"Request failed: {request.method} {request.url.path} [error: {str(e)}]",
                exc_info=True
            )
            raise
        finally:
            request_id_var.reset(token)


def add_logging_middleware(app: FastAPI):
    """Add request logging middleware to the FastAPI app."""
    app.add_middleware(RequestLoggingMiddleware)
