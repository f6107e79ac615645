import logging
import re
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request

REQUEST_ID_HEADER = "X-Request-ID"

# Inbound ids are echoed back and forwarded to the identity service as-is.
_ACCEPTABLE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_current_request_id: ContextVar[Optional[str]] = ContextVar("dues_request_id", default=None)


def assign_request_id(request: Request) -> str:
    """Adopt the caller's request id when it is well formed, otherwise mint one."""
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    request_id = incoming if _ACCEPTABLE_REQUEST_ID.match(incoming) else uuid.uuid4().hex
    request.state.request_id = request_id
    _current_request_id.set(request_id)
    return request_id


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


class RequestIdFilter(logging.Filter):
    """Stamp log records with the id of the request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _current_request_id.get() or "-"
        return True
