import contextvars
import logging
import uuid
from typing import Mapping, Optional

REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("editor_request_id", default="-")


class RequestIdLoggingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "_request_id_injected", False):
            return True
        request_id = (REQUEST_ID_CTX.get() or "-").strip() or "-"
        record.msg = f"request_id={request_id} {record.msg}"
        record._request_id_injected = True
        return True


def install_request_id_filter(logger: Optional[logging.Logger] = None) -> None:
    target = logger or logging.getLogger()
    if not any(isinstance(f, RequestIdLoggingFilter) for f in target.filters):
        target.addFilter(RequestIdLoggingFilter())


def extract_request_id(headers: Optional[Mapping[str, str]] = None, body: Optional[Mapping] = None) -> str:
    lowered = {str(k).lower(): str(v).strip() for k, v in (headers or {}).items() if v is not None}
    body = body or {}
    request_id = str(
        body.get("request_id")
        or body.get("requestId")
        or lowered.get("x-request-id")
        or lowered.get("x-requestid")
        or ""
    ).strip()
    if not request_id:
        request_id = uuid.uuid4().hex[:16]
    return request_id[:96]
