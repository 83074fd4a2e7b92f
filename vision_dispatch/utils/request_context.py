import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

NO_REQUEST = "-"

_request_id: ContextVar[str] = ContextVar("request_id", default=NO_REQUEST)


def new_request_id() -> str:
    return str(uuid.uuid4())


def get_request_id() -> str:
    return _request_id.get()


@contextmanager
def request_id_scope(rid: str) -> Iterator[str]:
    """Bind rid to every log record emitted while one request is served."""
    token = _request_id.set(rid)
    try:
        yield rid
    finally:
        _request_id.reset(token)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True
