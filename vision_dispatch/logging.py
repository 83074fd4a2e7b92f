import logging
from typing import Optional

from vision_dispatch.config import settings
from vision_dispatch.utils.request_context import RequestIdFilter

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    lvl = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(lvl)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(lvl)
    root.handlers = [handler]
