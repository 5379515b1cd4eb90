from __future__ import annotations

import logging
from typing import Optional

from dm_engine.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    if level is None:
        level = "DEBUG" if settings.debug else settings.log_level
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
