from __future__ import annotations

import logging

_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def setup_logging(level: int | str = logging.INFO):
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # APScheduler 每次触发都会打印 INFO，降级以免淹没业务日志
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))
    return logging.getLogger("evqueue")
