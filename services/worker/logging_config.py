from typing import Optional

from job_manager.config import Settings
from job_manager.logging_config import configure_logging as _configure_logging

LOG_FORMAT = "%(asctime)s %(levelname)s [worker %(threadName)s] %(message)s"


def configure_logging(settings: Optional[Settings] = None):
    _configure_logging(settings, fmt_plain=LOG_FORMAT)
