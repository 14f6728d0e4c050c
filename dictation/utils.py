from datetime import datetime
from logging import getLogger, basicConfig, DEBUG, INFO, FileHandler, Formatter, Filter, LogRecord
from pathlib import Path
from typing import Optional, Tuple

from config import LOG_LEVEL, LOG_PATH


# Loggers that belong to this project; everything else is third party.
PROJECT_PREFIXES: Tuple[str, ...] = ("dictation.", "__main__", "dictate")

_LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(funcName)s(): %(message)s"


class ProjectLogFilter(Filter):
    """
    Passes project records at any level and third-party records (websockets,
    sounddevice, pynput, ...) only from `third_party_level` up.
    """

    def __init__(self, third_party_level: int = INFO, prefixes: Tuple[str, ...] = PROJECT_PREFIXES) -> None:
        super().__init__()
        self.third_party_level = third_party_level
        self.prefixes = prefixes

    def filter(self, record: LogRecord) -> bool:
        if record.name.startswith(self.prefixes):
            return True
        return record.levelno >= self.third_party_level


def _open_log_file(log_path: Path) -> FileHandler:
    log_filename = log_path / f"dictate_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    handler = FileHandler(log_filename, encoding="utf-8")
    handler.setLevel(DEBUG)
    handler.setFormatter(Formatter(_LOG_FORMAT))
    return handler


def setup_logging(console_level: Optional[int] = None) -> Path:
    """
    Configure console and file logging.

    Console: DEV mode = DEBUG, otherwise INFO.
    File: always DEBUG.
    Third-party loggers reach either output at INFO+ only.

    Returns the path to the log file.
    """
    if console_level is None:
        console_level = DEBUG if LOG_LEVEL == "DEV" else INFO

    basicConfig(level=DEBUG, format=_LOG_FORMAT)
    root = getLogger()
    third_party = ProjectLogFilter()
    for handler in root.handlers:
        handler.setLevel(console_level)
        handler.addFilter(third_party)

    file_handler = _open_log_file(LOG_PATH)
    file_handler.addFilter(third_party)
    root.addHandler(file_handler)

    getLogger(__name__).info("Logging to file: %s", file_handler.baseFilename)
    return Path(file_handler.baseFilename)
