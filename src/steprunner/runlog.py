import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

LEVELS = ("INFO", "WARN", "ERROR")


def format_line(level: str, message: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now()
    return f"[{when.isoformat(timespec='seconds')}] [{level}] {message}"


class RunLogFile:
    """Append-only audit log shared by every run that points at the same path.

    Each line is flushed and fsynced before ``write`` returns, so a crash in a
    later step still leaves earlier lines on disk. ``OSError`` is never caught
    here; the runner turns it into ``LoggingUnavailable``.
    """

    def __init__(self, path: Path, mode: int = 0o600) -> None:
        self.path = Path(path)
        self.mode = mode

    def open(self) -> None:
        """Create the file if needed and restrict its permissions."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
        os.chmod(self.path, self.mode)
        logger.debug("Run log ready", extra={"path": str(self.path)})

    def write(self, level: str, message: str) -> None:
        if level not in LEVELS:
            raise ValueError(f"Unknown log level {level!r}")
        lines = message.splitlines() or [""]
        with open(self.path, "a", encoding="utf-8", errors="backslashreplace") as handle:
            for line in lines:
                handle.write(format_line(level, line) + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    def info(self, message: str) -> None:
        self.write("INFO", message)

    def warn(self, message: str) -> None:
        self.write("WARN", message)

    def error(self, message: str) -> None:
        self.write("ERROR", message)
