"""Process-wide logging configuration."""

import json
import logging
import sys

TEXT_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("discord.gateway", "discord.client", "httpx", "aiosqlite")


class JSONFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, message, exc."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "info", fmt: str = "text", log_file: str | None = None) -> None:
    """Configure the root logger once for the bot process.

    Args:
        level: Level name (debug, info, warning, error).
        fmt: ``text`` or ``json``.
        log_file: Optional file to log to instead of stdout.
    """
    handler: logging.Handler = (
        logging.FileHandler(log_file) if log_file else logging.StreamHandler(sys.stdout)
    )
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    logging.basicConfig(level=level.upper(), handlers=[handler], force=True)
    logging.getLogger("rewardlink").setLevel(level.upper())
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
