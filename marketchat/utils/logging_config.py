import logging
from logging.config import dictConfig

from marketchat.utils.env_helper import env_bool, env_none_or_str

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str | None = None, json_logs: bool | None = None):
    if level is None:
        level = env_none_or_str("LOG_LEVEL", "INFO").upper()
    if json_logs is None:
        json_logs = env_bool("LOG_JSON")

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": LOG_FORMAT,
                },
                "json": {  # structured logs for prod
                    "format": '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_logs else "default",
                },
            },
            "loggers": {
                # realtime/websocket chatter is noisy at INFO
                "realtime": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
            "root": {
                "level": level,
                "handlers": ["console"],
            },
        }
    )
    logging.getLogger(__name__).debug("Logging configured (level=%s, json=%s)", level, json_logs)
