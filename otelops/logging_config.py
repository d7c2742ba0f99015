"""
Logging configuration with probe noise suppression
"""

import logging
import logging.config
from typing import Any, Dict

PROBE_PATHS = ("/health", "/api/v1/version", "/api/v1/health", "/metrics")


class ProbeNoiseFilter(logging.Filter):
    """Filter to suppress httpx request logs for health probes."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Drop INFO-level httpx request lines that hit a probe endpoint."""
        if record.name.startswith("httpx") and record.levelno <= logging.INFO:
            message = record.getMessage()
            if "HTTP Request" in message and any(path in message for path in PROBE_PATHS):
                return False
        return True


def get_logging_config(level: str = "INFO") -> Dict[str, Any]:
    """Get logging configuration with probe noise suppression."""
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "probe_noise_filter": {
                "()": ProbeNoiseFilter
            }
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                # stdout carries the report
                "stream": "ext://sys.stderr",
            },
            "probes": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
                "filters": ["probe_noise_filter"]
            }
        },
        "loggers": {
            "httpx": {
                "handlers": ["probes"],
                "level": "INFO" if level == "DEBUG" else "WARNING",
                "propagate": False
            },
            "httpcore": {
                "handlers": ["default"],
                "level": "WARNING",
                "propagate": False
            },
            "otelops": {
                "handlers": ["default"],
                "level": level,
                "propagate": False
            }
        },
        "root": {
            "level": "WARNING",
            "handlers": ["default"]
        }
    }


def configure_logging(level: str = "INFO") -> None:
    """Apply the otelops logging configuration."""
    logging.config.dictConfig(get_logging_config(level))
