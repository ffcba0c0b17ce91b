"""Configuración de logging"""
import logging.config
import sys

from app.core.config import settings


def setup_logging():
    """Consola con formato simple; el nivel sale de LOG_LEVEL."""
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "simple": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "simple",
                "stream": sys.stdout
            }
        },
        "loggers": {
            "app": {
                "level": settings.LOG_LEVEL.upper(),
                "handlers": ["console"],
                "propagate": False
            },
            "uvicorn.access": {
                "level": "WARNING"
            }
        },
        "root": {
            "level": "WARNING",
            "handlers": ["console"]
        }
    })
