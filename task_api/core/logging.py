import logging.config


def configure_logging(level: str = "INFO") -> None:
    """Install a single console handler for the app and its libraries."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {"handlers": ["console"], "level": level.upper()},
            "loggers": {
                # SQL echo is controlled by Settings.database_echo
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )
