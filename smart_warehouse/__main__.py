from __future__ import annotations

import faulthandler
import logging
import logging.config
import sys
import threading
from pathlib import Path
from typing import Any

import uvicorn

from smart_warehouse.bootstrap import WarehouseRuntime, create_app
from smart_warehouse.config import Settings, settings

log = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_LOG_FILE_MAX_BYTES = 20 * 1024 * 1024
_LOG_FILE_BACKUPS = 5


def build_logging_config(config: Settings) -> dict[str, Any]:
    """dictConfig for the service; uvicorn loggers propagate into the same handlers."""
    handlers: dict[str, dict[str, Any]] = {}
    if config.log_to_console:
        handlers["console"] = {"class": "logging.StreamHandler", "formatter": "plain", "stream": "ext://sys.stdout"}
    log_path = config.log_file.strip()
    if log_path:
        path = Path(log_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "plain",
            "filename": str(path),
            "maxBytes": _LOG_FILE_MAX_BYTES,
            "backupCount": _LOG_FILE_BACKUPS,
            "encoding": "utf-8",
        }
    level = config.log_level.upper().strip() or "INFO"
    if level not in logging.getLevelNamesMapping():
        level = "INFO"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": _LOG_FORMAT}},
        "handlers": handlers,
        "root": {"level": level, "handlers": list(handlers)},
        "loggers": {
            name: {"handlers": [], "propagate": True}
            for name in ("uvicorn", "uvicorn.error", "uvicorn.access")
        },
    }


def _install_crash_hooks() -> None:
    def _on_main_crash(exc_type, exc_value, exc_traceback) -> None:
        log.critical("Warehouse service crashed", exc_info=(exc_type, exc_value, exc_traceback))

    def _on_thread_crash(args) -> None:
        name = args.thread.name if args.thread else "<unknown>"
        log.critical("Warehouse thread crashed thread=%s", name, exc_info=(args.exc_type, args.exc_value, args.exc_traceback))

    sys.excepthook = _on_main_crash
    threading.excepthook = _on_thread_crash
    if sys.stderr is not None:
        faulthandler.enable(all_threads=True)


def main() -> int:
    logging.config.dictConfig(build_logging_config(settings))
    logging.captureWarnings(True)
    _install_crash_hooks()
    log.info("Logging configured level=%s console=%s file=%s", settings.log_level, settings.log_to_console, settings.log_file or "<disabled>")
    log.info(
        "Smart warehouse starting host=%s port=%s grid=%sx%s persistence=%s",
        settings.host,
        settings.port,
        settings.grid_rows,
        settings.grid_cols,
        settings.persistence_backend,
    )
    app = create_app(WarehouseRuntime(settings))
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    log.info("Smart warehouse exited")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
