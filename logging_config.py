"""
Logging configuration for the NPR story sync CLI

The "npr_api" logger is shared with the library: modules under npr_api log
through logging.getLogger(__name__), so their records land in the same
rotating file as the CLI's operation records.
"""

import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from config import (
    LOG_LEVEL,
    LOG_FILE,
    LOG_DIR,
    LOG_FORMAT,
    LOG_ROTATION_SIZE,
    LOG_BACKUP_COUNT,
)


class OperationLogger:
    """Structured operation logging for story imports, queue runs and pushes"""

    def __init__(self, name: str = "npr_api", log_dir: Optional[Path] = None):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL.upper()))
        self.log_dir = Path(log_dir or LOG_DIR)

        if not self.logger.handlers:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self._setup_handlers()

    def _setup_handlers(self):
        """Rotating file handler for everything, console for warnings and up"""
        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / LOG_FILE, maxBytes=LOG_ROTATION_SIZE, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(logging.Formatter("%(levelname)s - %(message)s"))

        self.logger.addHandler(file_handler)
        self.logger.addHandler(console_handler)

    def _structured(self, level: int, message: str, key: str, context: Dict[str, Any], **kwargs):
        context = {**context, "timestamp": datetime.now().isoformat()}
        self.logger.log(level, message, extra={"structured": {key: context}}, **kwargs)

    def log_operation_start(self, operation: str, **kwargs):
        """Log the start of an operation with context"""
        self._structured(
            logging.INFO, f"Starting {operation}", "operation", {"name": operation, "context": kwargs}
        )

    def log_operation_end(self, operation: str, success: bool, **kwargs):
        """Log the end of an operation with results"""
        self._structured(
            logging.INFO if success else logging.ERROR,
            f"Completed {operation} - {'SUCCESS' if success else 'FAILED'}",
            "operation",
            {"name": operation, "success": success, "results": kwargs},
        )

    def log_story_import(self, story_id: Optional[str], status: str, message: str = ""):
        """One line per imported story: saved, skipped or error"""
        self._structured(
            logging.ERROR if status == "error" else logging.INFO,
            f"Story {story_id}: {status} {message}".rstrip(),
            "story",
            {"id": story_id, "status": status},
        )

    def log_queue_run(self, stats: Dict[str, int]):
        """Counts from one pass over the story queue"""
        level = logging.WARNING if stats.get("failed") else logging.INFO
        self._structured(
            level,
            f"Queue run: {stats.get('processed', 0)} processed, "
            f"{stats.get('failed', 0)} failed, {stats.get('remaining', 0)} remaining",
            "queue",
            dict(stats),
        )

    def log_error(self, error: Exception, context: Optional[dict] = None):
        """Log errors with full context"""
        self._structured(
            logging.ERROR,
            f"Error: {type(error).__name__}: {error}",
            "error",
            {"type": type(error).__name__, "message": str(error), "context": context or {}},
            exc_info=True,
        )


def get_logger(name: str = "npr_api") -> OperationLogger:
    """Get a configured logger instance"""
    return OperationLogger(name)


# Global logger instance; library modules log under the same namespace
logger = get_logger()
