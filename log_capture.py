import logging
from contextlib import ContextDecorator
from typing import Callable, List, Optional, Tuple


class _RunLogHandler(logging.Handler):
    """Collects pipeline messages in order and forwards each one to a callback."""

    def __init__(self, lines: List[str], on_log: Optional[Callable[[str], None]], level: int):
        super().__init__(level=level)
        self.lines = lines
        self.on_log = on_log

    def filter(self, record: logging.LogRecord) -> bool:
        # Pipeline modules log through the root logger; library chatter is skipped.
        return record.name == "root" and super().filter(record)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return
        self.lines.append(message)
        if self.on_log is not None:
            try:
                self.on_log(message)
            except Exception:  # noqa: BLE001
                self.handleError(record)


class RunLogCapture(ContextDecorator):
    """Capture the ordered progress log of a single search run.

    While active, INFO and above messages from the pipeline are appended to
    `lines` and pushed to `on_log`. When the root logger is quieter than the
    capture level it is lowered for the run, and the other root handlers are
    raised to the old threshold so console output keeps its configured level.
    """

    def __init__(self, run_id: Optional[str] = None, on_log: Optional[Callable[[str], None]] = None, level: int = logging.INFO):
        self.run_id = run_id
        self.on_log = on_log
        self.level = level
        self.lines: List[str] = []
        self._handler: Optional[_RunLogHandler] = None
        self._previous_level: Optional[int] = None
        self._raised_handlers: List[Tuple[logging.Handler, int]] = []

    def __enter__(self):
        root = logging.getLogger()
        self._handler = _RunLogHandler(self.lines, self.on_log, self.level)
        root.addHandler(self._handler)
        if root.level > self.level:
            self._previous_level = root.level
            for handler in root.handlers:
                if handler is not self._handler and handler.level < root.level:
                    self._raised_handlers.append((handler, handler.level))
                    handler.setLevel(root.level)
            root.setLevel(self.level)
        logging.debug("RunLogCapture start for run %s", self.run_id)
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc:
            logging.debug("RunLogCapture caught exception: %s", exc)
        logging.debug("RunLogCapture end for run %s", self.run_id)
        root = logging.getLogger()
        if self._handler is not None:
            root.removeHandler(self._handler)
            self._handler = None
        if self._previous_level is not None:
            root.setLevel(self._previous_level)
            self._previous_level = None
        for handler, level in self._raised_handlers:
            handler.setLevel(level)
        self._raised_handlers = []
        return False
