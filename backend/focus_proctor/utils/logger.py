import logging
from typing import Callable, List, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO"):
    """Configure root logging once for the service"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class ErrorChannel:
    """Single error-message channel to the host, de-duplicating repeats"""

    def __init__(self, sink: Optional[Callable[[str], object]] = None, logger: Optional[logging.Logger] = None):
        self.sink = sink
        self.logger = logger or logging.getLogger(__name__)
        self.messages: List[str] = []

    def __call__(self, message: str):
        if message in self.messages:
            return
        self.messages.append(message)
        self.logger.warning(f"⚠️ {message}")
        if self.sink is not None:
            self.sink(message)

    def clear(self):
        self.messages.clear()
