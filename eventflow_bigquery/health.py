"""
Health reporting boundary.

The hosting pipeline hands the output a reporter at construction time. Reports
are fire-and-forget: nothing the reporter returns is used.
"""

import logging
from typing import Optional, Protocol

CONTEXT_CONFIGURATION = "Configuration"
CONTEXT_OUTPUT = "Output"


class HealthReporter(Protocol):
    def report_healthy(self, message: Optional[str] = None, context: Optional[str] = None) -> None:
        ...

    def report_warning(self, message: str, context: Optional[str] = None) -> None:
        ...

    def report_problem(self, message: str, context: Optional[str] = None) -> None:
        ...


class LoggingHealthReporter:
    """Health reporter that writes every report to a logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def report_healthy(self, message: Optional[str] = None, context: Optional[str] = None) -> None:
        if message:
            self.logger.info(f"[{context or 'Healthy'}] {message}")

    def report_warning(self, message: str, context: Optional[str] = None) -> None:
        self.logger.warning(f"[{context or 'Warning'}] {message}")

    def report_problem(self, message: str, context: Optional[str] = None) -> None:
        self.logger.error(f"[{context or 'Problem'}] {message}")
