"""observability/ — structured logging."""

from chatbridge.observability.logger import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
