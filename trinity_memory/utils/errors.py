"""
Error taxonomy shared by the storage clients and memory services.
"""

import logging
from contextlib import contextmanager
from typing import Iterator


class TrinityMemoryError(Exception):
    """Base exception carrying a machine-readable kind alongside the message."""
    kind = 'error'

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


class NotFoundError(TrinityMemoryError):
    """Referenced record does not exist or does not belong to the requesting user."""
    kind = 'not_found'


class ValidationError(TrinityMemoryError):
    """Input rejected before any external call was attempted."""
    kind = 'validation'


class DependencyError(TrinityMemoryError):
    """A catalog, blob, vector or model call failed."""
    kind = 'dependency'


@contextmanager
def best_effort(logger: logging.Logger, action: str) -> Iterator[None]:
    """Run a non-critical side effect, logging and swallowing any failure.

    Args:
        logger: Logger of the calling module
        action: Short description used in the warning
    """
    try:
        yield
    except Exception as e:
        logger.warning(f'Failed to {action}: {e}')
