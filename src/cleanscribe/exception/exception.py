from __future__ import annotations

import traceback
from dataclasses import dataclass
from typing import Optional


@dataclass
class CleanScribeError(Exception):
    """
    Base exception for cleanscribe.

    Adds optional context so a fatal run says which directory, tool or
    file it was looking at.
    """
    message: str
    cause: Optional[BaseException] = None
    context: Optional[dict] = None

    def __str__(self) -> str:
        ctx = f" | context={self.context}" if self.context else ""
        if self.cause:
            return f"{self.message}{ctx} | cause={repr(self.cause)}"
        return f"{self.message}{ctx}"


class ConfigurationError(CleanScribeError):
    """Invalid YAML / CLI settings (bad extension, jobs < 1, unknown mode)."""


class EnvironmentCheckError(CleanScribeError):
    """Missing external tool or credential, detected before any dispatch."""


class NamingCollisionError(CleanScribeError):
    """Two source files map to the same clean artifact name."""


class ContainerPathError(CleanScribeError):
    """A host path cannot be reached through the /work mount."""


def wrap_exception(message: str, exc: BaseException, context: Optional[dict] = None) -> CleanScribeError:
    """
    Helper to wrap any exception with a CleanScribeError, preserving traceback.
    """
    err = CleanScribeError(message=message, cause=exc, context=context)
    err.__cause__ = exc
    return err


def format_traceback(exc: BaseException) -> str:
    """
    Convert an exception traceback to string.
    """
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
