"""
Error taxonomy for the renderer service.

Every error raised deliberately by the service derives from
``RendererError`` and carries the HTTP status code the request layer
should answer with. Anything else that escapes is reported as a 500.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from renderer.app.services.conversion import ConversionAttempt


class RendererError(RuntimeError):
    """Base class for errors surfaced by the renderer."""

    status_code: int = 500


class RequestError(RendererError):
    """Raised when the request body cannot be interpreted."""

    status_code = 400


class AuthenticationError(RendererError):
    """Raised when the shared password is missing or wrong."""

    status_code = 401


class TemplateNotFoundError(RendererError):
    """Raised when a template selector does not resolve to a file."""

    status_code = 404


class ExtractionError(RendererError):
    """Raised when the LibreOffice archive is corrupt or cannot be unpacked."""


class WarmupError(RendererError):
    """
    Raised when the process cannot serve real requests.

    Either LibreOffice is still unavailable after extraction, or the
    default template artifact is missing.
    """


class SofficeError(RendererError):
    """A single soffice subprocess attempt failed."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class SofficeTimeoutError(SofficeError):
    """A soffice subprocess attempt exceeded its wall-clock bound."""


class ConversionError(RendererError):
    """
    Raised after every conversion strategy has been exhausted.

    The message and ``__cause__`` are taken from the primary error, i.e.
    the failure of the first strategy that was attempted.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: Sequence["ConversionAttempt"] = (),
    ) -> None:
        super().__init__(message)
        self.attempts = tuple(attempts)
