"""
Process warmup.

Warmup runs once per process, ideally at startup, and prepares everything
a render needs: the unpacked LibreOffice installation, the font
environment and the default template. Requests await the same warmup; a
failed warmup is remembered and re-raised to every later request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from pydantic import BaseModel, ConfigDict

from renderer.app.config import RendererConfig
from renderer.app.errors import WarmupError
from renderer.app.services.fonts import FontEnvironment
from renderer.app.services.libreoffice import LibreOfficeRuntime
from renderer.app.services.once import AsyncOnce
from renderer.app.services.template_engine import library_version
from renderer.app.services.templates import TemplateCatalog

logger = logging.getLogger(__name__)


class WarmupDiagnostics(BaseModel):
    """Informational snapshot recorded after a successful warmup."""

    template_size: Optional[int]
    library_version: str
    libreoffice_ready: bool
    soffice_path: Optional[str]
    duration_ms: int

    model_config = ConfigDict(frozen=True)


class WarmupCoordinator:
    def __init__(
        self,
        *,
        config: RendererConfig,
        runtime: LibreOfficeRuntime,
        fonts: FontEnvironment,
        catalog: TemplateCatalog,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._fonts = fonts
        self._catalog = catalog
        self._once: AsyncOnce[WarmupDiagnostics] = AsyncOnce(
            self._perform, name="warmup"
        )
        self._background: Optional[asyncio.Task] = None
        self._diagnostics: Optional[WarmupDiagnostics] = None

    @property
    def diagnostics(self) -> Optional[WarmupDiagnostics]:
        return self._diagnostics

    async def ensure_ready(self) -> WarmupDiagnostics:
        """
        Await the process warmup, starting it if nobody has yet.

        Raises:
            ExtractionError: the LibreOffice archive could not be unpacked.
            WarmupError: LibreOffice or the default template is unavailable.
        """
        return await self._once.get()

    def start(self) -> None:
        """
        Begin warmup in the background without waiting for it.

        A failure is logged here and surfaces again from ``ensure_ready()``.
        """
        if self._background is not None:
            return
        self._background = asyncio.ensure_future(self.ensure_ready())
        self._background.add_done_callback(_log_background_failure)

    async def _perform(self) -> WarmupDiagnostics:
        start = time.monotonic()
        try:
            await self._runtime.ensure_extracted()

            if not self._config.SKIP_CONVERT:
                if not self._runtime.is_ready:
                    raise WarmupError("LibreOffice not available after extraction")
                self._fonts.prepare()

            if not self._catalog.default_template_exists():
                raise WarmupError("Template missing")

            soffice = self._runtime.locate_executable()
            diagnostics = WarmupDiagnostics(
                template_size=self._catalog.default_template_size(),
                library_version=library_version(),
                libreoffice_ready=self._runtime.is_ready,
                soffice_path=str(soffice) if soffice else None,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        except Exception as exc:
            logger.error("warmup_failed", extra={"error": str(exc)})
            raise

        self._diagnostics = diagnostics
        logger.info("warmup_complete", extra=diagnostics.model_dump())
        return diagnostics


def _log_background_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("background_warmup_failed", extra={"error": str(exc)})
