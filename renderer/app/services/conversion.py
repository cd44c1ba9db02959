"""
PDF conversion pipeline.

This module turns populated template data into a PDF by trying a fixed,
ordered sequence of conversion strategies and stopping at the first one
that produces a document:

    1. library-mediated export, generic ``pdf`` filter
    2. library-mediated export, ``pdf:writer_pdf_Export`` filter
    3. direct ``soffice`` subprocess on an intermediate DOCX, trying four
       export filter spellings in turn

Strategies are tried sequentially so later (more expensive) strategies
cost nothing unless earlier ones fail. Failures are recorded as structured
attempts rather than raised; if every strategy fails, ``ConversionError``
is raised carrying the *primary* error, i.e. the failure of the first
strategy that was attempted.

Scratch files written for the subprocess path are removed on every exit
path. Cleanup failures are logged and never propagated.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from pydantic import BaseModel, ConfigDict

from renderer.app.config import RendererConfig
from renderer.app.errors import ConversionError, SofficeError, SofficeTimeoutError
from renderer.app.services.fonts import FontEnvironment
from renderer.app.services.template_engine import TemplateRenderEngine
from renderer.app.utils.logging_utils import serialize_error

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Strategy catalogue
# ----------------------------------------------------------------------

LIBRARY_STRATEGIES: Tuple[str, ...] = (
    "pdf",
    "pdf:writer_pdf_Export",
)

# Ordered from most standard to most obscure; the spellings differ across
# LibreOffice releases.
SUBPROCESS_FILTERS: Tuple[str, ...] = (
    "pdf",
    "pdf:writer_pdf_Export",
    "pdf:writer_pdf_export",
    "pdf:writer_web_pdf_Export",
)

STRATEGY_LIBRARY = "library"
STRATEGY_SUBPROCESS = "soffice"


# Byte-stable single page document returned when conversion is disabled.
PLACEHOLDER_PDF = (
    b"%PDF-1.4\n"
    b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
    b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
    b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 200 200] "
    b"/Resources << /Font << /F1 5 0 R >> >> /Contents 4 0 R >>\nendobj\n"
    b"4 0 obj\n<< /Length 45 >>\nstream\n"
    b"BT /F1 12 Tf 10 100 Td (Local Test PDF) Tj ET\n"
    b"endstream\nendobj\n"
    b"5 0 obj\n<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>\nendobj\n"
    b"xref\n"
    b"0 6\n"
    b"0000000000 65535 f \n"
    b"0000000009 00000 n \n"
    b"0000000058 00000 n \n"
    b"0000000115 00000 n \n"
    b"0000000241 00000 n \n"
    b"0000000336 00000 n \n"
    b"trailer\n<< /Size 6 /Root 1 0 R >>\n"
    b"startxref\n406\n"
    b"%%EOF\n"
)


# ----------------------------------------------------------------------
# Attempt records
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ConversionAttempt:
    """
    Outcome of one conversion strategy.

    Exactly one of ``output`` and ``error`` is set. Attempts live only for
    the duration of a render call and are never persisted.
    """

    strategy: str
    filter: str
    arguments: Tuple[str, ...]
    timeout_seconds: Optional[float]
    duration_ms: int
    output: Optional[bytes] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.output is not None

    @property
    def engine_missing(self) -> bool:
        return is_engine_missing(self.error)


def is_engine_missing(exc: Optional[BaseException]) -> bool:
    """True when a failure means the engine could not be reached at all."""
    if exc is None:
        return False
    if isinstance(exc, (FileNotFoundError, ConnectionRefusedError)):
        return True
    return getattr(exc, "errno", None) in {errno.ENOENT, errno.ECONNREFUSED}


# ----------------------------------------------------------------------
# soffice subprocess
# ----------------------------------------------------------------------

class SofficeResult(BaseModel):
    returncode: int
    stdout: str = ""
    stderr: str = ""

    model_config = ConfigDict(frozen=True)


class SofficeRunner(Protocol):
    def __call__(
        self,
        command: Sequence[str],
        *,
        env: Mapping[str, str],
        timeout: float,
    ) -> Awaitable[SofficeResult]:
        ...


async def run_soffice(
    command: Sequence[str],
    *,
    env: Mapping[str, str],
    timeout: float,
) -> SofficeResult:
    """
    Run soffice and collect its output.

    The process is killed when ``timeout`` elapses.

    Raises:
        SofficeTimeoutError: the process did not exit in time.
        OSError: the executable could not be spawned.
    """
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env),
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise SofficeTimeoutError(
            f"soffice timed out after {timeout:g}s",
            returncode=process.returncode,
        )

    return SofficeResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="ignore"),
        stderr=stderr.decode("utf-8", errors="ignore"),
    )


def build_soffice_command(
    executable: Path,
    *,
    convert_filter: str,
    profile_dir: Path,
    outdir: Path,
    input_path: Path,
) -> List[str]:
    return [
        str(executable),
        "--headless",
        "--nologo",
        "--nolockcheck",
        "--nofirststartwizard",
        "--norestore",
        f"-env:UserInstallation=file://{profile_dir}",
        "--convert-to",
        convert_filter,
        "--outdir",
        str(outdir),
        str(input_path),
    ]


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------

class DocumentConverter:
    """
    Conversion orchestrator.

    Collaborators are injected so each pathway can be replaced in tests:
    the template engine, the executable locator and the soffice runner.
    """

    def __init__(
        self,
        *,
        config: RendererConfig,
        engine: TemplateRenderEngine,
        fonts: FontEnvironment,
        locate_executable: Callable[[], Optional[Path]],
        runner: SofficeRunner = run_soffice,
        environ: Optional[MutableMapping[str, str]] = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._fonts = fonts
        self._locate_executable = locate_executable
        self._runner = runner
        self._environ = os.environ if environ is None else environ

    async def render_document(
        self,
        data: Mapping[str, Any],
        template: Optional[Path] = None,
    ) -> bytes:
        """
        Render ``data`` into ``template`` and return PDF bytes.

        Raises:
            ConversionError: every strategy failed; the message and cause
                are the primary (first) failure.
        """
        if self._config.SKIP_CONVERT:
            return PLACEHOLDER_PDF

        template_path = template or self._config.default_template_path

        self._fonts.prepare()
        executable = self._locate_executable()
        if executable is None:
            logger.warning(
                "soffice_not_found",
                extra={"search_path": self._environ.get("PATH", "")},
            )

        attempts: List[ConversionAttempt] = []

        if not self._config.ALWAYS_SOFFICE:
            for convert_filter in LIBRARY_STRATEGIES:
                attempt = await self._library_attempt(
                    template_path, data, convert_filter
                )
                attempts.append(attempt)
                if attempt.succeeded:
                    if convert_filter != LIBRARY_STRATEGIES[0]:
                        logger.info(
                            "library_conversion_fallback_succeeded",
                            extra={"convert_filter": convert_filter},
                        )
                    return attempt.output

        return await self._subprocess_fallback(
            template_path, data, executable, attempts
        )

    # ------------------------------------------------------------------
    # Library-mediated strategies
    # ------------------------------------------------------------------

    async def _library_attempt(
        self,
        template_path: Path,
        data: Mapping[str, Any],
        convert_filter: str,
    ) -> ConversionAttempt:
        timeout = self._config.LIBRARY_TIMEOUT_SECONDS
        start = time.monotonic()
        try:
            output = await asyncio.wait_for(
                self._engine.render(template_path, data, convert_to=convert_filter),
                timeout,
            )
        except Exception as exc:
            attempt = ConversionAttempt(
                strategy=STRATEGY_LIBRARY,
                filter=convert_filter,
                arguments=(str(template_path), convert_filter),
                timeout_seconds=timeout,
                duration_ms=_elapsed_ms(start),
                error=exc,
            )
            event = (
                "library_conversion_engine_missing"
                if attempt.engine_missing
                else "library_conversion_failed"
            )
            logger.warning(
                event,
                extra={
                    "convert_filter": convert_filter,
                    "duration_ms": attempt.duration_ms,
                    "search_path": self._environ.get("PATH", ""),
                    "error": serialize_error(exc, debug=self._config.DEBUG_RENDER),
                },
            )
            return attempt

        return ConversionAttempt(
            strategy=STRATEGY_LIBRARY,
            filter=convert_filter,
            arguments=(str(template_path), convert_filter),
            timeout_seconds=timeout,
            duration_ms=_elapsed_ms(start),
            output=output,
        )

    # ------------------------------------------------------------------
    # Direct soffice fallback
    # ------------------------------------------------------------------

    async def _subprocess_fallback(
        self,
        template_path: Path,
        data: Mapping[str, Any],
        executable: Optional[Path],
        attempts: List[ConversionAttempt],
    ) -> bytes:
        primary_error = _first_error(attempts)

        if executable is None:
            raise _conversion_error(
                primary_error
                or FileNotFoundError("Fallback requested but soffice binary not found"),
                attempts,
            )

        try:
            document = await self._engine.render(template_path, data)
        except Exception as exc:
            logger.error(
                "fallback_docx_generation_failed",
                extra={"error": serialize_error(exc, debug=self._config.DEBUG_RENDER)},
            )
            raise _conversion_error(primary_error or exc, attempts)

        logger.info("fallback_docx_generated", extra={"size": len(document)})

        scratch = self._config.SCRATCH_DIR
        scratch.mkdir(parents=True, exist_ok=True)
        profile_dir = self._config.profile_dir
        profile_dir.mkdir(parents=True, exist_ok=True)

        base = f"render-{int(time.time() * 1000)}-{uuid.uuid4().hex[:10]}"
        input_path = scratch / f"{base}.docx"
        output_path = scratch / f"{base}.pdf"

        env = dict(self._environ)
        env["HOME"] = str(scratch)
        env.update(self._fonts.subprocess_overrides())

        last_error: Optional[BaseException] = None
        try:
            input_path.write_bytes(document)

            for convert_filter in SUBPROCESS_FILTERS:
                _remove_quietly(output_path)
                attempt = await self._soffice_attempt(
                    executable,
                    convert_filter,
                    env=env,
                    profile_dir=profile_dir,
                    outdir=scratch,
                    input_path=input_path,
                    output_path=output_path,
                )
                attempts.append(attempt)
                if attempt.succeeded:
                    return attempt.output
                last_error = attempt.error
        finally:
            _remove_quietly(input_path)
            _remove_quietly(output_path)

        raise _conversion_error(
            primary_error
            or last_error
            or SofficeError("All fallback soffice attempts failed"),
            attempts,
        )

    async def _soffice_attempt(
        self,
        executable: Path,
        convert_filter: str,
        *,
        env: Mapping[str, str],
        profile_dir: Path,
        outdir: Path,
        input_path: Path,
        output_path: Path,
    ) -> ConversionAttempt:
        command = build_soffice_command(
            executable,
            convert_filter=convert_filter,
            profile_dir=profile_dir,
            outdir=outdir,
            input_path=input_path,
        )
        timeout = self._config.SOFFICE_TIMEOUT_SECONDS
        debug = self._config.DEBUG_RENDER
        start = time.monotonic()

        try:
            result = await self._runner(command, env=env, timeout=timeout)

            logger.info(
                "fallback_soffice_executed",
                extra={
                    "convert_filter": convert_filter,
                    "duration_ms": _elapsed_ms(start),
                    "returncode": result.returncode,
                    "stdout": result.stdout if debug else None,
                    "stderr": result.stderr if debug else None,
                },
            )

            if result.returncode != 0:
                raise SofficeError(
                    f"soffice exited with status {result.returncode}",
                    returncode=result.returncode,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            if not output_path.exists():
                raise SofficeError("PDF output missing after soffice conversion")

            output = output_path.read_bytes()

        except Exception as exc:
            attempt = ConversionAttempt(
                strategy=STRATEGY_SUBPROCESS,
                filter=convert_filter,
                arguments=tuple(command),
                timeout_seconds=timeout,
                duration_ms=_elapsed_ms(start),
                error=exc,
            )
            logger.warning(
                "fallback_soffice_attempt_failed",
                extra={
                    "convert_filter": convert_filter,
                    "duration_ms": attempt.duration_ms,
                    "executable": str(executable),
                    "search_path": env.get("PATH", ""),
                    "error": serialize_error(exc, debug=debug),
                    "stderr": getattr(exc, "stderr", None) if debug else None,
                },
            )
            return attempt

        return ConversionAttempt(
            strategy=STRATEGY_SUBPROCESS,
            filter=convert_filter,
            arguments=tuple(command),
            timeout_seconds=timeout,
            duration_ms=_elapsed_ms(start),
            output=output,
        )


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _first_error(attempts: Sequence[ConversionAttempt]) -> Optional[BaseException]:
    for attempt in attempts:
        if attempt.error is not None:
            return attempt.error
    return None


def _conversion_error(
    cause: BaseException,
    attempts: Sequence[ConversionAttempt],
) -> ConversionError:
    error = ConversionError(
        str(cause) or type(cause).__name__,
        attempts=attempts,
    )
    error.__cause__ = cause
    return error


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.debug(
            "scratch_cleanup_failed",
            extra={"path": str(path), "error": str(exc)},
        )
