"""
LibreOffice layer management.

This module owns the packaged LibreOffice installation for the lifetime of
the process:

- locating and unpacking the compressed LibreOffice tarball exactly once
- probing the known install layouts for a runnable ``soffice``
- wiring ``soffice`` onto PATH when only ``soffice.bin`` ships

Extraction state is process-wide and one-directional. Concurrent callers
that arrive while extraction is running await the same in-flight operation;
a failed extraction is terminal for the process.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import tarfile
import time
import uuid
import zlib
from enum import Enum
from pathlib import Path
from typing import List, MutableMapping, Optional

import brotli

from renderer.app.config import RendererConfig
from renderer.app.errors import ExtractionError
from renderer.app.services.once import AsyncOnce
from renderer.app.utils.logging_utils import serialize_error

logger = logging.getLogger(__name__)


SOFFICE_NAMES = ("soffice", "soffice.bin")


class ExtractionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    UNAVAILABLE = "unavailable"


def decompress_archive(raw: bytes, archive_path: Path) -> bytes:
    """
    Decompress a LibreOffice tarball according to its suffix.

    Raises:
        ExtractionError: unsupported suffix or corrupt payload.
    """
    suffix = archive_path.suffix.lower()
    try:
        if suffix == ".br":
            return brotli.decompress(raw)
        if suffix == ".gz":
            return gzip.decompress(raw)
    except (brotli.error, OSError, EOFError, zlib.error) as exc:
        raise ExtractionError(
            f"Corrupt LibreOffice archive {archive_path}: {exc}"
        ) from exc

    raise ExtractionError(f"Unsupported LibreOffice archive format: {archive_path}")


class LibreOfficeRuntime:
    """
    Process-scoped owner of the unpacked LibreOffice installation.

    ``environ`` is the environment whose PATH gets rewired; it defaults to
    ``os.environ`` and is injectable for tests.
    """

    def __init__(
        self,
        config: RendererConfig,
        *,
        environ: Optional[MutableMapping[str, str]] = None,
    ) -> None:
        self._config = config
        self._environ = os.environ if environ is None else environ
        self._status = ExtractionStatus.NOT_STARTED
        self._extraction: AsyncOnce[None] = AsyncOnce(
            self._extract, name="libreoffice-extraction"
        )

    @property
    def status(self) -> ExtractionStatus:
        return self._status

    @property
    def is_ready(self) -> bool:
        return self._status is ExtractionStatus.READY

    # ------------------------------------------------------------------
    # Archive extraction
    # ------------------------------------------------------------------

    async def ensure_extracted(self) -> None:
        """
        Make sure the LibreOffice installation is unpacked.

        No-op when conversion is disabled or extraction already succeeded.
        A missing archive is logged and treated as skipped, not failed.

        Raises:
            ExtractionError: the archive is corrupt or unpacking failed.
        """
        if self._config.SKIP_CONVERT:
            return
        if self._status is ExtractionStatus.READY:
            return
        await self._extraction.get()

    def find_archive(self) -> Optional[Path]:
        for candidate in (self._config.LO_ARCHIVE_BR, self._config.LO_ARCHIVE_GZ):
            if candidate.is_file():
                return candidate
        return None

    async def _extract(self) -> None:
        self._status = ExtractionStatus.IN_PROGRESS
        start = time.monotonic()
        archive_path: Optional[Path] = None
        size = 0

        try:
            if self._installed_program_present():
                self.wire_path()
                self._status = ExtractionStatus.READY
                logger.info(
                    "libreoffice_already_extracted",
                    extra={"extract_root": str(self._config.LO_EXTRACT_ROOT)},
                )
                return

            archive_path = self.find_archive()
            if archive_path is None:
                self._status = ExtractionStatus.UNAVAILABLE
                logger.warning(
                    "libreoffice_archive_missing",
                    extra={
                        "candidates": [
                            str(self._config.LO_ARCHIVE_BR),
                            str(self._config.LO_ARCHIVE_GZ),
                        ],
                    },
                )
                return

            size = await asyncio.to_thread(self._unpack_archive, archive_path)

            self.wire_path()
            self._status = ExtractionStatus.READY

            logger.info(
                "libreoffice_extracted",
                extra={
                    "duration_ms": int((time.monotonic() - start) * 1000),
                    "size": size,
                    "archive_path": str(archive_path),
                },
            )

        except Exception as exc:
            self._status = ExtractionStatus.UNAVAILABLE
            logger.error(
                "libreoffice_extraction_failed",
                extra={
                    "duration_ms": int((time.monotonic() - start) * 1000),
                    "size": size,
                    "archive_path": str(archive_path) if archive_path else None,
                    "error": serialize_error(exc, debug=self._config.DEBUG_RENDER),
                },
            )
            if isinstance(exc, ExtractionError):
                raise
            raise ExtractionError(f"LibreOffice extraction failed: {exc}") from exc

    def _unpack_archive(self, archive_path: Path) -> int:
        """
        Decompress ``archive_path`` and unpack it into the extraction root.

        The decompressed tar goes through a scratch file that is removed
        regardless of outcome. Returns the decompressed tar size.
        """
        raw = archive_path.read_bytes()
        tar_bytes = decompress_archive(raw, archive_path)

        extract_root = self._config.LO_EXTRACT_ROOT
        extract_root.mkdir(parents=True, exist_ok=True)
        self._config.SCRATCH_DIR.mkdir(parents=True, exist_ok=True)

        tmp_tar = self._config.SCRATCH_DIR / f"lo-{uuid.uuid4().hex}.tar"
        tmp_tar.write_bytes(tar_bytes)
        try:
            with tarfile.open(tmp_tar, mode="r:") as tar:
                tar.extractall(extract_root, filter="tar")
        except tarfile.TarError as exc:
            raise ExtractionError(
                f"Failed to unpack LibreOffice archive {archive_path}: {exc}"
            ) from exc
        finally:
            try:
                tmp_tar.unlink()
            except OSError:
                logger.debug("scratch_tar_cleanup_failed", extra={"path": str(tmp_tar)})

        return len(tar_bytes)

    def _installed_program_present(self) -> bool:
        program_dir = self._config.install_program_dir
        return any((program_dir / name).exists() for name in SOFFICE_NAMES)

    # ------------------------------------------------------------------
    # Executable discovery
    # ------------------------------------------------------------------

    def program_dir_candidates(self) -> List[Path]:
        return [
            self._config.install_program_dir,
            *self._config.LO_ALTERNATE_PROGRAM_DIRS,
        ]

    def locate_executable(self) -> Optional[Path]:
        """
        Return the first ``soffice`` / ``soffice.bin`` found, or ``None``.

        Probes the extraction root, the alternate install paths and then
        every PATH entry. Never raises.
        """
        try:
            search_path = self._environ.get("PATH", "")
            dirs = [
                *self.program_dir_candidates(),
                *(Path(p) for p in search_path.split(os.pathsep) if p),
            ]
        except Exception:
            return None

        for directory in dirs:
            for name in SOFFICE_NAMES:
                candidate = directory / name
                try:
                    if candidate.exists():
                        return candidate
                except OSError:
                    continue
        return None

    # ------------------------------------------------------------------
    # PATH wiring
    # ------------------------------------------------------------------

    def wire_path(self) -> None:
        """Wire the first existing program directory onto PATH."""
        for program_dir in self.program_dir_candidates():
            if program_dir.is_dir():
                self._prepend_path(program_dir)
                self.wire_executable(program_dir)
                return

    def wire_executable(self, program_dir: Path) -> None:
        """
        Make plain ``soffice`` resolvable when only ``soffice.bin`` ships.

        Creates a symlink (or a shell wrapper when symlinks are refused)
        next to the binary, mirrors it into the scratch bin directory and
        prepends that directory to PATH. Failures are logged and ignored.
        """
        bin_path = program_dir / "soffice.bin"
        script_path = program_dir / "soffice"

        if bin_path.exists() and not script_path.exists():
            try:
                _link_or_wrap(bin_path, script_path)
            except OSError as exc:
                logger.warning(
                    "soffice_wrapper_failed",
                    extra={"script_path": str(script_path), "error": str(exc)},
                )

        scratch_bin = self._config.scratch_bin_dir
        try:
            scratch_bin.mkdir(parents=True, exist_ok=True)
            scratch_soffice = scratch_bin / "soffice"
            if bin_path.exists() and not scratch_soffice.exists():
                try:
                    _link_or_wrap(bin_path, scratch_soffice)
                except OSError as exc:
                    logger.warning(
                        "scratch_bin_soffice_failed",
                        extra={"target": str(bin_path), "error": str(exc)},
                    )
            self._prepend_path(scratch_bin)
        except OSError as exc:
            logger.warning(
                "scratch_bin_prepare_failed",
                extra={"scratch_bin": str(scratch_bin), "error": str(exc)},
            )

    def _prepend_path(self, directory: Path) -> None:
        current = self._environ.get("PATH", "")
        entries = [p for p in current.split(os.pathsep) if p]
        if str(directory) in entries:
            return
        self._environ["PATH"] = os.pathsep.join([str(directory), *entries])


def _link_or_wrap(target: Path, link: Path) -> None:
    try:
        link.symlink_to(target)
        logger.info(
            "soffice_symlink_created",
            extra={"link": str(link), "target": str(target)},
        )
    except FileExistsError:
        return
    except OSError:
        link.write_text(f'#!/bin/sh\nexec "{target}" "$@"\n', encoding="utf-8")
        link.chmod(0o755)
        logger.info("soffice_wrapper_created", extra={"link": str(link)})
