"""
Runtime configuration for the renderer service.

This module centralizes the environment-driven switches that govern the
conversion pipeline: whether LibreOffice is used at all, which conversion
strategies are attempted, where the packaged LibreOffice archive lives and
where scratch artifacts are written.

Configuration is read once per process and is immutable afterwards.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, Field, SecretStr, field_validator


PACKAGE_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"


class RendererConfig(BaseModel):
    """
    Runtime configuration for the renderer service.

    Field names mirror the environment variables the service has always
    honoured (``SKIP_CONVERT``, ``ALWAYS_SOFFICE``, ``DEBUG_RENDER``).
    Deployment paths use the ``RENDERER_`` prefix.
    """

    # ------------------------------------------------------------------
    # Conversion switches
    # ------------------------------------------------------------------

    SKIP_CONVERT: bool = Field(
        False,
        description=(
            "Bypass LibreOffice entirely and return a placeholder PDF. "
            "Used for unit tests and local runs without an office suite."
        ),
    )

    ALWAYS_SOFFICE: bool = Field(
        False,
        description=(
            "Skip the library-mediated conversion attempts and go straight "
            "to the direct soffice subprocess path."
        ),
    )

    DEBUG_RENDER: bool = Field(
        False,
        description=(
            "Include stack traces and subprocess stdout/stderr in logs "
            "and error responses"
        ),
    )

    DEBUG_MARKERS: int = Field(
        0,
        description="Template marker scan debug level (0 = off, 1, 2)",
    )

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    BASIC_AUTH_PASSWORD: Optional[SecretStr] = Field(
        None,
        description="Shared password guarding the endpoint. Unset disables auth.",
    )

    BUILT_AT: Optional[str] = Field(
        None,
        description="Build timestamp shown on the input form",
    )

    # ------------------------------------------------------------------
    # LibreOffice layer
    # ------------------------------------------------------------------

    LO_ARCHIVE_BR: Path = Field(
        Path("/opt/lo.tar.br"),
        description="Brotli-compressed LibreOffice tarball (preferred)",
    )

    LO_ARCHIVE_GZ: Path = Field(
        Path("/opt/lo.tar.gz"),
        description="Gzip-compressed LibreOffice tarball",
    )

    LO_EXTRACT_ROOT: Path = Field(
        Path("/tmp/libreoffice"),
        description="Extraction root for the unpacked LibreOffice installation",
    )

    LO_ALTERNATE_PROGRAM_DIRS: Tuple[Path, ...] = Field(
        (Path("/opt/instdir/program"), Path("/opt/libreoffice/program")),
        description="Well-known install locations probed after the extraction root",
    )

    FONT_DIRS: Tuple[Path, ...] = Field(
        (
            Path("/opt/libreoffice/share/fonts"),
            Path("/opt/fonts"),
            Path("/usr/share/fonts"),
        ),
        description="Font directories offered to fontconfig when they exist",
    )

    SCRATCH_DIR: Path = Field(
        Path("/tmp"),
        description="Writable scratch root (profile, fontconfig, bin, render files)",
    )

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    TEMPLATE_DIR: Path = Field(
        PACKAGE_TEMPLATE_DIR,
        description="Directory holding the DOCX templates",
    )

    DEFAULT_TEMPLATE: str = Field(
        "letter-template.docx",
        description="Template used when the request does not select one",
    )

    # ------------------------------------------------------------------
    # Timeouts and engine endpoint
    # ------------------------------------------------------------------

    SOFFICE_TIMEOUT_SECONDS: float = Field(
        45.0,
        gt=0,
        description="Wall-clock bound for each soffice subprocess attempt",
    )

    LIBRARY_TIMEOUT_SECONDS: float = Field(
        20.0,
        gt=0,
        description="Wall-clock bound for each library-mediated conversion",
    )

    UNOSERVER_HOST: str = Field(
        "127.0.0.1",
        description="Host of the unoserver instance used for library conversions",
    )

    UNOSERVER_PORT: int = Field(
        2003,
        ge=1,
        le=65535,
        description="Port of the unoserver instance",
    )

    UNOSERVER_CONNECT_TIMEOUT_SECONDS: float = Field(
        1.0,
        gt=0,
        description="TCP connect bound used to detect an unreachable unoserver",
    )

    # ------------------------------------------------------------------
    # Validators (Pydantic v2)
    # ------------------------------------------------------------------

    @field_validator("DEBUG_MARKERS")
    @classmethod
    def validate_debug_markers(cls, v: int) -> int:
        if v not in {0, 1, 2}:
            raise ValueError(
                f"Unsupported DEBUG_MARKERS level {v}. Allowed values: [0, 1, 2]"
            )
        return v

    @field_validator("DEFAULT_TEMPLATE")
    @classmethod
    def validate_default_template(cls, v: str) -> str:
        if not v or "/" in v or "\\" in v:
            raise ValueError(
                f"DEFAULT_TEMPLATE must be a bare file name, got '{v}'"
            )
        return v

    # ------------------------------------------------------------------
    # Derived locations
    # ------------------------------------------------------------------

    @property
    def install_program_dir(self) -> Path:
        return self.LO_EXTRACT_ROOT / "instdir" / "program"

    @property
    def install_font_dir(self) -> Path:
        return self.LO_EXTRACT_ROOT / "instdir" / "share" / "fonts"

    @property
    def scratch_bin_dir(self) -> Path:
        return self.SCRATCH_DIR / "bin"

    @property
    def profile_dir(self) -> Path:
        return self.SCRATCH_DIR / "lo-profile"

    @property
    def fontconfig_dir(self) -> Path:
        return self.SCRATCH_DIR / "fontconfig"

    @property
    def fontconfig_cache_dir(self) -> Path:
        return self.SCRATCH_DIR / "fontconfig-cache"

    @property
    def scratch_fonts_dir(self) -> Path:
        return self.SCRATCH_DIR / "fonts"

    @property
    def default_template_path(self) -> Path:
        return self.TEMPLATE_DIR / self.DEFAULT_TEMPLATE

    @property
    def auth_enabled(self) -> bool:
        return bool(
            self.BASIC_AUTH_PASSWORD
            and self.BASIC_AUTH_PASSWORD.get_secret_value()
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> "RendererConfig":
        """
        Load configuration from environment variables.

        Unset variables fall back to the field defaults.
        """

        def env_bool(name: str, default: bool) -> bool:
            raw = os.getenv(name)
            if raw is None:
                return default
            return raw.strip().lower() in {"1", "true", "yes", "on"}

        def env_paths(name: str) -> Optional[Tuple[Path, ...]]:
            raw = os.getenv(name)
            if raw is None:
                return None
            return tuple(Path(p) for p in raw.split(os.pathsep) if p)

        values = {
            "SKIP_CONVERT": env_bool("SKIP_CONVERT", False),
            "ALWAYS_SOFFICE": env_bool("ALWAYS_SOFFICE", False),
            "DEBUG_RENDER": env_bool("DEBUG_RENDER", False),
            "DEBUG_MARKERS": os.getenv("DEBUG_MARKERS") or "0",
            "BASIC_AUTH_PASSWORD": os.getenv("BASIC_AUTH_PASSWORD") or None,
            "BUILT_AT": os.getenv("BUILT_AT") or None,
        }

        optional = {
            "LO_ARCHIVE_BR": os.getenv("RENDERER_LO_ARCHIVE_BR"),
            "LO_ARCHIVE_GZ": os.getenv("RENDERER_LO_ARCHIVE_GZ"),
            "LO_EXTRACT_ROOT": os.getenv("RENDERER_LO_EXTRACT_ROOT"),
            "LO_ALTERNATE_PROGRAM_DIRS": env_paths("RENDERER_LO_PROGRAM_DIRS"),
            "FONT_DIRS": env_paths("RENDERER_FONT_DIRS"),
            "SCRATCH_DIR": os.getenv("RENDERER_SCRATCH_DIR"),
            "TEMPLATE_DIR": os.getenv("RENDERER_TEMPLATE_DIR"),
            "DEFAULT_TEMPLATE": os.getenv("RENDERER_DEFAULT_TEMPLATE"),
            "SOFFICE_TIMEOUT_SECONDS": os.getenv(
                "RENDERER_SOFFICE_TIMEOUT_SECONDS"
            ),
            "LIBRARY_TIMEOUT_SECONDS": os.getenv(
                "RENDERER_LIBRARY_TIMEOUT_SECONDS"
            ),
            "UNOSERVER_HOST": os.getenv("RENDERER_UNOSERVER_HOST"),
            "UNOSERVER_PORT": os.getenv("RENDERER_UNOSERVER_PORT"),
            "UNOSERVER_CONNECT_TIMEOUT_SECONDS": os.getenv(
                "RENDERER_UNOSERVER_CONNECT_TIMEOUT_SECONDS"
            ),
        }
        values.update({k: v for k, v in optional.items() if v is not None})

        return cls(**values)

    model_config = {
        "frozen": True,
    }
