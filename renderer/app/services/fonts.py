"""
Fontconfig preparation for LibreOffice.

LibreOffice runs as an unprivileged process, frequently without a home
directory and with a read-only filesystem outside the scratch root. This
module writes a minimal ``fonts.conf`` into scratch space and points the
fontconfig / XDG environment variables at it, once per process.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, MutableMapping, Optional

from jinja2 import Environment, StrictUndefined

from renderer.app.config import RendererConfig

logger = logging.getLogger(__name__)


_FONTS_CONF = Environment(
    autoescape=True,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
).from_string(
    """<?xml version="1.0"?>
<!DOCTYPE fontconfig SYSTEM "fonts.dtd">
<fontconfig>
{%- for dir in font_dirs %}
  <dir>{{ dir }}</dir>
{%- endfor %}
  <dir>{{ scratch_fonts_dir }}</dir>
  <cachedir>{{ cache_dir }}</cachedir>
  <config></config>
</fontconfig>
"""
)


class FontConfigStatus(str, Enum):
    NOT_PREPARED = "not_prepared"
    PREPARED = "prepared"


def render_fonts_conf(
    font_dirs: List[Path],
    *,
    scratch_fonts_dir: Path,
    cache_dir: Path,
) -> str:
    return _FONTS_CONF.render(
        font_dirs=[str(d) for d in font_dirs],
        scratch_fonts_dir=str(scratch_fonts_dir),
        cache_dir=str(cache_dir),
    )


class FontEnvironment:
    """
    Process-scoped fontconfig state.

    ``prepare()`` never raises. A failed preparation is logged and leaves
    the status at NOT_PREPARED, so conversion proceeds with built-in fonts
    and the next call tries again.
    """

    def __init__(
        self,
        config: RendererConfig,
        *,
        environ: Optional[MutableMapping[str, str]] = None,
    ) -> None:
        self._config = config
        self._environ = os.environ if environ is None else environ
        self._status = FontConfigStatus.NOT_PREPARED

    @property
    def status(self) -> FontConfigStatus:
        return self._status

    @property
    def conf_path(self) -> Path:
        return self._config.fontconfig_dir / "fonts.conf"

    def candidate_dirs(self) -> List[Path]:
        return [self._config.install_font_dir, *self._config.FONT_DIRS]

    def prepare(self) -> None:
        if self._status is FontConfigStatus.PREPARED:
            return

        try:
            font_dirs = [d for d in self.candidate_dirs() if _is_dir(d)]

            config_dir = self._config.fontconfig_dir
            cache_dir = self._config.fontconfig_cache_dir
            scratch_fonts = self._config.scratch_fonts_dir

            for directory in (config_dir, cache_dir, scratch_fonts):
                directory.mkdir(parents=True, exist_ok=True)

            conf_path = self.conf_path
            conf_path.write_text(
                render_fonts_conf(
                    font_dirs,
                    scratch_fonts_dir=scratch_fonts,
                    cache_dir=cache_dir,
                ),
                encoding="utf-8",
            )

            scratch_root = str(self._config.SCRATCH_DIR)
            self._environ["FONTCONFIG_PATH"] = str(config_dir)
            self._environ["FONTCONFIG_FILE"] = str(conf_path)
            self._environ["XDG_CACHE_HOME"] = scratch_root
            self._environ["XDG_CONFIG_HOME"] = scratch_root
            if not self._environ.get("HOME"):
                self._environ["HOME"] = scratch_root

            self._status = FontConfigStatus.PREPARED

            logger.info(
                "fontconfig_prepared",
                extra={
                    "conf_path": str(conf_path),
                    "dirs": [str(d) for d in font_dirs],
                    "cache_dir": str(cache_dir),
                },
            )

        except Exception as exc:
            logger.warning(
                "fontconfig_preparation_failed",
                extra={"error": str(exc)},
            )

    def subprocess_overrides(self) -> Dict[str, str]:
        """Fontconfig variables to pass to a child soffice process."""
        return {
            key: self._environ[key]
            for key in ("FONTCONFIG_PATH", "FONTCONFIG_FILE")
            if self._environ.get(key)
        }


def _is_dir(path: Path) -> bool:
    try:
        return path.is_dir()
    except OSError:
        return False
