"""
Template discovery and marker extraction.

Templates are DOCX files in a single directory. For each one the catalog
reports which data fields it references, derived by scanning the
document XML for ``{{ d.<path> }}`` markers. Results are cached per path
and re-scanned when the file size changes.
"""

from __future__ import annotations

import logging
import re
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from renderer.app.errors import TemplateNotFoundError

logger = logging.getLogger(__name__)


DATA_PREFIX = "d."

_TAG_RE = re.compile(r"<[^>]+>")
_MARKER_RE = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)
_INDEX_RE = re.compile(r"\[[^\]]*\]")
_WHITESPACE_RE = re.compile(r"\s+")
_DOTS_RE = re.compile(r"\.+")


class TemplateInfo(BaseModel):
    name: str
    file: str
    path: str
    size: int
    markers: List[str]
    extracted_at: str

    model_config = ConfigDict(frozen=True)


# ----------------------------------------------------------------------
# Marker scanning
# ----------------------------------------------------------------------

def normalize_marker(expression: str) -> str:
    """
    Reduce a marker expression to its dotted variable path.

    ``" d.users[0].name | upper "`` becomes ``"d.users.name"``.
    """
    path = expression.split("|", 1)[0]
    path = _TAG_RE.sub("", path)
    path = _INDEX_RE.sub("", path)
    path = _WHITESPACE_RE.sub("", path)
    path = _DOTS_RE.sub(".", path)
    return path.strip(".")


def extract_markers(template_path: Path, *, debug_level: int = 0) -> List[str]:
    """
    Return the unique, sorted data fields a DOCX template references.

    Only ``d.``-prefixed markers count; the prefix is removed. An
    unreadable archive yields an empty list.
    """
    found = set()
    try:
        with zipfile.ZipFile(template_path) as archive:
            for entry in archive.namelist():
                if not entry.startswith("word/") or not entry.lower().endswith(".xml"):
                    continue

                text = _TAG_RE.sub("", archive.read(entry).decode("utf-8", errors="ignore"))
                if debug_level >= 2:
                    logger.debug("marker_xml_scan", extra={"entry": entry, "size": len(text)})

                for match in _MARKER_RE.finditer(text):
                    path = normalize_marker(match.group(1))
                    if not path.startswith(DATA_PREFIX):
                        continue
                    field = path[len(DATA_PREFIX):]
                    if field:
                        found.add(field)
                    if debug_level >= 2:
                        logger.debug("marker_found", extra={"entry": entry, "marker": path})

    except (zipfile.BadZipFile, OSError, KeyError) as exc:
        logger.warning(
            "marker_extraction_failed",
            extra={"template_path": str(template_path), "error": str(exc)},
        )
        return []

    markers = sorted(found)
    if debug_level == 1:
        logger.debug(
            "marker_scan_complete",
            extra={"template_path": str(template_path), "markers": markers},
        )
    return markers


# ----------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------

class TemplateCatalog:
    def __init__(
        self,
        template_dir: Path,
        default_template: str,
        *,
        debug_level: int = 0,
    ) -> None:
        self._template_dir = template_dir
        self._default_template = default_template
        self._debug_level = debug_level
        self._cache: Dict[Path, TemplateInfo] = {}

    @property
    def template_dir(self) -> Path:
        return self._template_dir

    @property
    def default_path(self) -> Path:
        return self._template_dir / self._default_template

    def list_templates(self) -> List[TemplateInfo]:
        try:
            files = sorted(
                p for p in self._template_dir.iterdir()
                if p.is_file() and p.suffix.lower() == ".docx"
            )
        except OSError:
            return []
        return [self.describe(p) for p in files]

    def describe(self, template_path: Path) -> TemplateInfo:
        """
        Return template metadata, re-scanning only when the size changed.

        Raises:
            TemplateNotFoundError: the file does not exist.
        """
        size = _file_size(template_path)
        if size is None:
            raise TemplateNotFoundError(f"Template missing: {template_path}")

        cached = self._cache.get(template_path)
        if cached is not None and cached.size == size:
            return cached

        info = TemplateInfo(
            name=_strip_docx(template_path.name),
            file=template_path.name,
            path=str(template_path),
            size=size,
            markers=extract_markers(template_path, debug_level=self._debug_level),
            extracted_at=datetime.now(timezone.utc).isoformat(),
        )
        self._cache[template_path] = info
        return info

    def resolve(self, name: Optional[str]) -> Path:
        """
        Map a template selector to a file in the template directory.

        ``None`` or an empty selector means the default template. The
        ``.docx`` suffix is optional.

        Raises:
            TemplateNotFoundError: unknown or invalid selector.
        """
        if not name:
            return self.default_path

        if "/" in name or "\\" in name or name in {".", ".."}:
            raise TemplateNotFoundError(f"Invalid template name '{name}'")

        file_name = name if name.lower().endswith(".docx") else f"{name}.docx"
        candidate = self._template_dir / file_name
        if not candidate.is_file():
            raise TemplateNotFoundError(f"Template '{name}' not found.")
        return candidate

    def default_template_exists(self) -> bool:
        return self.default_path.is_file()

    def default_template_size(self) -> Optional[int]:
        return _file_size(self.default_path)


def _file_size(path: Path) -> Optional[int]:
    try:
        return path.stat().st_size
    except OSError:
        return None


def _strip_docx(file_name: str) -> str:
    return re.sub(r"\.docx$", "", file_name, flags=re.IGNORECASE)
