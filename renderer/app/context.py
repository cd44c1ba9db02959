"""
Process-scoped service wiring.

A single ``RendererContext`` owns every stateful collaborator for the
life of the process: extraction state, font environment, template cache
and warmup memo. Route handlers receive it through the ``get_context``
dependency, which tests override.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from renderer.app.config import RendererConfig
from renderer.app.services.conversion import DocumentConverter
from renderer.app.services.fonts import FontEnvironment
from renderer.app.services.libreoffice import LibreOfficeRuntime
from renderer.app.services.template_engine import DocxTemplateEngine, TemplateRenderEngine
from renderer.app.services.templates import TemplateCatalog
from renderer.app.services.warmup import WarmupCoordinator


@dataclass(frozen=True)
class RendererContext:
    config: RendererConfig
    runtime: LibreOfficeRuntime
    fonts: FontEnvironment
    catalog: TemplateCatalog
    engine: TemplateRenderEngine
    converter: DocumentConverter
    warmup: WarmupCoordinator


def build_context(
    config: RendererConfig,
    *,
    engine: TemplateRenderEngine | None = None,
) -> RendererContext:
    runtime = LibreOfficeRuntime(config)
    fonts = FontEnvironment(config)
    catalog = TemplateCatalog(
        config.TEMPLATE_DIR,
        config.DEFAULT_TEMPLATE,
        debug_level=config.DEBUG_MARKERS,
    )
    if engine is None:
        engine = DocxTemplateEngine(
            host=config.UNOSERVER_HOST,
            port=config.UNOSERVER_PORT,
            connect_timeout=config.UNOSERVER_CONNECT_TIMEOUT_SECONDS,
        )
    converter = DocumentConverter(
        config=config,
        engine=engine,
        fonts=fonts,
        locate_executable=runtime.locate_executable,
    )
    warmup = WarmupCoordinator(
        config=config,
        runtime=runtime,
        fonts=fonts,
        catalog=catalog,
    )
    return RendererContext(
        config=config,
        runtime=runtime,
        fonts=fonts,
        catalog=catalog,
        engine=engine,
        converter=converter,
        warmup=warmup,
    )


@lru_cache(maxsize=1)
def get_context() -> RendererContext:
    """Return the cached process context built from the environment."""
    return build_context(RendererConfig.from_env())
