import asyncio

import pytest

from renderer.app.errors import ExtractionError, WarmupError
from renderer.app.services.fonts import FontConfigStatus, FontEnvironment
from renderer.app.services.libreoffice import LibreOfficeRuntime
from renderer.app.services.templates import TemplateCatalog
from renderer.app.services.warmup import WarmupCoordinator
from renderer.tests.fixtures.factories import install_program, make_config

pytestmark = pytest.mark.anyio


def _coordinator(tmp_path, **overrides):
    config = make_config(tmp_path, **overrides)
    environ = {"PATH": ""}
    runtime = LibreOfficeRuntime(config, environ=environ)
    fonts = FontEnvironment(config, environ=environ)
    catalog = TemplateCatalog(config.TEMPLATE_DIR, config.DEFAULT_TEMPLATE)
    coordinator = WarmupCoordinator(
        config=config,
        runtime=runtime,
        fonts=fonts,
        catalog=catalog,
    )
    return coordinator, config, runtime, fonts


async def test_skip_convert_warmup_only_checks_the_template(tmp_path):
    coordinator, config, runtime, fonts = _coordinator(tmp_path, SKIP_CONVERT=True)

    diagnostics = await coordinator.ensure_ready()

    assert diagnostics.template_size == config.default_template_path.stat().st_size
    assert diagnostics.libreoffice_ready is False
    assert diagnostics.soffice_path is None
    assert diagnostics.library_version
    assert fonts.status is FontConfigStatus.NOT_PREPARED
    assert coordinator.diagnostics is diagnostics


async def test_warmup_with_installed_libreoffice(tmp_path):
    coordinator, config, runtime, fonts = _coordinator(tmp_path)
    install_program(config.install_program_dir)

    diagnostics = await coordinator.ensure_ready()

    assert runtime.is_ready
    assert fonts.status is FontConfigStatus.PREPARED
    assert diagnostics.libreoffice_ready is True
    assert diagnostics.soffice_path == str(config.install_program_dir / "soffice")


async def test_warmup_runs_once_for_concurrent_requests(tmp_path, monkeypatch):
    coordinator, config, runtime, _ = _coordinator(tmp_path)
    install_program(config.install_program_dir)

    calls = 0
    original = runtime.ensure_extracted

    async def counting():
        nonlocal calls
        calls += 1
        await original()

    monkeypatch.setattr(runtime, "ensure_extracted", counting)

    results = await asyncio.gather(*(coordinator.ensure_ready() for _ in range(6)))

    assert calls == 1
    assert len({id(r) for r in results}) == 1


async def test_unavailable_libreoffice_fails_warmup_for_every_request(tmp_path):
    coordinator, _, _, _ = _coordinator(tmp_path)

    with pytest.raises(WarmupError, match="LibreOffice not available after extraction") as first:
        await coordinator.ensure_ready()
    with pytest.raises(WarmupError) as second:
        await coordinator.ensure_ready()

    assert second.value is first.value


async def test_corrupt_archive_surfaces_extraction_error(tmp_path):
    coordinator, config, _, _ = _coordinator(tmp_path)
    config.LO_ARCHIVE_GZ.parent.mkdir(parents=True)
    config.LO_ARCHIVE_GZ.write_bytes(b"garbage")

    with pytest.raises(ExtractionError):
        await coordinator.ensure_ready()


async def test_missing_template_fails_warmup(tmp_path):
    coordinator, _, _, _ = _coordinator(
        tmp_path,
        SKIP_CONVERT=True,
        TEMPLATE_DIR=tmp_path / "no-templates",
    )

    with pytest.raises(WarmupError, match="Template missing"):
        await coordinator.ensure_ready()


async def test_background_start_is_awaited_by_later_requests(tmp_path):
    coordinator, _, _, _ = _coordinator(tmp_path, SKIP_CONVERT=True)

    coordinator.start()
    coordinator.start()
    diagnostics = await coordinator.ensure_ready()

    assert coordinator.diagnostics is diagnostics


async def test_background_failure_resurfaces_on_request(tmp_path):
    coordinator, _, _, _ = _coordinator(tmp_path)

    coordinator.start()
    await asyncio.sleep(0.05)

    with pytest.raises(WarmupError):
        await coordinator.ensure_ready()
