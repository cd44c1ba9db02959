import pytest

from renderer.app.config import PACKAGE_TEMPLATE_DIR
from renderer.app.errors import TemplateNotFoundError
from renderer.app.services.templates import (
    TemplateCatalog,
    extract_markers,
    normalize_marker,
)
from renderer.tests.fixtures.factories import make_docx_template


BUNDLED_MARKERS = [
    "address_line_1",
    "address_line_2",
    "address_line_3",
    "address_line_4",
    "address_line_5",
    "address_line_6",
    "address_line_7",
    "example",
    "firstName",
    "fullName",
    "generatedAt",
    "lastName",
    "nhsNumber",
]


# ------------------------------------------------------------------
# Marker extraction
# ------------------------------------------------------------------

def test_bundled_template_markers():
    markers = extract_markers(PACKAGE_TEMPLATE_DIR / "letter-template.docx")
    assert markers == BUNDLED_MARKERS


def test_markers_split_across_runs_are_reassembled(tmp_path):
    template = make_docx_template(
        tmp_path / "split.docx",
        [
            ["Dear {{ d.", "user", ".name }}"],
            "{{ d.total | round(2) }}",
            "{{ d.items[0].label }}",
            "{{ other.value }}",
            "{{ d.user.name }}",
        ],
    )

    assert extract_markers(template) == ["items.label", "total", "user.name"]


def test_unreadable_archive_yields_no_markers(tmp_path):
    broken = tmp_path / "broken.docx"
    broken.write_bytes(b"not a zip archive")

    assert extract_markers(broken) == []


@pytest.mark.parametrize(
    "expression, expected",
    [
        (" d.name ", "d.name"),
        ("d.users[0].name", "d.users.name"),
        ("d..a.", "d.a"),
        ("d.total|round", "d.total"),
        ("d.<w:r>na</w:r>me", "d.name"),
    ],
)
def test_normalize_marker(expression, expected):
    assert normalize_marker(expression) == expected


# ------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------

def test_list_templates_reports_every_docx(tmp_path):
    make_docx_template(tmp_path / "b-letter.docx", ["{{ d.b }}"])
    make_docx_template(tmp_path / "a-letter.docx", ["{{ d.a }}"])
    (tmp_path / "notes.txt").write_text("ignored")

    catalog = TemplateCatalog(tmp_path, "a-letter.docx")
    templates = catalog.list_templates()

    assert [t.file for t in templates] == ["a-letter.docx", "b-letter.docx"]
    assert [t.name for t in templates] == ["a-letter", "b-letter"]
    assert templates[0].markers == ["a"]
    assert templates[0].size == (tmp_path / "a-letter.docx").stat().st_size


def test_list_templates_on_missing_directory_is_empty(tmp_path):
    catalog = TemplateCatalog(tmp_path / "missing", "letter.docx")
    assert catalog.list_templates() == []


def test_describe_is_cached_until_size_changes(tmp_path):
    path = make_docx_template(tmp_path / "letter.docx", ["{{ d.first }}"])
    catalog = TemplateCatalog(tmp_path, "letter.docx")

    first = catalog.describe(path)
    assert catalog.describe(path) is first

    make_docx_template(path, ["{{ d.first }}", "{{ d.second }} with more text"])
    refreshed = catalog.describe(path)

    assert refreshed is not first
    assert refreshed.markers == ["first", "second"]


def test_describe_missing_template_raises(tmp_path):
    catalog = TemplateCatalog(tmp_path, "letter.docx")

    with pytest.raises(TemplateNotFoundError):
        catalog.describe(tmp_path / "non-existent.docx")


def test_resolve_selectors(tmp_path):
    path = make_docx_template(tmp_path / "letter.docx", ["{{ d.a }}"])
    catalog = TemplateCatalog(tmp_path, "letter.docx")

    assert catalog.resolve(None) == path
    assert catalog.resolve("") == path
    assert catalog.resolve("letter") == path
    assert catalog.resolve("letter.docx") == path


@pytest.mark.parametrize("selector", ["../letter", "sub/letter", "unknown", ".."])
def test_resolve_rejects_bad_selectors(tmp_path, selector):
    make_docx_template(tmp_path / "letter.docx", ["{{ d.a }}"])
    catalog = TemplateCatalog(tmp_path, "letter.docx")

    with pytest.raises(TemplateNotFoundError):
        catalog.resolve(selector)


def test_default_template_checks(tmp_path):
    catalog = TemplateCatalog(tmp_path, "letter.docx")
    assert catalog.default_template_exists() is False
    assert catalog.default_template_size() is None

    path = make_docx_template(tmp_path / "letter.docx", ["{{ d.a }}"])
    assert catalog.default_template_exists() is True
    assert catalog.default_template_size() == path.stat().st_size
