"""
Capability table and engine catalog tests.
"""

import json

import pytest

from convert_dispatch.conversion import CapabilityTable, Engine, build_capability_table, load_engines
from convert_dispatch.conversion.catalog import CatalogError, DEFAULT_ENGINES


def test_register_normalizes_formats_to_lowercase():
    table = CapabilityTable()
    table.register(Engine.build("pandoc", "Pandoc", conversions={"MD": ["HTML", ".Pdf"]}))

    engine = table.get("pandoc")
    assert engine is not None
    assert dict(engine.conversions) == {"md": frozenset({"html", "pdf"})}


def test_register_normalizes_engines_built_directly():
    table = CapabilityTable()
    table.register(Engine(id="raw", name="Raw", conversions={"JSON": frozenset({"YAML"})}))

    assert table.supports("raw", "json", "yaml")


def test_supports_is_case_insensitive(capabilities):
    assert capabilities.supports("pandoc", "PDF", "Docx") == capabilities.supports("pandoc", "pdf", "docx")
    assert capabilities.supports("pandoc", "MD", "Pdf") is True


@pytest.mark.parametrize("source", ["md", "docx", "txt", "epub", "png"])
@pytest.mark.parametrize("target", ["html", "pdf", "odt", "mobi", "jpg"])
def test_supports_agrees_with_outputs_for(capabilities, source, target):
    for engine in capabilities.list():
        expected = target in capabilities.outputs_for(engine.id, source)
        assert capabilities.supports(engine.id, source, target) is expected


def test_unknown_engine_supports_nothing(capabilities):
    assert capabilities.get("nope") is None
    assert capabilities.supports("nope", "md", "html") is False
    assert capabilities.outputs_for("nope", "md") == []


def test_unknown_input_format(capabilities):
    assert capabilities.supports("pandoc", "docx", "pdf") is False
    assert capabilities.outputs_for("pandoc", "docx") == []


def test_register_replaces_by_id(capabilities):
    capabilities.register(Engine.build("pandoc", "Pandoc 3", conversions={"rst": ["html"]}))

    assert capabilities.get("pandoc").name == "Pandoc 3"
    assert capabilities.supports("pandoc", "rst", "html")
    assert not capabilities.supports("pandoc", "md", "html")
    assert len(capabilities) == 3


def test_list_is_ordered_by_id_and_includes_disabled(capabilities):
    capabilities.set_enabled("calibre", False)

    assert [e.id for e in capabilities.list()] == ["calibre", "libreoffice", "pandoc"]
    assert capabilities.get("calibre").enabled is False


def test_disabled_engine_is_excluded_from_resolution_views(capabilities):
    assert capabilities.set_enabled("calibre", False) is True

    assert capabilities.supports("calibre", "epub", "mobi") is False
    assert capabilities.outputs_for("calibre", "epub") == []
    assert "calibre" not in capabilities.targets_for("epub")
    assert "epub" not in capabilities.all_input_formats()
    assert "mobi" not in capabilities.all_output_formats()


def test_engines_returned_by_the_table_are_read_only(capabilities):
    engine = capabilities.get("pandoc")

    with pytest.raises(TypeError):
        engine.conversions["md"] = frozenset({"docx"})
    with pytest.raises(TypeError):
        capabilities.list()[0].conversions["rtf"] = frozenset({"pdf"})

    assert capabilities.supports("pandoc", "md", "docx") is False
    assert capabilities.outputs_for("pandoc", "md") == ["html", "pdf"]


def test_set_enabled_unknown_engine(capabilities):
    assert capabilities.set_enabled("nope", False) is False


def test_targets_for_only_lists_engines_with_entries(capabilities):
    targets = capabilities.targets_for("TXT")

    assert targets == {"libreoffice": ["html", "pdf"]}
    assert capabilities.targets_for("wav") == {}


def test_all_formats_are_sorted_and_deduplicated(capabilities):
    assert capabilities.all_input_formats() == ["docx", "epub", "md", "txt"]
    assert capabilities.all_output_formats() == ["html", "mobi", "odt", "pdf"]


def test_engines_for_returns_ids_in_order(capabilities):
    capabilities.register(Engine.build("aaa", "First", conversions={"md": ["pdf"]}))

    assert capabilities.engines_for("md", "pdf") == ["aaa", "pandoc"]


def test_engine_detail_helpers():
    engine = Engine.build("dasel", "Dasel", conversions={"json": ["yaml", "toml"], "yaml": ["json"]})

    assert engine.input_formats() == ["json", "yaml"]
    assert engine.output_formats() == ["json", "toml", "yaml"]
    assert engine.conversion_pairs() == [("json", "toml"), ("json", "yaml"), ("yaml", "json")]


# =============================================================================
# Catalog
# =============================================================================

def test_default_catalog_loads_every_engine():
    table = build_capability_table()

    assert len(table) == len(DEFAULT_ENGINES)
    assert table.supports("pandoc", "md", "pdf")
    assert table.supports("ffmpeg", "mp4", "gif")
    assert not table.supports("ffmpeg", "mp4", "mp4")
    assert table.get("ocrmypdf").parameters == {"language": {"type": "string", "default": "eng"}}


def test_catalog_from_json_file(tmp_path):
    path = tmp_path / "engines.json"
    path.write_text(json.dumps([
        {"id": "pandoc", "name": "Pandoc", "conversions": {"MD": ["html"]}},
        {"id": "off", "conversions": {"a": ["b"]}, "enabled": False},
    ]))

    engines = load_engines(path)

    assert [e.id for e in engines] == ["pandoc", "off"]
    assert engines[1].name == "off"
    assert engines[1].enabled is False
    assert dict(engines[0].conversions) == {"md": frozenset({"html"})}


def test_catalog_rejects_non_list(tmp_path):
    path = tmp_path / "engines.json"
    path.write_text(json.dumps({"id": "pandoc"}))

    with pytest.raises(CatalogError):
        load_engines(path)


def test_catalog_rejects_entry_without_id(tmp_path):
    path = tmp_path / "engines.json"
    path.write_text(json.dumps([{"name": "anonymous"}]))

    with pytest.raises(CatalogError):
        load_engines(path)


def test_catalog_missing_file(tmp_path):
    with pytest.raises(CatalogError):
        load_engines(tmp_path / "missing.json")
