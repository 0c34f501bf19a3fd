"""
Unit tests for the Renderer template registry.
"""

from pathlib import Path

import pytest

from foobot.core.exceptions import RenderError, TemplateLoadError, TemplateNotFound
from foobot.core.render.renderer import REQUIRED_TEMPLATES, Renderer, normalize


class TestRender:
    def test_render_is_idempotent(self, renderer):
        first = renderer.render("greeting", {"name": "forsen"})
        second = renderer.render("greeting", {"name": "forsen"})

        assert first == second == "hello forsen"

    def test_output_is_one_line(self):
        renderer = Renderer.from_sources({"multi": "  a\n\n  b  \n"}, required=())

        assert renderer.render("multi", {}) == "a b"

    def test_extra_context_is_ignored(self, renderer):
        assert renderer.render("echo", {"text": "hi", "unused": 1}) == "hi"

    def test_missing_variable(self, renderer):
        with pytest.raises(RenderError) as exc_info:
            renderer.render("greeting", {})

        assert exc_info.value.kind == RenderError.MISSING_VARIABLE
        assert "name" in exc_info.value.reason

    def test_type_mismatch(self, renderer):
        with pytest.raises(RenderError) as exc_info:
            renderer.render("item_count", {"items": 5})

        assert exc_info.value.kind == RenderError.TYPE_MISMATCH

    def test_attribute_of_wrong_type_is_type_mismatch(self):
        renderer = Renderer.from_sources({"attr": "{{ user.name }}"}, required=())

        with pytest.raises(RenderError) as exc_info:
            renderer.render("attr", {"user": 3})

        assert exc_info.value.kind == RenderError.TYPE_MISMATCH

    def test_unknown_template(self, renderer):
        with pytest.raises(TemplateNotFound):
            renderer.render("nope", {})

    def test_variables(self, renderer):
        assert renderer.variables("greeting") == frozenset({"name"})
        assert renderer.variables("command_list") == frozenset({"commands"})

    def test_normalize(self):
        assert normalize("\n x \n y\n") == "x y"
        assert normalize("   \n") == ""


class TestLoad:
    def test_loads_txt_and_j2_by_stem(self, renderer):
        assert {"echo", "greeting", "item_count"} <= renderer.names
        assert set(REQUIRED_TEMPLATES) <= renderer.names
        assert "greeting" in renderer

    def test_other_files_are_skipped(self, template_dir: Path):
        (template_dir / "README.md").write_text("{{ broken", encoding="utf-8")

        assert "README" not in Renderer.load(template_dir)

    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(TemplateLoadError):
            Renderer.load(tmp_path / "missing")

    def test_malformed_template(self, template_dir: Path):
        (template_dir / "broken.txt").write_text("{% if %}", encoding="utf-8")

        with pytest.raises(TemplateLoadError) as exc_info:
            Renderer.load(template_dir)

        assert "broken.txt" in exc_info.value.message

    def test_undecodable_template(self, template_dir: Path):
        (template_dir / "binary.txt").write_bytes(b"\xff\xfe\x00")

        with pytest.raises(TemplateLoadError):
            Renderer.load(template_dir)

    def test_duplicate_name(self, template_dir: Path):
        (template_dir / "echo.j2").write_text("{{ text }}", encoding="utf-8")

        with pytest.raises(TemplateLoadError):
            Renderer.load(template_dir)

    def test_missing_required_template(self, template_dir: Path):
        (template_dir / "handler_error.txt").unlink()

        with pytest.raises(TemplateLoadError) as exc_info:
            Renderer.load(template_dir)

        assert "handler_error" in exc_info.value.message

    def test_registry_is_read_only(self, renderer):
        with pytest.raises(TypeError):
            renderer._templates["echo"] = None
