"""Tests for {{variable}} rendering."""
import pytest
from core.errors import TemplateRenderWarning
from utils.templating import placeholders, render


class TestRender:
    def test_substitutes_bound_variable(self):
        assert render("Hello {{name}}", {"name": "Ann"}) == "Hello Ann"

    def test_whitespace_inside_braces(self):
        assert render("Hi {{ name }}!", {"name": "Bo"}) == "Hi Bo!"

    def test_repeated_placeholder(self):
        assert render("{{x}}-{{x}}", {"x": "1"}) == "1-1"

    def test_unbound_renders_empty_with_warning(self):
        with pytest.warns(TemplateRenderWarning, match="name"):
            assert render("Hello {{name}}", {}) == "Hello "

    def test_empty_template(self):
        assert render("", {"a": "b"}) == ""

    def test_text_without_placeholders_untouched(self):
        assert render("Plain {text}", {}) == "Plain {text}"


class TestPlaceholders:
    def test_in_order(self):
        assert placeholders("{{a}} and {{ b }} then {{a}}") == ["a", "b", "a"]

    def test_none(self):
        assert placeholders("nothing here") == []
