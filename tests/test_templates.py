"""Unit tests for output template rendering."""

from __future__ import annotations

from services.templates import render


class TestRender:

    def test_nested_substitution(self):
        out = render({"a": "{{x}}", "b": {"c": "{{y}}"}}, {"x": "1", "y": "2"})
        assert out == {"a": "1", "b": {"c": "2"}}

    def test_missing_placeholder_left_verbatim(self):
        assert render({"a": "{{missing}}"}, {}) == {"a": "{{missing}}"}

    def test_none_value_treated_as_missing(self):
        assert render("Hello {{name}}", {"name": None}) == "Hello {{name}}"

    def test_whole_placeholder_keeps_value_type(self):
        out = render({"tiv": "{{tiv}}", "files": "{{attachments}}"}, {"tiv": 15000000, "attachments": [{"f": 1}]})
        assert out == {"tiv": 15000000, "files": [{"f": 1}]}

    def test_embedded_placeholder_formats_as_text(self):
        assert render("TIV ${{tiv}} ok", {"tiv": 8500000}) == "TIV $8500000 ok"
        assert render("flags: {{f}}", {"f": {"b": 2, "a": 1}}) == 'flags: {"a":1,"b":2}'

    def test_non_string_leaves_pass_through(self):
        template = {"n": 3, "ok": True, "none": None, "list": [1, "{{x}}", False]}
        assert render(template, {"x": "y"}) == {"n": 3, "ok": True, "none": None, "list": [1, "y", False]}

    def test_keys_are_not_rendered(self):
        assert render({"{{x}}": "v"}, {"x": "k"}) == {"{{x}}": "v"}

    def test_deterministic(self):
        template = {"a": ["{{x}} and {{y}}", {"b": "{{z}}"}]}
        context = {"x": 1, "y": [2, 3], "z": {"q": 1}}
        assert render(template, context) == render(template, context)

    def test_non_word_tokens_left_alone(self):
        assert render("{{#each attachments}}", {"attachments": [1]}) == "{{#each attachments}}"

    def test_template_not_mutated(self):
        template = {"a": ["{{x}}"]}
        render(template, {"x": "1"})
        assert template == {"a": ["{{x}}"]}

