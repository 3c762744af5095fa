"""Unit tests for template rendering and resolution."""

from __future__ import annotations

import re

import pytest

from httpstage.config import TemplateConfig
from httpstage.errors import TemplateError
from httpstage.records import Record
from httpstage.template import Template, parse_url, render


class TestRender:
    """Attribute substitution."""

    def test_substitutes_attribute(self):
        query = "ASK { <${subject}> ?pred ?obj }"
        assert render(query, {"subject": "urn:test:subject"}) == (
            "ASK { <urn:test:subject> ?pred ?obj }"
        )

    def test_missing_attribute_renders_empty(self):
        assert render("a${missing}b", {}) == "ab"

    def test_whitespace_inside_braces_ignored(self):
        assert render("${ name }", {"name": "x"}) == "x"

    def test_escaped_reference_is_literal(self):
        assert render("$${name}", {"name": "x"}) == "${name}"

    def test_none_expression_renders_empty(self):
        assert render(None, {"a": "b"}) == ""

    def test_text_without_references_unchanged(self):
        assert render("SELECT * WHERE {}", {"a": "b"}) == "SELECT * WHERE {}"


class TestTemplateResolve:
    """Template.resolve() per record."""

    def _template(self, **overrides) -> Template:
        overrides.setdefault("url", "http://localhost:2710/")
        return Template.from_config(TemplateConfig(**overrides))

    def test_resolves_all_fields(self):
        template = self._template(
            method="${verb}",
            url="http://localhost:2710/${path}",
            content_type="application/sparql-query",
            accept=" text/plain ",
            body="  SELECT * WHERE {}  ",
        )
        record = Record.create({"verb": "POST", "path": "sparql"})

        resolved = template.resolve(record)

        assert resolved.method == "POST"
        assert str(resolved.url) == "http://localhost:2710/sparql"
        assert resolved.content_type == "application/sparql-query"
        assert resolved.accept == "text/plain"
        assert resolved.body == "SELECT * WHERE {}"

    def test_empty_body_is_no_body(self):
        template = self._template(method="POST", body="${missing}")
        assert template.resolve(Record.create()).body is None

    def test_absent_optional_fields_are_none(self):
        resolved = self._template().resolve(Record.create())
        assert resolved.content_type is None
        assert resolved.accept is None
        assert resolved.body is None

    def test_resolution_is_pure(self):
        template = self._template(method="POST", body="${a}-${b}")
        record = Record.create({"a": "1", "b": "2"})
        assert template.resolve(record) == template.resolve(record)

    def test_empty_method_raises(self):
        template = self._template(method="${missing}")
        with pytest.raises(TemplateError):
            template.resolve(Record.create())

    def test_method_with_whitespace_raises(self):
        template = self._template(method="GET ${x}", url="http://h/")
        with pytest.raises(TemplateError):
            template.resolve(Record.create({"x": "POST"}))

    def test_url_from_missing_attribute_raises(self):
        template = self._template(url="${target}")
        with pytest.raises(TemplateError):
            template.resolve(Record.create())

    def test_forward_pattern_compiled(self):
        template = self._template(attributes_to_send="x-.*")
        assert template.forward_pattern == re.compile("x-.*")

    def test_blank_forward_pattern_forwards_nothing(self):
        template = self._template(attributes_to_send="   ")
        assert template.forward_pattern is None


class TestParseUrl:
    """URL validation."""

    def test_accepts_absolute_http(self):
        assert parse_url("http://localhost:2710/").port == 2710

    def test_accepts_https(self):
        assert parse_url("https://example.org/a?b=c").host == "example.org"

    @pytest.mark.parametrize(
        "value",
        ["", "/relative/path", "ftp://example.org/", "localhost:2710", "http://"],
    )
    def test_rejects_unusable_urls(self, value):
        with pytest.raises(TemplateError):
            parse_url(value)
