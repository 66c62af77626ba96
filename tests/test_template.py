"""Tests for qemulab.template module."""

from __future__ import annotations

import pytest

from qemulab.exceptions import TemplateError
from qemulab.template import create_context, render


class TestCreateContext:
    def test_values_are_stringified(self):
        assert create_context([("cpus", 2), ("name", "vm")]) == {"cpus": "2", "name": "vm"}

    def test_none_becomes_empty(self):
        assert create_context([("index", None)]) == {"index": ""}


class TestRender:
    def test_substitutes_placeholders(self):
        context = {"name": "web1", "arch": "x86_64"}
        assert render(context, "{{ name }}-{{arch}}.qcow2") == "web1-x86_64.qcow2"

    def test_text_without_placeholders_unchanged(self):
        assert render({}, "plain text: {not a placeholder}") == "plain text: {not a placeholder}"

    def test_non_string_returned_as_is(self):
        assert render({}, 42) == 42
        assert render({}, None) is None

    def test_unknown_variable(self):
        with pytest.raises(TemplateError, match="Unknown template variable 'nope'"):
            render({"name": "x"}, "{{ nope }}")

    def test_unknown_variable_names_location(self):
        with pytest.raises(TemplateError, match=r"\(vm1.disk\)"):
            render({}, "{{ nope }}", "vm1.disk")

    @pytest.mark.parametrize("template", ["{{ name", "name }}", "{{ bad key }}"])
    def test_malformed_placeholder(self, template):
        with pytest.raises(TemplateError, match="Malformed placeholder"):
            render({"name": "x"}, template)

    def test_substituted_value_is_not_rendered_again(self):
        assert render({"a": "{{ b }}", "b": "x"}, "{{ a }}") == "{{ b }}"
