"""Tests for reference resolution."""

import pytest

from opsflow.errors import TemplateError
from opsflow.templating import find_references, get_path, resolve, split_path

CONTEXT = {
    "trigger": {"customerId": 42, "ticket": {"id": "T-1", "tags": ["a", "b"]}},
    "step1": {"name": "Acme", "items": [{"id": 7}], "active": True, "note": None},
}


def test_split_path_handles_indices():
    assert split_path("step1.items[0].id") == ["step1", "items", 0, "id"]


def test_whole_reference_preserves_type():
    assert resolve("{{trigger.customerId}}", CONTEXT) == 42
    assert resolve("{{ step1.items }}", CONTEXT) == [{"id": 7}]
    assert resolve("{{step1.items[0].id}}", CONTEXT) == 7


def test_embedded_references_render_as_text():
    assert resolve("Hello {{step1.name}} #{{trigger.customerId}}", CONTEXT) == "Hello Acme #42"
    assert resolve("active={{step1.active}} note={{step1.note}}", CONTEXT) == "active=true note="
    assert resolve("tags: {{trigger.ticket.tags}}", CONTEXT) == 'tags: ["a", "b"]'


def test_resolves_nested_structures():
    template = {
        "url": "https://api.example.com/customers/{{trigger.customerId}}",
        "json": {"ids": ["{{trigger.ticket.id}}", 3], "flag": False},
    }
    assert resolve(template, CONTEXT) == {
        "url": "https://api.example.com/customers/42",
        "json": {"ids": ["T-1", 3], "flag": False},
    }


def test_missing_root_raises():
    with pytest.raises(TemplateError) as excinfo:
        resolve("{{step2.sent}}", CONTEXT)
    assert excinfo.value.reference == "step2.sent"


def test_missing_field_raises():
    with pytest.raises(TemplateError):
        resolve("name: {{step1.missing}}", CONTEXT)


def test_find_references_collects_roots():
    template = {"a": "{{trigger.x}}", "b": ["{{step1.y}} and {{ step2.z }}"], "c": 5}
    assert find_references(template) == {"trigger", "step1", "step2"}


def test_get_path_default():
    assert get_path(CONTEXT, "step1.items[3].id", default="none") == "none"
