import re

import pytest

from veld.urls import (
    build_url_template_values,
    evaluate_url_template,
    generate_run_name,
    resolve_url_template,
    slugify,
)
from veld.variables import UnresolvedVariableError

SLUG_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")

SAMPLES = [
    "Hello World",
    "feature/My Branch!!",
    "--leading and trailing--",
    "ünïcödé näme",
    "a" * 30 + "  " + "b" * 30,
    "x-" * 40,
    "MixedCASE_with__underscores",
]


def test_slugify_pinned():
    assert slugify("feature/My Branch!!") == "feature-my-branch"


def test_slugify_keeps_existing_slug():
    assert slugify("already-a-slug-42") == "already-a-slug-42"


def test_slugify_only_punctuation_is_empty():
    assert slugify("!!! ///") == ""


@pytest.mark.parametrize("text", SAMPLES)
def test_slugify_invariants(text):
    slug = slugify(text)
    assert len(slug) <= 48
    assert SLUG_RE.match(slug)
    assert "--" not in slug
    assert slugify(slug) == slug


def test_slugify_truncates_to_48():
    assert len(slugify("a" * 60)) == 48


def test_slugify_truncation_strips_trailing_dash():
    slug = slugify("a" * 47 + " tail")
    assert not slug.endswith("-")
    assert slug == "a" * 47


def test_generate_run_name_shape():
    for _ in range(20):
        name = generate_run_name()
        assert re.fullmatch(r"[a-z]+-[a-z]+", name)
        assert slugify(name) == name


def test_resolve_prefers_variant():
    assert resolve_url_template("p", "n", "v") == "v"


def test_resolve_falls_back_to_node():
    assert resolve_url_template("p", "n", None) == "n"


def test_resolve_falls_back_to_project():
    assert resolve_url_template("p", None, None) == "p"


def test_resolve_empty_variant_is_still_chosen():
    assert resolve_url_template("p", "n", "") == ""


def test_build_values_are_slugified():
    values = build_url_template_values(
        "API Server", "Local", "Swift Falcon", "My Project",
        "feature/x", "wt", "Jane", "Host.Local",
    )
    assert set(values) == {
        "service", "variant", "run", "project",
        "branch", "worktree", "username", "hostname",
    }
    for value in values.values():
        assert value == slugify(value)
    assert values["run"] == slugify("Swift Falcon")


def test_evaluate_url_template_with_built_values():
    values = build_url_template_values(
        "api", "local", "swift-falcon", "shop", "", "wt", "jane", "box",
    )
    result = evaluate_url_template("{service}.{branch ?? run}.localhost", values)
    assert result == "api.swift-falcon.localhost"


def test_evaluate_url_template_unknown():
    with pytest.raises(UnresolvedVariableError):
        evaluate_url_template("{missing}", {})