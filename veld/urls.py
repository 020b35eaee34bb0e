"""Slugs, run names and URL template handling."""

from __future__ import annotations

import random
import re
import string
from collections.abc import Mapping

from veld.variables import interpolate_url_template

MAX_SLUG_LENGTH = 48

_ALNUM = frozenset(string.ascii_letters + string.digits)
_DASH_RUNS = re.compile(r"-{2,}")

_ADJECTIVES = (
    "able", "bold", "brave", "bright", "calm", "clever", "cool", "crisp",
    "eager", "fair", "fancy", "fast", "fine", "fresh", "gentle", "glad",
    "golden", "grand", "happy", "hardy", "keen", "kind", "lively", "lucky",
    "merry", "mighty", "modest", "neat", "nimble", "noble", "proud", "quick",
    "quiet", "rapid", "ready", "sharp", "shiny", "smart", "smooth", "steady",
    "sunny", "swift", "tidy", "vivid", "warm", "wise", "witty", "zesty",
)

_NOUNS = (
    "badger", "bear", "beaver", "bison", "crane", "deer", "dolphin", "eagle",
    "falcon", "ferret", "finch", "fox", "gecko", "hawk", "heron", "ibis",
    "jaguar", "koala", "lark", "lemur", "lion", "lynx", "marten", "mole",
    "moose", "newt", "otter", "owl", "panda", "pelican", "puffin", "quail",
    "rabbit", "raven", "robin", "salmon", "seal", "shark", "sparrow", "swan",
    "tiger", "toad", "trout", "turtle", "walrus", "whale", "wolf", "wren",
)


def slugify(text: str) -> str:
    """Lowercase, turn non-alphanumerics into single dashes, trim, cap at 48."""
    replaced = "".join(ch.lower() if ch in _ALNUM else "-" for ch in text)
    trimmed = _DASH_RUNS.sub("-", replaced).strip("-")
    if len(trimmed) > MAX_SLUG_LENGTH:
        return trimmed[:MAX_SLUG_LENGTH].rstrip("-")
    return trimmed


def generate_run_name() -> str:
    """Return a random adjective-noun run name such as ``swift-falcon``."""
    return f"{random.choice(_ADJECTIVES)}-{random.choice(_NOUNS)}"


def resolve_url_template(
    project_template: str,
    node_template: str | None,
    variant_template: str | None,
) -> str:
    """Pick the most specific template: variant, then node, then project."""
    if variant_template is not None:
        return variant_template
    if node_template is not None:
        return node_template
    return project_template


def evaluate_url_template(template: str, values: Mapping[str, str]) -> str:
    """Expand a ``{var}`` / ``{a ?? b}`` URL template."""
    return interpolate_url_template(template, values)


def build_url_template_values(
    service: str,
    variant: str,
    run_name: str,
    project: str,
    branch: str,
    worktree: str,
    username: str,
    hostname: str,
) -> dict[str, str]:
    """Build the slugified value map used by URL templates."""
    raw = {
        "service": service,
        "variant": variant,
        "run": run_name,
        "project": project,
        "branch": branch,
        "worktree": worktree,
        "username": username,
        "hostname": hostname,
    }
    return {key: slugify(value) for key, value in raw.items()}