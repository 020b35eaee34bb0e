"""Interpolation of ``${...}`` references and ``{...}`` URL templates."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field


class VariableError(Exception):
    """Base class for variable interpolation errors."""


class UnresolvedVariableError(VariableError):
    """A reference could not be resolved to a value."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"unresolved variable reference: {reference}")
        self.reference = reference


class UnknownBuiltinError(VariableError):
    """A ``veld.*`` reference names a built-in that is not set."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown built-in variable: {name}")
        self.name = name


@dataclass
class VariableContext:
    """All values available while interpolating one node's templates."""

    builtins: dict[str, str] = field(default_factory=dict)
    node_outputs: dict[str, str] = field(default_factory=dict)

    def set_builtin(self, key: str, value: str) -> None:
        """Set a built-in variable such as ``port``, ``run`` or ``root``."""
        self.builtins[key] = value

    def set_node_output(self, key: str, value: str) -> None:
        """Register an upstream output, e.g. ``nodes.backend:local.url``."""
        self.node_outputs[key] = value


_BUILTIN_PREFIX = "veld."
_NODES_PREFIX = "nodes."


def _resolve_reference(reference: str, ctx: VariableContext) -> str:
    if reference.startswith(_BUILTIN_PREFIX):
        key = reference[len(_BUILTIN_PREFIX):]
        try:
            return ctx.builtins[key]
        except KeyError:
            raise UnknownBuiltinError(reference) from None
    if reference.startswith(_NODES_PREFIX) and reference in ctx.node_outputs:
        return ctx.node_outputs[reference]
    raise UnresolvedVariableError(f"${{{reference}}}")


def interpolate(template: str, ctx: VariableContext) -> str:
    """Replace every ``${veld.*}`` and ``${nodes.*}`` reference in *template*."""
    parts: list[str] = []
    rest = template
    while (start := rest.find("${")) != -1:
        parts.append(rest[:start])
        after_open = rest[start + 2:]
        end = after_open.find("}")
        if end == -1:
            raise UnresolvedVariableError(f"unclosed ${{ at position {start}")
        parts.append(_resolve_reference(after_open[:end], ctx))
        rest = after_open[end + 1:]
    parts.append(rest)
    return "".join(parts)


def evaluate_fallback(expr: str, values: Mapping[str, str]) -> str | None:
    """Return the first non-empty value named in an ``a ?? b`` expression."""
    for part in expr.split("??"):
        value = values.get(part.strip())
        if value:
            return value
    return None


def interpolate_url_template(template: str, values: Mapping[str, str]) -> str:
    """Expand a URL template using ``{var}`` and ``{a ?? b}`` syntax."""
    parts: list[str] = []
    rest = template
    while (start := rest.find("{")) != -1:
        parts.append(rest[:start])
        after_open = rest[start + 1:]
        end = after_open.find("}")
        if end == -1:
            raise UnresolvedVariableError(
                f"unclosed {{ in URL template at position {start}"
            )
        expr = after_open[:end]
        if "??" in expr:
            value = evaluate_fallback(expr, values)
            if value is None:
                raise UnresolvedVariableError(
                    f'no non-empty value for fallback expression "{expr}"'
                )
        else:
            key = expr.strip()
            if key not in values:
                raise UnresolvedVariableError(
                    f'unknown URL template variable "{key}"'
                )
            value = values[key]
        parts.append(value)
        rest = after_open[end + 1:]
    parts.append(rest)
    return "".join(parts)