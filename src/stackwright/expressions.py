"""Interpolation of stack locals, configuration and stack metadata.

Supported forms inside string values:

- ``${local.NAME}``   a stack local (dotted paths index nested mappings)
- ``${config.KEY}``   a merged hierarchy configuration value
- ``${stack.name}``   stack metadata

A string consisting of exactly one interpolation evaluates to the referenced
value with its type preserved; otherwise interpolations are rendered into the
string. A mapping of the form ``{"$merge": [a, b, ...]}`` deep-merges its
evaluated operands.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any, cast

from stackwright.errors import ExpressionError
from stackwright.values import deep_merge

_INTERPOLATION = re.compile(r"\$\{\s*([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_-]+)+)\s*\}")

MERGE_DIRECTIVE = "$merge"


class Scope:
    """Namespaces available to expressions."""

    def __init__(
        self,
        *,
        locals_: Mapping[str, Any] | None = None,
        config: Mapping[str, Any] | None = None,
        stack: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialise scope namespaces.

        Args:
            locals_: Evaluated stack locals.
            config: Merged hierarchy configuration.
            stack: Stack metadata (name, description).

        """
        self._namespaces: dict[str, Mapping[str, Any]] = {
            "local": locals_ if locals_ is not None else {},
            "config": config if config is not None else {},
            "stack": stack if stack is not None else {},
        }

    def with_locals(self, locals_: Mapping[str, Any]) -> Scope:
        """Return a scope with a different locals namespace."""
        return Scope(
            locals_=locals_,
            config=self._namespaces["config"],
            stack=self._namespaces["stack"],
        )

    def lookup(self, reference: str) -> Any:  # noqa: ANN401
        """Resolve a dotted reference such as 'local.tags.team'.

        Raises:
            ExpressionError: If the namespace or any key along the path is unknown.

        """
        namespace, *keys = reference.split(".")
        if namespace not in self._namespaces:
            raise ExpressionError(
                f"Unknown namespace '{namespace}' in '${{{reference}}}'. "
                f"Expected one of: {', '.join(self._namespaces)}"
            )
        current: Any = self._namespaces[namespace]
        for depth, key in enumerate(keys):
            if isinstance(current, Mapping) and key in current:
                current = cast(Mapping[str, Any], current)[key]
            elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
                current = cast(list[Any], current)[int(key)]
            else:
                known = ".".join([namespace, *keys[:depth]])
                raise ExpressionError(f"Unknown reference '{reference}': '{key}' not found in '{known}'")
        return current


def evaluate(value: Any, scope: Scope) -> Any:  # noqa: ANN401
    """Evaluate interpolations in a JSON-like value tree.

    Args:
        value: The value to evaluate.
        scope: Namespaces available to the expressions.

    Returns:
        A new value tree with every interpolation evaluated.

    Raises:
        ExpressionError: On unknown references or an invalid ``$merge`` operand.

    """
    if isinstance(value, str):
        return _evaluate_string(value, scope)
    if isinstance(value, dict):
        dict_value = cast(dict[str, Any], value)
        if MERGE_DIRECTIVE in dict_value:
            return _evaluate_merge(dict_value, scope)
        return {key: evaluate(item, scope) for key, item in dict_value.items()}
    if isinstance(value, list):
        return [evaluate(item, scope) for item in cast(list[Any], value)]
    return value


def evaluate_locals(raw_locals: Mapping[str, Any], scope: Scope) -> dict[str, Any]:
    """Evaluate locals in declaration order.

    Each local may reference locals declared before it.

    Args:
        raw_locals: Locals as written in the stack file.
        scope: Base scope (configuration and stack metadata).

    Returns:
        Evaluated locals.

    """
    evaluated: dict[str, Any] = {}
    for name, raw in raw_locals.items():
        evaluated[name] = evaluate(raw, scope.with_locals(evaluated))
    return evaluated


def _evaluate_string(value: str, scope: Scope) -> Any:  # noqa: ANN401
    whole = _INTERPOLATION.fullmatch(value.strip())
    if whole is not None:
        return scope.lookup(whole.group(1))

    def render(match: re.Match[str]) -> str:
        resolved = scope.lookup(match.group(1))
        if isinstance(resolved, str):
            return resolved
        return json.dumps(resolved)

    return _INTERPOLATION.sub(render, value)


def _evaluate_merge(value: dict[str, Any], scope: Scope) -> dict[str, Any]:
    if len(value) != 1:
        raise ExpressionError(f"'{MERGE_DIRECTIVE}' must be the only key in its mapping")
    operands = value[MERGE_DIRECTIVE]
    if not isinstance(operands, list):
        raise ExpressionError(f"'{MERGE_DIRECTIVE}' expects a list of mappings")

    merged: dict[str, Any] = {}
    for operand in cast(list[Any], operands):
        evaluated = evaluate(operand, scope)
        if not isinstance(evaluated, dict):
            raise ExpressionError(
                f"'{MERGE_DIRECTIVE}' operand must evaluate to a mapping, "
                f"got {type(evaluated).__name__}"
            )
        merged = deep_merge(merged, cast(dict[str, Any], evaluated))
    return merged
