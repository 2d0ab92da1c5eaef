"""JSON Patch (RFC 6902) over plain JSON documents.

Shared by the producer, which derives STATE_DELTA operations from two
snapshots, and by the client synchroniser, which applies them.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from typing import Any

from mirastream.stream_runtime.models.enums import PatchOpType
from mirastream.stream_runtime.models.events import PatchOperation


class PatchError(ValueError):
    """An operation could not be applied (bad pointer, failed ``test``...)."""


def parse_pointer(pointer: str) -> list[str]:
    """Split a JSON pointer into unescaped reference tokens."""
    if pointer == "":
        return []
    if not pointer.startswith("/"):
        msg = f"Invalid JSON pointer {pointer!r}"
        raise PatchError(msg)
    return [token.replace("~1", "/").replace("~0", "~") for token in pointer[1:].split("/")]


def _index(container: list, token: str, *, allow_end: bool) -> int:
    if token == "-" and allow_end:
        return len(container)
    if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
        msg = f"Invalid array index {token!r}"
        raise PatchError(msg)
    idx = int(token)
    upper = len(container) if allow_end else len(container) - 1
    if idx > upper:
        msg = f"Array index {idx} out of range"
        raise PatchError(msg)
    return idx


def _walk(document: Any, tokens: list[str]) -> Any:
    node = document
    for token in tokens:
        if isinstance(node, dict):
            if token not in node:
                msg = f"Path segment {token!r} not found"
                raise PatchError(msg)
            node = node[token]
        elif isinstance(node, list):
            node = node[_index(node, token, allow_end=False)]
        else:
            msg = f"Cannot traverse into {type(node).__name__} at {token!r}"
            raise PatchError(msg)
    return node


def _get(document: Any, pointer: str) -> Any:
    return _walk(document, parse_pointer(pointer))


def _add(document: Any, pointer: str, value: Any) -> Any:
    tokens = parse_pointer(pointer)
    if not tokens:
        return value
    parent = _walk(document, tokens[:-1])
    last = tokens[-1]
    if isinstance(parent, dict):
        parent[last] = value
    elif isinstance(parent, list):
        parent.insert(_index(parent, last, allow_end=True), value)
    else:
        msg = f"Cannot add to {type(parent).__name__}"
        raise PatchError(msg)
    return document


def _remove(document: Any, pointer: str) -> tuple[Any, Any]:
    tokens = parse_pointer(pointer)
    if not tokens:
        msg = "Cannot remove the document root"
        raise PatchError(msg)
    parent = _walk(document, tokens[:-1])
    last = tokens[-1]
    if isinstance(parent, dict):
        if last not in parent:
            msg = f"Path {pointer!r} not found"
            raise PatchError(msg)
        return document, parent.pop(last)
    if isinstance(parent, list):
        return document, parent.pop(_index(parent, last, allow_end=False))
    msg = f"Cannot remove from {type(parent).__name__}"
    raise PatchError(msg)


def _replace(document: Any, pointer: str, value: Any) -> Any:
    tokens = parse_pointer(pointer)
    if not tokens:
        return value
    parent = _walk(document, tokens[:-1])
    last = tokens[-1]
    if isinstance(parent, dict):
        if last not in parent:
            msg = f"Path {pointer!r} not found"
            raise PatchError(msg)
        parent[last] = value
    elif isinstance(parent, list):
        parent[_index(parent, last, allow_end=False)] = value
    else:
        msg = f"Cannot replace inside {type(parent).__name__}"
        raise PatchError(msg)
    return document


def apply_operation(document: Any, operation: PatchOperation) -> Any:
    """Apply one operation in place and return the (possibly new) root."""
    match operation.op:
        case PatchOpType.ADD:
            return _add(document, operation.path, copy.deepcopy(operation.value))
        case PatchOpType.REMOVE:
            document, _ = _remove(document, operation.path)
            return document
        case PatchOpType.REPLACE:
            return _replace(document, operation.path, copy.deepcopy(operation.value))
        case PatchOpType.MOVE:
            if operation.from_ is None:
                msg = "move requires 'from'"
                raise PatchError(msg)
            if operation.path.startswith(operation.from_ + "/"):
                msg = "Cannot move a value into one of its children"
                raise PatchError(msg)
            document, value = _remove(document, operation.from_)
            return _add(document, operation.path, value)
        case PatchOpType.COPY:
            if operation.from_ is None:
                msg = "copy requires 'from'"
                raise PatchError(msg)
            return _add(document, operation.path, copy.deepcopy(_get(document, operation.from_)))
        case PatchOpType.TEST:
            actual = _get(document, operation.path)
            if actual != operation.value:
                msg = f"Test failed at {operation.path!r}: {actual!r} != {operation.value!r}"
                raise PatchError(msg)
            return document


def apply_patch(document: Any, operations: Iterable[PatchOperation | dict[str, Any]]) -> Any:
    """Return a patched deep copy of *document*.  The input is never mutated.

    Raises ``PatchError`` on the first operation that cannot be applied.
    """
    result = copy.deepcopy(document)
    for raw in operations:
        operation = raw if isinstance(raw, PatchOperation) else PatchOperation.model_validate(raw)
        result = apply_operation(result, operation)
    return result


def escape_token(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def diff_top_level(before: dict[str, Any], after: dict[str, Any]) -> list[PatchOperation]:
    """``replace``/``add``/``remove`` operations for changed top-level keys."""
    operations: list[PatchOperation] = []
    for key, value in after.items():
        path = "/" + escape_token(key)
        if key not in before:
            operations.append(PatchOperation(op=PatchOpType.ADD, path=path, value=value))
        elif before[key] != value:
            operations.append(PatchOperation(op=PatchOpType.REPLACE, path=path, value=value))
    for key in before:
        if key not in after:
            operations.append(PatchOperation(op=PatchOpType.REMOVE, path="/" + escape_token(key)))
    return operations
