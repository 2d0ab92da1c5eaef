"""Tests for JSON Patch application and diffing."""

from __future__ import annotations

import pytest

from mirastream.stream_runtime.protocol.patch import PatchError, apply_patch, diff_top_level, parse_pointer


def test_parse_pointer_unescapes() -> None:
    assert parse_pointer("") == []
    assert parse_pointer("/a~1b/c~0d") == ["a/b", "c~d"]
    with pytest.raises(PatchError):
        parse_pointer("no-slash")


def test_input_is_not_mutated() -> None:
    doc = {"a": {"b": 1}}
    apply_patch(doc, [{"op": "replace", "path": "/a/b", "value": 2}])
    assert doc == {"a": {"b": 1}}


def test_add_replace_remove() -> None:
    doc = {"confidenceInUser": 50, "memories": [], "userProfile": {"curiosity": 10}}
    result = apply_patch(
        doc,
        [
            {"op": "replace", "path": "/confidenceInUser", "value": 65},
            {"op": "add", "path": "/memories/-", "value": {"content": "hi"}},
            {"op": "add", "path": "/memories/0", "value": {"content": "first"}},
            {"op": "remove", "path": "/userProfile/curiosity"},
            {"op": "add", "path": "/hasFoundKindred", "value": True},
        ],
    )
    assert result == {
        "confidenceInUser": 65,
        "memories": [{"content": "first"}, {"content": "hi"}],
        "userProfile": {},
        "hasFoundKindred": True,
    }


def test_move_and_copy() -> None:
    result = apply_patch(
        {"a": {"x": 1}, "b": {}},
        [
            {"op": "copy", "from": "/a/x", "path": "/b/y"},
            {"op": "move", "from": "/a", "path": "/c"},
        ],
    )
    assert result == {"b": {"y": 1}, "c": {"x": 1}}


def test_test_operation() -> None:
    assert apply_patch({"a": None}, [{"op": "test", "path": "/a", "value": None}]) == {"a": None}
    with pytest.raises(PatchError):
        apply_patch({"a": 1}, [{"op": "test", "path": "/a", "value": 2}])


@pytest.mark.parametrize(
    "operation",
    [
        {"op": "replace", "path": "/missing", "value": 1},
        {"op": "remove", "path": "/missing"},
        {"op": "add", "path": "/list/9", "value": 1},
        {"op": "replace", "path": "/list/01", "value": 1},
        {"op": "move", "from": "/obj", "path": "/obj/inner"},
        {"op": "add", "path": "/scalar/x", "value": 1},
    ],
)
def test_invalid_operations_raise(operation: dict) -> None:
    with pytest.raises(PatchError):
        apply_patch({"list": [0], "obj": {}, "scalar": 3}, [operation])


def test_diff_top_level() -> None:
    before = {"a": 1, "b": [1], "gone": True}
    after = {"a": 1, "b": [1, 2], "new": None}

    ops = [op.to_dict() for op in diff_top_level(before, after)]

    assert ops == [
        {"op": "replace", "path": "/b", "value": [1, 2]},
        {"op": "add", "path": "/new", "value": None},
        {"op": "remove", "path": "/gone"},
    ]
    assert apply_patch(before, diff_top_level(before, after)) == after
