from __future__ import annotations

import pytest

from astgrep_bridge.errors import (
    ERROR_KINDS,
    BinaryError,
    ErrorTranslator,
    ExecutionError,
    ResourceError,
    SecurityError,
    TimeoutError,
    ToolError,
    ValidationError,
    translate_exception,
)


def test_every_kind_is_distinct_and_hinted() -> None:
    kinds = [cls.kind for cls in ERROR_KINDS]

    assert len(set(kinds)) == 6
    assert all(cls.default_hint for cls in ERROR_KINDS)
    assert SecurityError.recoverable is False
    assert BinaryError.recoverable is False
    assert issubclass(ValidationError, ValueError)


def test_to_dict_omits_empty_sections() -> None:
    assert ResourceError("too big").to_dict() == {
        "kind": "RESOURCE_ERROR",
        "message": "too big",
        "recoverable": True,
        "hint": ResourceError.default_hint,
    }
    payload = ValidationError("bad", details=["a"], context={"x": 1}).to_dict()
    assert payload["details"] == ["a"]
    assert payload["context"] == {"x": 1}


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("sg: command not found", BinaryError),
        ("operation timed out", TimeoutError),
        ("memory allocation of 1024 bytes failed", ResourceError),
        ("Error: No such file or directory (os error 2)", ExecutionError),
        ("Cannot parse rule: invalid YAML", ExecutionError),
        ("Pattern contains an ERROR node and may cause unexpected results", ExecutionError),
    ],
)
def test_translator_classifies_stderr(stderr: str, expected) -> None:
    error = ErrorTranslator().translate(stderr, workspace="/repo", exit_code=2)

    assert type(error) is expected
    assert error.context == {"workspace": "/repo", "exitCode": 2}


def test_translator_rows_are_ordered() -> None:
    translator = ErrorTranslator()

    assert "not found in workspace /repo" in translator.translate("No such file or directory", "/repo").message
    assert translator.translate("unsupported language: cobol", "/repo").message.startswith("Language is not supported")
    assert translator.translate("yaml: invalid pattern", "/repo").message.startswith("Rule definition is invalid")


def test_unmatched_stderr_passes_through_with_workspace() -> None:
    error = ErrorTranslator().translate("\n  something odd happened\nsecond line\n", workspace="/repo")

    assert type(error) is ExecutionError
    assert error.message == "something odd happened (workspace: /repo)"
    assert error.details == ["something odd happened\nsecond line"]


def test_empty_stderr_reports_exit_code() -> None:
    error = ErrorTranslator().translate("", workspace="", exit_code=2)

    assert error.message == "ast-grep exited with code 2"


def test_translate_exception() -> None:
    original = SecurityError("nope")

    assert translate_exception(original) is original
    assert isinstance(translate_exception(FileNotFoundError("x"), "/repo"), ExecutionError)
    assert isinstance(translate_exception(PermissionError("x")), SecurityError)
    assert isinstance(translate_exception(MemoryError()), ResourceError)
    wrapped = translate_exception(RuntimeError("kaboom"), "/repo")
    assert isinstance(wrapped, ToolError)
    assert wrapped.message == "kaboom (workspace: /repo)"
