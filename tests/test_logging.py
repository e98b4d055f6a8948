"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from mcpctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_record_contains_steps_and_result(tmp_path: Path) -> None:
    """A closed scope appends one JSON line describing the operation."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "server remove",
        args={"name": "brave-mcp-server", "remove_image": True},
        target={"kind": "server", "name": "brave-mcp-server"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("docker.stop", status="warning", detail="not running")
        op.add_step("docker.rm")
        op.success("Container removed.", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "server remove"
    assert str(record["op_id"]).startswith("op-")
    assert record["target"] == {"kind": "server", "name": "brave-mcp-server"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [
        {"name": "docker.stop", "status": "warning", "detail": "not running"},
        {"name": "docker.rm", "status": "success"},
    ]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["changed"] == 1  # type: ignore[index]


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("demo", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    assert record["args"] == {"path": "foo"}
    result = record["result"]
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["note"]  # type: ignore[index]
    assert result["errors"] == ["err"]  # type: ignore[index]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}  # type: ignore[index]


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo") as op:
        op.error("boom", errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["errors"] == ["boom"]  # type: ignore[index]
    assert result["context"] == {"value": "{1, 2}"}  # type: ignore[index]


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="kaboom"):
        with logger.operation("demo"):
            raise RuntimeError("kaboom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert "kaboom" in record["result"]["message"]  # type: ignore[index]


def test_scope_without_outcome_defaults_to_success(tmp_path: Path) -> None:
    """Scopes closed without an explicit outcome are recorded as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo") as op:
        op.add_step("noop")

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"  # type: ignore[index]
