"""Structured JSONL logger with size-based rotation and redaction."""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.text import Text

from imsg_bridge.types import now_ms


LOG_FILE_NAME = "imsg-bridge.log.jsonl"
ERROR_LOG_FILE_NAME = "imsg-bridge-error.log.jsonl"

LEVELS = ("debug", "info", "warn", "error")
_LEVEL_RANK = {name: index for index, name in enumerate(LEVELS)}
_LEVEL_STYLE = {"debug": "dim", "info": "cyan", "warn": "yellow", "error": "bold red"}

_REDACTED = "***REDACTED***"
_SENSITIVE_KEY_RE = re.compile(
    r"(password|secret|token|authorization|cookie|api[_-]?key|access[_-]?key|private[_-]?key)",
    re.IGNORECASE,
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+([^\s,;]+)")
_KEY_VALUE_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?key|token|secret|authorization|cookie|private[_-]?key)\b\s*[:=]\s*([^\s,;]+)"
)
_SK_KEY_RE = re.compile(r"\bsk-[A-Za-z0-9]{8,}\b")


def normalize_level(value: object, default: str = "debug") -> str:
    text = str(value or "").strip().lower()
    if text == "warning":
        text = "warn"
    if text not in _LEVEL_RANK:
        return default
    return text


class BridgeLogger:
    """Best-effort JSONL log writer; never raises into callers."""

    def __init__(
        self,
        *,
        logs_dir: Optional[Path] = None,
        enabled: bool = True,
        level: str = "debug",
        console_level: Optional[str] = "warn",
        console: Optional[Console] = None,
        max_file_bytes: int = 10 * 1024 * 1024,
        max_files: int = 5,
        redaction: str = "default",
    ) -> None:
        self._logs_dir = Path(logs_dir) if logs_dir is not None else None
        self._enabled = bool(enabled) and self._logs_dir is not None
        self._level = normalize_level(level)
        self._console_level = normalize_level(console_level, default="") if console_level else ""
        self._console = console
        self._max_file_bytes = max(1, int(max_file_bytes or 0))
        self._max_files = max(1, int(max_files or 0))
        self._redaction = str(redaction or "default").strip().lower()
        if self._redaction not in {"none", "default", "strict"}:
            self._redaction = "default"
        self._write_errors = 0
        self._lock = threading.Lock()
        if self._enabled and self._logs_dir is not None:
            try:
                self._logs_dir.mkdir(parents=True, exist_ok=True)
            except OSError:
                self._write_errors += 1

    @classmethod
    def disabled(cls) -> "BridgeLogger":
        return cls(logs_dir=None, enabled=False, console_level=None)

    @property
    def active_log_file(self) -> Optional[Path]:
        if self._logs_dir is None:
            return None
        return self._logs_dir / LOG_FILE_NAME

    @property
    def error_log_file(self) -> Optional[Path]:
        if self._logs_dir is None:
            return None
        return self._logs_dir / ERROR_LOG_FILE_NAME

    def debug(self, message: str, component: str = "bridge", **data: Any) -> None:
        self.write_entry(level="debug", component=component, message=message, data=data)

    def info(self, message: str, component: str = "bridge", **data: Any) -> None:
        self.write_entry(level="info", component=component, message=message, data=data)

    def warn(self, message: str, component: str = "bridge", **data: Any) -> None:
        self.write_entry(level="warn", component=component, message=message, data=data)

    def error(self, message: str, component: str = "bridge", **data: Any) -> None:
        self.write_entry(level="error", component=component, message=message, data=data)

    def write_entry(
        self,
        *,
        level: str,
        component: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        ts_ms: Optional[int] = None,
    ) -> None:
        normalized_level = normalize_level(level, default="info")
        record = {
            "ts_ms": int(ts_ms if ts_ms is not None else now_ms()),
            "level": normalized_level,
            "component": str(component or "bridge"),
            "message": str(message or ""),
            "data": dict(data or {}),
        }
        record = self.redact_record(record)

        if self._console is not None and self._console_level:
            if _LEVEL_RANK[normalized_level] >= _LEVEL_RANK[self._console_level]:
                self._echo(record)

        logs_dir = self._logs_dir
        if not self._enabled or logs_dir is None:
            return
        if _LEVEL_RANK[normalized_level] < _LEVEL_RANK[self._level]:
            return

        with self._lock:
            try:
                line = json.dumps(
                    record,
                    ensure_ascii=True,
                    separators=(",", ":"),
                    default=str,
                )
                payload = (line + "\n").encode("utf-8")
                logs_dir.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed_locked(logs_dir / LOG_FILE_NAME, len(payload))
                with (logs_dir / LOG_FILE_NAME).open("ab") as fp:
                    fp.write(payload)
                if normalized_level == "error":
                    with (logs_dir / ERROR_LOG_FILE_NAME).open("ab") as fp:
                        fp.write(payload)
            except OSError:
                self._write_errors += 1

    def redact_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if self._redaction == "none":
            return record
        redacted = dict(record)
        redacted["message"] = redact_text(str(record.get("message") or ""))
        if self._redaction == "strict":
            redacted["data"] = _strict_redact(record.get("data") or {})
        else:
            redacted["data"] = redact_payload(record.get("data") or {})
        return redacted

    def status(self) -> Dict[str, Any]:
        with self._lock:
            active = self.active_log_file
            if not self._enabled or active is None:
                return {
                    "logs_enabled": False,
                    "logs_dir": str(self._logs_dir or ""),
                    "logs_level": self._level,
                    "logs_write_errors": self._write_errors,
                }

            active_size = active.stat().st_size if active.exists() else 0
            rotated = []
            total_size = int(active_size)
            for index in range(1, self._max_files + 1):
                path = self._rotated_file(active, index)
                if not path.exists():
                    continue
                rotated.append(str(path))
                total_size += int(path.stat().st_size)

            return {
                "logs_enabled": True,
                "logs_dir": str(self._logs_dir),
                "logs_level": self._level,
                "logs_active_file": str(active),
                "logs_active_size_bytes": int(active_size),
                "logs_max_file_bytes": self._max_file_bytes,
                "logs_max_files": self._max_files,
                "logs_total_size_bytes": int(total_size),
                "logs_rotated_files": rotated,
                "logs_write_errors": int(self._write_errors),
            }

    def _echo(self, record: Dict[str, Any]) -> None:
        console = self._console
        if console is None:
            return
        level = str(record["level"])
        line = Text()
        line.append("{0:<5}".format(level.upper()), style=_LEVEL_STYLE.get(level, ""))
        line.append(" {0}: {1}".format(record["component"], record["message"]))
        data = record.get("data") or {}
        if data:
            line.append(" " + json.dumps(data, ensure_ascii=False, default=str), style="dim")
        try:
            console.print(line, highlight=False, soft_wrap=True)
        except OSError:
            self._write_errors += 1

    def _rotate_if_needed_locked(self, active: Path, incoming_size: int) -> None:
        current_size = int(active.stat().st_size) if active.exists() else 0
        if current_size + int(incoming_size) <= self._max_file_bytes:
            return
        self._rotated_file(active, self._max_files).unlink(missing_ok=True)

        for index in range(self._max_files - 1, 0, -1):
            src = self._rotated_file(active, index)
            if not src.exists():
                continue
            src.replace(self._rotated_file(active, index + 1))

        if active.exists():
            active.replace(self._rotated_file(active, 1))

    @staticmethod
    def _rotated_file(active: Path, index: int) -> Path:
        return Path("{0}.{1}".format(active, index))


def redact_payload(value: Any) -> Any:
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for key, item in value.items():
            if _SENSITIVE_KEY_RE.search(str(key)):
                out[key] = _REDACTED
            else:
                out[key] = redact_payload(item)
        return out
    if isinstance(value, (list, tuple)):
        return [redact_payload(item) for item in value]
    if isinstance(value, str):
        return redact_text(value)
    return value


def redact_text(text: str) -> str:
    if not text:
        return text
    masked = _BEARER_RE.sub("Bearer {0}".format(_REDACTED), text)
    masked = _KEY_VALUE_RE.sub(
        lambda m: "{0}={1}".format(m.group(1), _REDACTED),
        masked,
    )
    return _SK_KEY_RE.sub(_REDACTED, masked)


def _strict_redact(value: Any) -> Any:
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for key, item in value.items():
            if _SENSITIVE_KEY_RE.search(str(key)):
                out[key] = _REDACTED
            elif isinstance(item, (dict, list, tuple)):
                out[key] = _strict_redact(item)
            else:
                out[key] = _REDACTED
        return out
    if isinstance(value, (list, tuple)):
        return [_strict_redact(item) for item in value]
    return _REDACTED
