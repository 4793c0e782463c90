"""Project configuration file, resolved settings and the file-backed config store."""

from __future__ import annotations

import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.10
    import tomli as tomllib  # type: ignore[no-redef]

from imsg_bridge.errors import ConfigError
from imsg_bridge.host import ConfigPort, read_channel_section
from imsg_bridge.log import LEVELS
from imsg_bridge.types import ChannelConfig

CONFIG_DIR_NAME = ".imsg_bridge"
CONFIG_FILE_NAME = "config.toml"
LOGS_DIR_NAME = "logs"

DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_AGENT_ARGS = ("-p",)
DEFAULT_AGENT_TIMEOUT_SEC = 300
DEFAULT_IDENTITY_NAME = "imsg-bridge"
DEFAULT_LOGS_ENABLED = True
DEFAULT_LOGS_LEVEL = "debug"
DEFAULT_LOGS_CONSOLE_LEVEL = "warn"
DEFAULT_LOGS_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_LOGS_MAX_FILES = 5
DEFAULT_LOGS_REDACTION = "default"
ALLOWED_LOG_REDACTION = ("default", "none", "strict")

SERVICES = ("auto", "imessage", "sms")

_BARE_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class Settings:
    """Resolved runtime settings for one CLI invocation."""

    project_root: Path
    config_root: Path
    platform_override: bool = False
    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_args: List[str] = field(default_factory=lambda: list(DEFAULT_AGENT_ARGS))
    agent_timeout_sec: int = DEFAULT_AGENT_TIMEOUT_SEC
    identity: Dict[str, str] = field(default_factory=lambda: {"name": DEFAULT_IDENTITY_NAME})
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_level: str = DEFAULT_LOGS_LEVEL
    logs_console_level: str = DEFAULT_LOGS_CONSOLE_LEVEL
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION

    @property
    def config_file(self) -> Path:
        return self.config_root / CONFIG_FILE_NAME

    @property
    def logs_dir(self) -> Path:
        return self.config_root / LOGS_DIR_NAME


class FileConfigStore:
    """`ConfigPort` over `config.toml`; every read goes back to disk."""

    def __init__(self, config_file: Path) -> None:
        self._config_file = Path(config_file)

    @property
    def path(self) -> Path:
        return self._config_file

    def get_config(self) -> Dict[str, Any]:
        return read_config_document(self._config_file)

    async def save_config(self, config: Dict[str, Any]) -> None:
        write_config_document(self._config_file, config)


def resolve_project_root(workspace_dir: Optional[Path] = None) -> Path:
    return (workspace_dir or Path.cwd()).resolve()


def resolve_project_config_root(workspace_dir: Optional[Path] = None) -> Path:
    return resolve_project_root(workspace_dir) / CONFIG_DIR_NAME


def project_config_exists(workspace_dir: Optional[Path] = None) -> bool:
    config_root = resolve_project_config_root(workspace_dir)
    return config_root.is_dir() and (config_root / CONFIG_FILE_NAME).is_file()


def default_config_document() -> Dict[str, Any]:
    defaults = ChannelConfig()
    return {
        "bridge": {
            "platform_override": False,
            "agent": {
                "command": DEFAULT_AGENT_COMMAND,
                "args": list(DEFAULT_AGENT_ARGS),
                "timeout": DEFAULT_AGENT_TIMEOUT_SEC,
            },
            "identity": {"name": DEFAULT_IDENTITY_NAME},
            "logs": {
                "enabled": DEFAULT_LOGS_ENABLED,
                "level": DEFAULT_LOGS_LEVEL,
                "console_level": DEFAULT_LOGS_CONSOLE_LEVEL,
                "max_file_bytes": DEFAULT_LOGS_MAX_FILE_BYTES,
                "max_files": DEFAULT_LOGS_MAX_FILES,
                "redaction": DEFAULT_LOGS_REDACTION,
            },
        },
        "channels": {
            "imessage": {
                "enabled": defaults.enabled,
                "cli_path": defaults.cli_path,
                "db_path": "",
                "service": defaults.service,
                "region": defaults.region,
                "dm_policy": defaults.dm_policy,
                "allow_from": [],
                "group_policy": defaults.group_policy,
                "group_allow_from": [],
                "include_attachments": defaults.include_attachments,
                "media_max_mb": defaults.media_max_mb,
                "text_chunk_limit": defaults.text_chunk_limit,
                "queue_max_depth": defaults.queue_max_depth,
            }
        },
    }


def initialize_project_config(workspace_dir: Optional[Path] = None, force: bool = False) -> Path:
    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)

    if config_root.exists():
        if not force:
            raise ConfigError(
                "configuration directory already exists: {0}".format(config_root),
                path=str(config_root),
            )
        shutil.rmtree(config_root)

    (config_root / LOGS_DIR_NAME).mkdir(parents=True, exist_ok=True)
    write_config_document(config_root / CONFIG_FILE_NAME, default_config_document())
    return config_root


def read_config_document(config_file: Path) -> Dict[str, Any]:
    if not config_file.is_file():
        raise ConfigError(
            "missing config file: {0}; run `imsg-bridge init` first".format(config_file),
            path=str(config_file),
        )
    try:
        parsed = tomllib.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError("invalid config file: {0}".format(config_file), path=str(config_file)) from exc
    if not isinstance(parsed, dict):
        raise ConfigError("invalid config file: {0}".format(config_file), path=str(config_file))
    return parsed


def write_config_document(config_file: Path, document: Mapping[str, Any]) -> Path:
    """Atomically replace `config_file` with the rendered document."""

    text = render_config_document(document)
    config_file.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=".config-", suffix=".toml", dir=str(config_file.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(temp_name, config_file)
    except OSError as exc:
        Path(temp_name).unlink(missing_ok=True)
        raise ConfigError("failed to write config file: {0}".format(config_file), path=str(config_file)) from exc
    return config_file


def render_config_document(document: Mapping[str, Any]) -> str:
    lines: List[str] = []
    _render_table(lines, [], document)
    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines) + "\n"


def _render_table(lines: List[str], path: List[str], table: Mapping[str, Any]) -> None:
    scalars = [(key, value) for key, value in table.items() if not isinstance(value, Mapping)]
    tables = [(key, value) for key, value in table.items() if isinstance(value, Mapping)]

    if path and (scalars or not tables):
        lines.append("[{0}]".format(".".join(_toml_key(part) for part in path)))
    for key, value in scalars:
        lines.append("{0} = {1}".format(_toml_key(key), _toml_value(value, path + [str(key)])))
    if path and (scalars or not tables):
        lines.append("")
    elif scalars:
        lines.append("")

    for key, value in tables:
        _render_table(lines, path + [str(key)], value)


def _toml_key(key: object) -> str:
    text = str(key)
    if _BARE_KEY_RE.match(text):
        return text
    return _toml_string(text)


def _toml_string(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return '"{0}"'.format(escaped)


def _toml_value(value: Any, path: Sequence[str]) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return _toml_string(value)
    if isinstance(value, (list, tuple)):
        return "[{0}]".format(", ".join(_toml_value(item, path) for item in value))
    if value is None:
        raise ConfigError("config value cannot be null: {0}".format(".".join(path)), key=".".join(path))
    raise ConfigError(
        "unsupported config value at {0}: {1}".format(".".join(path), type(value).__name__),
        key=".".join(path),
    )


def load_settings(workspace_dir: Optional[Path] = None) -> Settings:
    """Resolve settings from the project config file."""

    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)
    document = read_config_document(config_root / CONFIG_FILE_NAME)

    bridge = _table(document, "bridge")
    agent = _table(bridge, "agent")
    identity = _table(bridge, "identity")
    logs = _table(bridge, "logs")

    identity_fields = {
        str(key): str(value)
        for key, value in identity.items()
        if isinstance(value, (str, int, float)) and not isinstance(value, bool) and str(value).strip()
    }
    identity_fields.setdefault("name", DEFAULT_IDENTITY_NAME)

    return Settings(
        project_root=project_root,
        config_root=config_root,
        platform_override=_safe_bool(bridge.get("platform_override"), False),
        agent_command=str(agent.get("command") or "").strip() or DEFAULT_AGENT_COMMAND,
        agent_args=_safe_string_list(agent.get("args"), DEFAULT_AGENT_ARGS),
        agent_timeout_sec=_safe_positive_int(agent.get("timeout"), DEFAULT_AGENT_TIMEOUT_SEC),
        identity=identity_fields,
        logs_enabled=_safe_bool(logs.get("enabled"), DEFAULT_LOGS_ENABLED),
        logs_level=_safe_level(logs.get("level"), DEFAULT_LOGS_LEVEL),
        logs_console_level=_safe_level(logs.get("console_level"), DEFAULT_LOGS_CONSOLE_LEVEL),
        logs_max_file_bytes=_safe_positive_int(logs.get("max_file_bytes"), DEFAULT_LOGS_MAX_FILE_BYTES),
        logs_max_files=_safe_positive_int(logs.get("max_files"), DEFAULT_LOGS_MAX_FILES),
        logs_redaction=_safe_redaction(logs.get("redaction"), DEFAULT_LOGS_REDACTION),
    )


def parse_channel_config(config: Optional[Mapping[str, Any]]) -> ChannelConfig:
    section = read_channel_section(config)
    defaults = ChannelConfig()
    service = str(section.get("service") or defaults.service).strip().lower()
    if service not in SERVICES:
        service = defaults.service
    return ChannelConfig(
        enabled=_safe_bool(section.get("enabled"), defaults.enabled),
        cli_path=str(section.get("cli_path") or "").strip() or defaults.cli_path,
        db_path=str(section.get("db_path") or "").strip() or None,
        service=service,
        region=str(section.get("region") or "").strip() or defaults.region,
        dm_policy=str(section.get("dm_policy") or defaults.dm_policy).strip().lower(),
        allow_from=_safe_string_list(section.get("allow_from"), []),
        group_policy=str(section.get("group_policy") or defaults.group_policy).strip().lower(),
        group_allow_from=_safe_string_list(section.get("group_allow_from"), []),
        include_attachments=_safe_bool(section.get("include_attachments"), defaults.include_attachments),
        media_max_mb=_safe_positive_int(section.get("media_max_mb"), defaults.media_max_mb),
        text_chunk_limit=_safe_positive_int(section.get("text_chunk_limit"), defaults.text_chunk_limit),
        queue_max_depth=_safe_positive_int(section.get("queue_max_depth"), defaults.queue_max_depth),
    )


def load_channel_config(port: ConfigPort) -> ChannelConfig:
    return parse_channel_config(port.get_config())


def _table(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return dict(value) if isinstance(value, Mapping) else {}


def _safe_positive_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _safe_level(value: object, default: str) -> str:
    normalized = str(value or "").strip().lower()
    if normalized == "warning":
        normalized = "warn"
    if normalized not in LEVELS:
        return default
    return normalized


def _safe_redaction(value: object, default: str) -> str:
    normalized = str(value or "").strip().lower()
    if normalized not in ALLOWED_LOG_REDACTION:
        return default
    return normalized


def _safe_string_list(value: object, default: Sequence[str]) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return list(default)
    result: List[str] = []
    for item in value:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if text:
            result.append(text)
    return result
