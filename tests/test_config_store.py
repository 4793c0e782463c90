from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from imsg_bridge.config import (
    FileConfigStore,
    initialize_project_config,
    load_settings,
    parse_channel_config,
    read_config_document,
    render_config_document,
    write_config_document,
)
from imsg_bridge.errors import ConfigError


def test_init_writes_default_document(isolated_env):
    config_file = Path(isolated_env["config_file"])
    document = read_config_document(config_file)

    channel = document["channels"]["imessage"]
    assert channel["dm_policy"] == "pairing"
    assert channel["group_policy"] == "allowlist"
    assert channel["allow_from"] == []
    assert channel["text_chunk_limit"] == 4000
    assert document["bridge"]["agent"]["command"] == "claude"
    assert (Path(isolated_env["config_root"]) / "logs").is_dir()


def test_init_refuses_existing_directory_without_force(isolated_env):
    workspace = Path(isolated_env["workspace"])
    config_file = Path(isolated_env["config_file"])
    config_file.write_text('[channels.imessage]\ndm_policy = "open"\n', encoding="utf-8")

    with pytest.raises(ConfigError):
        initialize_project_config(workspace_dir=workspace)

    initialize_project_config(workspace_dir=workspace, force=True)
    assert read_config_document(config_file)["channels"]["imessage"]["dm_policy"] == "pairing"


def test_default_settings(isolated_env):
    settings = load_settings(Path(isolated_env["workspace"]))

    assert settings.agent_command == "claude"
    assert settings.agent_args == ["-p"]
    assert settings.agent_timeout_sec == 300
    assert settings.identity == {"name": "imsg-bridge"}
    assert settings.platform_override is False
    assert settings.logs_enabled is True
    assert settings.logs_level == "debug"
    assert settings.logs_console_level == "warn"
    assert settings.logs_dir == Path(isolated_env["config_root"]) / "logs"


def test_settings_coerce_bad_values(isolated_env):
    config_file = Path(isolated_env["config_file"])
    config_file.write_text(
        "\n".join(
            [
                "[bridge]",
                'platform_override = "yes"',
                "[bridge.agent]",
                'command = "  "',
                'args = ["--print", 3, ""]',
                "timeout = -5",
                "[bridge.identity]",
                'name = "Ava"',
                'emoji = "*"',
                "[bridge.logs]",
                'level = "WARNING"',
                'redaction = "paranoid"',
                "max_files = true",
                "",
            ]
        ),
        encoding="utf-8",
    )

    settings = load_settings(Path(isolated_env["workspace"]))

    assert settings.platform_override is True
    assert settings.agent_command == "claude"
    assert settings.agent_args == ["--print", "3"]
    assert settings.agent_timeout_sec == 300
    assert settings.identity == {"name": "Ava", "emoji": "*"}
    assert settings.logs_level == "warn"
    assert settings.logs_redaction == "default"
    assert settings.logs_max_files == 5


def test_channel_config_defaults_and_coercion():
    defaults = parse_channel_config({})
    assert defaults.enabled is True
    assert defaults.cli_path == "imsg"
    assert defaults.db_path is None
    assert defaults.service == "auto"
    assert defaults.queue_max_depth == 100

    parsed = parse_channel_config(
        {
            "channels": {
                "imessage": {
                    "enabled": "off",
                    "cli_path": " /opt/imsg ",
                    "db_path": "",
                    "service": "SMS",
                    "dm_policy": " Open ",
                    "allow_from": ["+1555", None, "  ", 42],
                    "group_allow_from": "not-a-list",
                    "text_chunk_limit": "0",
                    "queue_max_depth": "7",
                }
            }
        }
    )
    assert parsed.enabled is False
    assert parsed.cli_path == "/opt/imsg"
    assert parsed.db_path is None
    assert parsed.service == "sms"
    assert parsed.dm_policy == "open"
    assert parsed.allow_from == ["+1555", "42"]
    assert parsed.group_allow_from == []
    assert parsed.text_chunk_limit == 4000
    assert parsed.queue_max_depth == 7

    assert parse_channel_config({"channels": {"imessage": {"service": "fax"}}}).service == "auto"
    assert parse_channel_config({"channels": "broken"}).dm_policy == "pairing"


def test_store_save_preserves_unrelated_tables(isolated_env):
    config_file = Path(isolated_env["config_file"])
    with config_file.open("a", encoding="utf-8") as handle:
        handle.write('\n[plugins.weather]\napi_url = "https://example.invalid"\nretries = 3\n')
    store = FileConfigStore(config_file)

    document = store.get_config()
    document["channels"]["imessage"]["allow_from"] = ["+15550001111"]
    asyncio.run(store.save_config(document))

    reloaded = store.get_config()
    assert reloaded["channels"]["imessage"]["allow_from"] == ["+15550001111"]
    assert reloaded["plugins"]["weather"] == {"api_url": "https://example.invalid", "retries": 3}
    assert reloaded["bridge"]["agent"]["args"] == ["-p"]


def test_store_reads_fresh_from_disk(isolated_env):
    config_file = Path(isolated_env["config_file"])
    store = FileConfigStore(config_file)
    assert store.get_config()["channels"]["imessage"]["dm_policy"] == "pairing"

    document = read_config_document(config_file)
    document["channels"]["imessage"]["dm_policy"] = "closed"
    write_config_document(config_file, document)

    assert store.get_config()["channels"]["imessage"]["dm_policy"] == "closed"


def test_render_escapes_strings_and_keys(tmp_path):
    config_file = tmp_path / "config.toml"
    document = {
        "title": 'say "hi"\nback\\slash',
        "tables": {"odd key": {"value": 1.5, "flags": [True, False]}},
        "empty": {},
    }

    write_config_document(config_file, document)

    assert read_config_document(config_file) == document
    assert '[tables."odd key"]' in render_config_document(document)


def test_render_rejects_null_values():
    with pytest.raises(ConfigError):
        render_config_document({"channels": {"imessage": {"db_path": None}}})


def test_missing_and_invalid_files_raise_config_error(tmp_path):
    with pytest.raises(ConfigError):
        read_config_document(tmp_path / "missing.toml")

    broken = tmp_path / "broken.toml"
    broken.write_text("[channels\nnope", encoding="utf-8")
    with pytest.raises(ConfigError):
        read_config_document(broken)
