"""Unit tests for safekeep/config.py — YAML loading, validation, env overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from safekeep.config import Config, load_config
from safekeep.constants import DEFAULT_RECOVERY_WINDOW_S
from safekeep.guard.identity import Address

OWNER = "0x" + "11" * 20
CUSTODY = "0x" + "22" * 20


@pytest.fixture(autouse=True)
def isolate_search_paths(monkeypatch: pytest.MonkeyPatch) -> None:
    """Never pick up a developer's real ~/.safekeep/config.yaml."""
    monkeypatch.setattr("safekeep.config.DEFAULT_CONFIG_PATHS", [])
    monkeypatch.delenv("SAFEKEEP_CONFIG", raising=False)
    monkeypatch.delenv("SAFEKEEP_PORT", raising=False)
    monkeypatch.delenv("SAFEKEEP_OWNER", raising=False)


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestDefaults:
    def test_no_file_returns_defaults(self) -> None:
        config = load_config()
        assert config.path is None
        assert config.guard.owner is None
        assert config.guard.recovery_window_s == DEFAULT_RECOVERY_WINDOW_S
        assert config.server.host == "127.0.0.1"
        assert config.server.port == 4343
        assert config.audit.enabled is True
        assert config.ledger.opening_balance == 0

    def test_owner_address_none_when_unset(self) -> None:
        assert Config.defaults().owner_address is None
        assert Config.defaults().custody_address is None


class TestLoadFile:
    def test_full_file(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            f"""
version: 1
guard:
  owner: "{OWNER}"
  address: "{CUSTODY}"
  recovery_window_s: 600
ledger:
  opening_balance: 1000
audit:
  enabled: false
  retention_days: 30
  path: /tmp/audit.db
state:
  path: /tmp/state.db
server:
  host: 127.0.0.1
  port: 9000
""",
        )
        config = load_config(path)
        assert config.path == path
        assert config.owner_address == Address.parse(OWNER)
        assert config.custody_address == Address.parse(CUSTODY)
        assert config.guard.recovery_window_s == 600
        assert config.ledger.opening_balance == 1000
        assert config.audit.enabled is False
        assert config.audit.retention_days == 30
        assert config.state.path == "/tmp/state.db"
        assert config.server.port == 9000

    def test_unquoted_address_survives_yaml_int(self, tmp_path: Path) -> None:
        path = _write(tmp_path, f"version: 1\nguard:\n  owner: {OWNER}\n")
        assert load_config(path).guard.owner == OWNER

    def test_env_config_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, "version: 1\nserver:\n  port: 5555\n")
        monkeypatch.setenv("SAFEKEEP_CONFIG", path)
        assert load_config().server.port == 5555

    def test_explicit_path_wins_over_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        explicit = _write(tmp_path, "version: 1\nserver:\n  port: 1111\n")
        other = tmp_path / "other.yaml"
        other.write_text("version: 1\nserver:\n  port: 2222\n")
        monkeypatch.setenv("SAFEKEEP_CONFIG", str(other))
        assert load_config(explicit).server.port == 1111

    def test_unknown_keys_ignored(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "version: 1\nsomething_else: true\n")
        assert load_config(path).version == 1


class TestInvalidFiles:
    def test_invalid_yaml_exits(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "version: 1\nguard: [unclosed\n")
        with pytest.raises(SystemExit) as exc_info:
            load_config(path)
        assert exc_info.value.code == 1

    def test_empty_file_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, ""))

    def test_non_mapping_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "- a\n- b\n"))

    def test_missing_version_exits(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "server:\n  port: 1\n"))
        assert "version" in capsys.readouterr().err

    def test_unsupported_version_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "version: 7\n"))

    def test_malformed_owner_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, 'version: 1\nguard:\n  owner: "0x1234"\n'))

    def test_zero_owner_exits(self, tmp_path: Path) -> None:
        zero = "0x" + "00" * 20
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, f'version: 1\nguard:\n  owner: "{zero}"\n'))

    def test_negative_window_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "version: 1\nguard:\n  recovery_window_s: -5\n"))

    def test_negative_opening_balance_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "version: 1\nledger:\n  opening_balance: -1\n"))


class TestEnvOverrides:
    def test_port_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SAFEKEEP_PORT", "8123")
        assert load_config().server.port == 8123

    def test_bad_port_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SAFEKEEP_PORT", "not-a-port")
        with pytest.raises(SystemExit):
            load_config()

    def test_owner_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, f'version: 1\nguard:\n  owner: "{OWNER}"\n')
        monkeypatch.setenv("SAFEKEEP_OWNER", CUSTODY)
        assert load_config(path).owner_address == Address.parse(CUSTODY)

    def test_bad_owner_override_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SAFEKEEP_OWNER", "alice")
        with pytest.raises(SystemExit):
            load_config()
