"""Tests for the matrix-sync command line."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import structlog

from matrix_sync import cli
from matrix_sync.errors import MatrixRequestError
from matrix_sync.power_levels import PowerLevelBounds
from matrix_sync.upgrades import RoomReference, RoomUpgradeHistory
from matrix_fixtures import ACCESS_TOKEN, HOMESERVER, OTHER_USER_ID, ROOM_ID


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "matrix-sync.toml"
    path.write_text(
        f'homeserver_url = "{HOMESERVER}"\naccess_token = "{ACCESS_TOKEN}"\n'
    )
    return path


class FakeClient:
    """Stands in for MatrixClient.from_settings in command tests."""

    fail_with: Exception | None = None
    seen_context: dict[str, Any] = {}

    def __init__(self) -> None:
        self.closed = False

    @classmethod
    def from_settings(cls, settings: Any) -> FakeClient:
        return cls()

    async def resolve_room(self, room: str) -> str:
        FakeClient.seen_context = structlog.contextvars.get_contextvars()
        if self.fail_with is not None:
            raise self.fail_with
        return ROOM_ID

    async def get_room_upgrade_history(self, room_id: str) -> RoomUpgradeHistory:
        return RoomUpgradeHistory(
            current=RoomReference(room_id=room_id, version="10"),
            previous=[RoomReference("!old:example.org", "9", "$tombstone")],
        )

    async def calculate_power_level_change_bounds_on(
        self, target_user_id: str, room_id: str
    ) -> PowerLevelBounds:
        return PowerLevelBounds(can_modify=True, maximum_possible_level=100)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> type[FakeClient]:
    monkeypatch.setattr(cli, "MatrixClient", FakeClient)
    monkeypatch.setattr(FakeClient, "fail_with", None)
    monkeypatch.setattr(FakeClient, "seen_context", {})
    return FakeClient


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main([])
    assert exc_info.value.code == 2


def test_parser_accepts_commands() -> None:
    parser = cli._build_parser()

    args = parser.parse_args(["--config", "x.toml", "power-bounds", ROOM_ID, OTHER_USER_ID])

    assert args.cmd == "power-bounds"
    assert args.config == "x.toml"
    assert args.room == ROOM_ID
    assert args.target_user == OTHER_USER_ID
    assert parser.parse_args(["run"]).log_level == "INFO"


def test_missing_config_exits_with_usage_code(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--config", str(tmp_path / "absent.toml"), "run"])

    assert exc_info.value.code == 2
    assert "Missing config file" in capsys.readouterr().err


def test_upgrade_history_prints_json(
    config_path: Path,
    fake_client: type[FakeClient],
    capsys: pytest.CaptureFixture[str],
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--config", str(config_path), "upgrade-history", "#room:example.org"])

    assert exc_info.value.code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["current"] == {
        "room_id": ROOM_ID,
        "version": "10",
        "ref_event_id": None,
    }
    assert output["previous"][0]["ref_event_id"] == "$tombstone"
    assert output["newer"] == []


def test_power_bounds_prints_json(
    config_path: Path,
    fake_client: type[FakeClient],
    capsys: pytest.CaptureFixture[str],
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--config", str(config_path), "power-bounds", ROOM_ID, OTHER_USER_ID])

    assert exc_info.value.code == 0
    assert json.loads(capsys.readouterr().out) == {
        "can_modify": True,
        "maximum_possible_level": 100,
    }


def test_matrix_error_exits_with_failure(
    config_path: Path,
    fake_client: type[FakeClient],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(FakeClient, "fail_with", MatrixRequestError(404))

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--config", str(config_path), "upgrade-history", "#gone:example.org"])

    assert exc_info.value.code == 1


def test_commands_log_with_bound_context(
    config_path: Path, fake_client: type[FakeClient]
) -> None:
    with pytest.raises(SystemExit):
        cli.main(["--config", str(config_path), "upgrade-history", ROOM_ID])

    assert FakeClient.seen_context["command"] == "upgrade-history"
    assert FakeClient.seen_context["homeserver"] == HOMESERVER
    assert structlog.contextvars.get_contextvars() == {}
