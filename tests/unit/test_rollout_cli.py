from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

import pytest
import yaml
from click.testing import CliRunner

from cli.rollout_cli import cli
from deployment.models import Color, RolloutRecord, RolloutState
from deployment.store import SQLiteRolloutStore
from observability.health import HealthServer


@pytest.fixture(autouse=True)
def _isolated_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logging: None
) -> None:
    monkeypatch.chdir(tmp_path)
    for key in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def backend() -> Iterator[HealthServer]:
    with HealthServer(host="127.0.0.1", port=0) as server:
        yield server


def _config(tmp_path: Path, **overrides: Any) -> Path:
    payload: dict[str, Any] = {
        "application": "web",
        "active_image": "web:v1",
        "store_path": str(tmp_path / "state" / "rollouts.sqlite3"),
        "log_json": True,
        "health": {
            "interval": 0.2,
            "timeout": 0.1,
            "healthy_threshold": 1,
            "unhealthy_threshold": 2,
            "grace_period": 0,
        },
        "pool": {"desired_count": 1, "deregistration_delay": 0.1, "endpoints": {}},
        "router": {"entry_point": "web.example.internal:80"},
        "timing": {"bake_time": 0, "provisioning_timeout": 10, "poll_interval": 0.05},
    }
    payload.update(overrides)
    path = tmp_path / "rollout.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf8")
    return path


def _json_lines(output: str) -> list[dict[str, Any]]:
    documents = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("{"):
            try:
                documents.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return documents


def test_deploy_rolls_out_against_live_endpoints(tmp_path: Path, backend: HealthServer) -> None:
    member = f"127.0.0.1:{backend.port}"
    config = _config(tmp_path, pool={"desired_count": 1, "endpoints": {"blue": [member], "green": [member]}})

    result = CliRunner().invoke(cli, ["--config", str(config), "deploy", "web:v2"], obj={})

    assert result.exit_code == 0, result.output
    assert result.output.count("entry point: web.example.internal:80") == 1
    summary = next(doc for doc in _json_lines(result.output) if "active_color" in doc and "outcome" in doc)
    assert summary["outcome"] == "succeeded"
    assert summary["active_color"] == "green"

    store = SQLiteRolloutStore(tmp_path / "state" / "rollouts.sqlite3")
    assert store.get_release("web") == (Color.GREEN, "web:v2")


def test_deploy_of_active_image_exits_with_conflict(tmp_path: Path) -> None:
    config = _config(tmp_path)

    result = CliRunner().invoke(cli, ["--config", str(config), "deploy", "web:v1"], obj={})

    assert result.exit_code == 3
    assert "already active" in result.output


def test_deploy_appends_default_tag(tmp_path: Path) -> None:
    config = _config(tmp_path, active_image="web:latest")

    result = CliRunner().invoke(cli, ["--config", str(config), "deploy", "web"], obj={})

    assert result.exit_code == 3
    assert "web:latest is already active" in result.output


def test_invalid_override_exits_with_config_error(tmp_path: Path) -> None:
    config = _config(tmp_path)

    result = CliRunner().invoke(
        cli, ["--config", str(config), "--set", "health.path=healthz", "deploy", "web:v2"], obj={}
    )

    assert result.exit_code == 2
    assert "health" in result.output


def test_status_reports_release_and_history(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = SQLiteRolloutStore(tmp_path / "state" / "rollouts.sqlite3")
    record = RolloutRecord(
        rollout_id="r-1",
        application="web",
        image="web:v2",
        source_color=Color.BLUE,
        target_color=Color.GREEN,
    )
    record.transition(RolloutState.ROLLING_BACK)
    record.transition(RolloutState.ROLLEDBACK)
    store.save(record)

    result = CliRunner().invoke(cli, ["--config", str(config), "status"], obj={})

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{"):])
    assert payload["active_color"] == "blue"
    assert payload["active_image"] == "web:v1"
    assert payload["rollouts"][0]["outcome"] == "rolledback"

    detail = CliRunner().invoke(cli, ["--config", str(config), "status", "--rollout-id", "r-1"], obj={})
    assert json.loads(detail.output[detail.output.index("{"):])["state"] == "ROLLEDBACK"

    missing = CliRunner().invoke(cli, ["--config", str(config), "status", "--rollout-id", "nope"], obj={})
    assert missing.exit_code == 1


def test_schema_command_writes_file(tmp_path: Path) -> None:
    destination = tmp_path / "schema.json"

    result = CliRunner().invoke(cli, ["schema", "--output", str(destination)], obj={})

    assert result.exit_code == 0, result.output
    assert "timing" in json.loads(destination.read_text(encoding="utf8"))["properties"]


def _stale_rollout(tmp_path: Path, state: RolloutState = RolloutState.BAKING) -> SQLiteRolloutStore:
    store = SQLiteRolloutStore(tmp_path / "state" / "rollouts.sqlite3")
    record = RolloutRecord(
        rollout_id="r-stale",
        application="web",
        image="web:v2",
        previous_image="web:v1",
        source_color=Color.BLUE,
        target_color=Color.GREEN,
        baseline_weights={"blue": 100, "green": 0},
    )
    forward = [
        RolloutState.PROVISIONING,
        RolloutState.TEST_TRAFFIC,
        RolloutState.POST_TEST_HOOK,
        RolloutState.BAKING,
    ]
    for target in forward:
        if record.state is state:
            break
        record.transition(target)
    store.save(record)
    return store


def test_interrupted_rollout_blocks_deploy_until_resumed(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _stale_rollout(tmp_path)

    blocked = CliRunner().invoke(cli, ["--config", str(config), "deploy", "web:v3"], obj={})
    assert blocked.exit_code == 3
    assert "bluegreen resume" in blocked.output

    resumed = CliRunner().invoke(cli, ["--config", str(config), "resume"], obj={})
    assert resumed.exit_code == 4, resumed.output
    summary = next(doc for doc in _json_lines(resumed.output) if "active_color" in doc and "outcome" in doc)
    assert summary["rollout_id"] == "r-stale"
    assert summary["outcome"] == "rolledback"
    assert summary["active_color"] == "blue"
    assert store.active("web") is None

    # The lock is gone: the next deploy is judged on its own merits.
    again = CliRunner().invoke(cli, ["--config", str(config), "deploy", "web:v1"], obj={})
    assert again.exit_code == 3
    assert "already active" in again.output


def test_resume_with_rollback_aborts_pending_rollout(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _stale_rollout(tmp_path, RolloutState.PENDING)

    result = CliRunner().invoke(
        cli, ["--config", str(config), "resume", "r-stale", "--rollback"], obj={}
    )

    assert result.exit_code == 4, result.output
    summary = next(doc for doc in _json_lines(result.output) if "active_color" in doc and "outcome" in doc)
    assert summary["outcome"] == "rolledback"
    assert summary["failure_kind"] == "aborted"
    record = store.load("r-stale")
    assert record is not None and record.state is RolloutState.ROLLEDBACK


def test_resume_without_unfinished_rollout_exits_with_error(tmp_path: Path) -> None:
    config = _config(tmp_path)

    result = CliRunner().invoke(cli, ["--config", str(config), "resume"], obj={})

    assert result.exit_code == 1
    assert "no unfinished rollout for web" in result.output

    unknown = CliRunner().invoke(cli, ["--config", str(config), "resume", "nope"], obj={})
    assert unknown.exit_code == 1
    assert "unknown rollout" in unknown.output
