from __future__ import annotations

import pytest

from ucmforge import cli
from ucmforge.config import reset_config
from ucmforge.task import DONE, FAILED, REJECTED, REVIEW, TaskDag


@pytest.fixture()
def forge_home(monkeypatch, tmp_path):
    home = tmp_path / "forge"
    monkeypatch.setenv("FORGE_HOME", str(home))
    monkeypatch.delenv("FORGE_CONFIG", raising=False)
    reset_config()
    yield home
    reset_config()


def test_parser_accepts_run_options() -> None:
    args = cli.build_parser().parse_args(
        ["run", "Add login", "--pipeline", "design,implement", "--autopilot", "--budget", "5000"]
    )
    assert args.command == "run"
    assert args.pipeline == "design,implement"
    assert args.autopilot is True
    assert args.budget == 5000

    resume = cli.build_parser().parse_args(["resume", "forge-20260101-abcd", "--from", "verify"])
    assert resume.from_stage == "verify"


@pytest.mark.parametrize("status, code", [(DONE, 0), (REVIEW, 10), (FAILED, 1), (REJECTED, 1)])
def test_status_exit_codes(status, code) -> None:
    assert cli.status_exit_code(TaskDag(id="forge-20260101-abcd", status=status)) == code


def test_reject_then_approve_fails(forge_home) -> None:
    dag = TaskDag(id="forge-20260101-cli1", status=REVIEW)
    dag.save(forge_home / "tasks")

    assert cli.main(["reject", dag.id, "--feedback", "wrong colours"]) == 0
    assert TaskDag.load(forge_home / "tasks", dag.id).status == REJECTED
    assert (forge_home / "tasks" / dag.id / "rejection-feedback.md").read_text(encoding="utf-8") == "wrong colours"
    assert cli.main(["approve", dag.id]) == 1
    assert (forge_home / "live.log").exists()


def test_unknown_pipeline_is_an_error(forge_home) -> None:
    assert cli.main(["run", "Add login", "--pipeline", "gigantic"]) == 1


def test_missing_config_file_is_an_error(forge_home, tmp_path) -> None:
    assert cli.main(["--config", str(tmp_path / "nope.yaml"), "approve", "forge-20260101-abcd"]) == 1
