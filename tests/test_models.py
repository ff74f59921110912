"""Tests for API payload parsing and result models."""

import json

import pytest

from schedule_scanner.models import (
    Commit,
    Repository,
    ScanError,
    ScanResult,
    User,
    WorkflowDefinition,
    WorkflowInfo,
    WorkflowRun,
)


def _info(**overrides):
    values = dict(
        repo_name="svc",
        workflow_name="Nightly",
        workflow_id=7,
        workflow_file_name=".github/workflows/nightly.yml",
        cron_schedules=("0 0 * * *",),
    )
    values.update(overrides)
    return WorkflowInfo(**values)


def test_repository_from_dict():
    repo = Repository.from_dict({
        "name": "svc",
        "full_name": "platform/svc",
        "owner": {"login": "platform"},
        "archived": True,
        "fork": False,
        "default_branch": "develop",
    })
    assert repo == Repository(name="svc", full_name="platform/svc", owner="platform",
                              is_archived=True, is_fork=False, default_branch="develop")


def test_repository_owner_falls_back_to_full_name():
    repo = Repository.from_dict({"name": "svc", "full_name": "platform/svc"})
    assert repo.owner == "platform"
    assert repo.default_branch == "main"


def test_workflow_definition_from_dict():
    wf = WorkflowDefinition.from_dict({"id": "12", "path": ".github/workflows/ci.yml", "state": "active"})
    assert wf.id == 12
    assert wf.name == ".github/workflows/ci.yml"
    assert wf.file_name == "ci.yml"


def test_workflow_run_from_dict():
    run = WorkflowRun.from_dict({"id": 3, "status": "completed", "conclusion": "success"})
    assert (run.status, run.conclusion) == ("completed", "success")


def test_commit_from_dict_with_and_without_linked_account():
    linked = Commit.from_dict({"sha": "a1", "author": {"login": "alice"},
                               "commit": {"author": {"name": "Alice Kim"}}})
    unlinked = Commit.from_dict({"sha": "b2", "author": None, "commit": {"author": {"name": "ci-bot"}}})
    assert (linked.author_login, linked.author_name) == ("alice", "Alice Kim")
    assert (unlinked.author_login, unlinked.author_name) == (None, "ci-bot")


def test_user_suspension():
    assert User.from_dict({"login": "alice"}).is_active
    assert not User.from_dict({"login": "bob", "suspended_at": "2024-02-01T00:00:00Z"}).is_active


def test_workflow_info_defaults():
    info = _info()
    assert info.last_status == "Unknown"
    assert info.last_committer == "Unknown"
    assert info.is_active_user is False


def test_workflow_info_requires_a_schedule():
    with pytest.raises(ValueError):
        _info(cron_schedules=())


def test_workflow_info_normalises_schedules_to_tuple():
    assert _info(cron_schedules=["0 1 * * *", "0 2 * * *"]).cron_schedules == ("0 1 * * *", "0 2 * * *")


def test_scan_result_counts_and_serialisation():
    result = ScanResult(
        workflows=(_info(last_committer="alice", is_active_user=True), _info(workflow_id=8)),
        total_repos=5,
        excluded_repos_count=1,
        archived_repos_count=2,
        scan_duration=1.23456,
        max_concurrent_scans=2,
        errors=(ScanError(repository="broken", operation="list_workflows", message="HTTP 502"),),
    )

    assert result.workflow_count == 2
    assert result.failed_repos_count == 1
    assert result.unknown_committers_count == 1

    data = json.loads(json.dumps(result.to_dict()))
    assert data["total_repos"] == 5
    assert data["scan_duration_seconds"] == 1.235
    assert data["workflows"][0]["cron_schedules"] == ["0 0 * * *"]
    assert data["errors"] == [{"repository": "broken", "operation": "list_workflows", "message": "HTTP 502"}]
