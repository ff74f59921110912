"""Shared pytest fixtures and an in-memory source-control test double."""

from __future__ import annotations

import threading
import time
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pytest

from schedule_scanner.client import SourceControlClient
from schedule_scanner.errors import ScanCancelledError, SourceControlError
from schedule_scanner.models import Commit, Repository, User, WorkflowDefinition, WorkflowRun

ORG = "test-org"
CRON_DAILY = "0 0 * * *"


def make_repo(name: str, archived: bool = False) -> Repository:
    return Repository(name=name, full_name=f"{ORG}/{name}", owner=ORG, is_archived=archived)


def workflow_yaml(*crons: str, name: str = "Nightly") -> str:
    if not crons:
        return f"name: {name}\non:\n  push:\n    branches: [main]\njobs: {{}}\n"
    entries = "".join(f"    - cron: '{c}'\n" for c in crons)
    return f"name: {name}\non:\n  schedule:\n{entries}jobs: {{}}\n"


class FakeSourceControlClient(SourceControlClient):
    """Serves canned data; records concurrency and which repositories were touched."""

    def __init__(self, repos: Iterable[Repository] = (), delay: float = 0.0) -> None:
        self.repos: List[Repository] = list(repos)
        self.workflows: Dict[str, List[WorkflowDefinition]] = {}
        self.contents: Dict[Tuple[str, str], str] = {}
        self.runs: Dict[Tuple[str, int], List[WorkflowRun]] = {}
        self.commits: Dict[Tuple[str, str], List[Commit]] = {}
        self.users: Dict[str, User] = {}
        self.delay = delay
        self.fail_listing = False
        self.fail_workflows: Set[str] = set()
        self.fail_content: Set[Tuple[str, str]] = set()
        self.fail_runs = False
        self.fail_commits = False
        self.fail_users = False
        self.cancelled = False
        self.resets = 0
        self.scanned: List[str] = []
        self.listing_pages: List[int] = []
        # Canned (repos, has_next) per page; overrides slicing of `repos`
        self.pages: Optional[List[Tuple[List[Repository], bool]]] = None
        self._lock = threading.Lock()
        self._in_flight: Dict[str, int] = {}
        self.max_concurrent_repos = 0

    # -- setup helpers -------------------------------------------------

    def add_workflow(self, repo: str, wf_id: int, path: str, content: str, name: Optional[str] = None,
                     status: Optional[str] = None, committer: Optional[Commit] = None) -> WorkflowDefinition:
        wf = WorkflowDefinition(id=wf_id, name=name or path.rsplit('/', 1)[-1], path=path)
        self.workflows.setdefault(repo, []).append(wf)
        self.contents[(repo, path)] = content
        if status is not None:
            self.runs[(repo, wf_id)] = [WorkflowRun(id=wf_id * 100, status=status)]
        if committer is not None:
            self.commits[(repo, path)] = [committer]
        return wf

    # -- instrumentation -----------------------------------------------

    def _enter(self, repo: str) -> None:
        if self.cancelled:
            raise ScanCancelledError(f"client cancelled while scanning {repo}")
        with self._lock:
            self._in_flight[repo] = self._in_flight.get(repo, 0) + 1
            self.max_concurrent_repos = max(self.max_concurrent_repos, len(self._in_flight))
        if self.delay:
            time.sleep(self.delay)

    def _exit(self, repo: str) -> None:
        with self._lock:
            self._in_flight[repo] -= 1
            if not self._in_flight[repo]:
                del self._in_flight[repo]

    # -- SourceControlClient -------------------------------------------

    def list_repositories(self, org: str, page: int, per_page: int = 100) -> Tuple[List[Repository], bool]:
        self.listing_pages.append(page)
        if self.fail_listing:
            raise SourceControlError("HTTP 500", operation="list_repositories", status_code=500)
        if self.pages is not None:
            repos, has_next = self.pages[page - 1]
            return list(repos), has_next
        start = (page - 1) * per_page
        return self.repos[start:start + per_page], start + per_page < len(self.repos)

    def list_workflows(self, owner: str, repo: str) -> List[WorkflowDefinition]:
        with self._lock:
            self.scanned.append(repo)
        self._enter(repo)
        try:
            if repo in self.fail_workflows:
                raise SourceControlError(f"HTTP 502 listing workflows of {repo}",
                                         operation="list_workflows", status_code=502)
            return list(self.workflows.get(repo, []))
        finally:
            self._exit(repo)

    def get_file_content(self, owner: str, repo: str, path: str) -> str:
        self._enter(repo)
        try:
            if (repo, path) in self.fail_content:
                raise SourceControlError(f"HTTP 404 for {path}", operation="get_file_content", status_code=404)
            return self.contents[(repo, path)]
        finally:
            self._exit(repo)

    def list_recent_runs(self, owner: str, repo: str, workflow_id: int, limit: int = 1) -> List[WorkflowRun]:
        if self.fail_runs:
            raise SourceControlError("HTTP 500", operation="list_recent_runs", status_code=500)
        return self.runs.get((repo, workflow_id), [])[:limit]

    def list_recent_commits(self, owner: str, repo: str, path: str, limit: int = 1) -> List[Commit]:
        if self.fail_commits:
            raise SourceControlError("HTTP 500", operation="list_recent_commits", status_code=500)
        return self.commits.get((repo, path), [])[:limit]

    def lookup_user(self, username: str) -> Optional[User]:
        if self.fail_users:
            raise SourceControlError("HTTP 500", operation="lookup_user", status_code=500)
        return self.users.get(username)

    def cancel(self) -> None:
        self.cancelled = True

    def reset(self) -> None:
        self.cancelled = False
        self.resets += 1


@pytest.fixture
def fake_client() -> FakeSourceControlClient:
    return FakeSourceControlClient()


@pytest.fixture
def three_repo_client() -> FakeSourceControlClient:
    """repoA has no cron workflows, repoB has one daily workflow, repoC is archived."""
    client = FakeSourceControlClient([make_repo("repoA"), make_repo("repoB"), make_repo("repoC", archived=True)])
    client.add_workflow("repoA", 1, ".github/workflows/ci.yml", workflow_yaml(name="CI"), name="CI")
    client.add_workflow(
        "repoB", 2, ".github/workflows/nightly.yml", workflow_yaml(CRON_DAILY), name="Nightly",
        status="completed", committer=Commit(sha="abc123", author_login="alice", author_name="alice"),
    )
    client.add_workflow("repoC", 3, ".github/workflows/old.yml", workflow_yaml("0 5 * * 1"), name="Old")
    client.users["alice"] = User(login="alice")
    return client
