"""GitHub Enterprise Server REST client behind a small capability interface."""
from __future__ import annotations

import base64
import binascii
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from cachetools import TTLCache

from .errors import SourceControlError
from .models import Commit, Repository, User, WorkflowDefinition, WorkflowRun
from .rate_limit import RetryPolicy, make_rate_limited_session, request_with_rate_limit

# Default HTTP timeout per request in seconds
DEFAULT_REQUEST_TIMEOUT = 60
# User lookups are cached for the lifetime of one scan
DEFAULT_USER_CACHE_TTL = 3600
DEFAULT_USER_CACHE_SIZE = 1000
# GitHub max per_page is 100
MAX_PAGE_SIZE = 100


class SourceControlClient(ABC):
    """Operations the repository scanner needs from the source-control server."""

    @abstractmethod
    def list_repositories(self, org: str, page: int, per_page: int = MAX_PAGE_SIZE) -> Tuple[List[Repository], bool]:
        """Return one page of source (non-fork) repositories and whether another page follows."""

    @abstractmethod
    def list_workflows(self, owner: str, repo: str) -> List[WorkflowDefinition]:
        """Return the workflow definitions registered in a repository."""

    @abstractmethod
    def get_file_content(self, owner: str, repo: str, path: str) -> str:
        """Return the decoded text of a file on the default branch."""

    @abstractmethod
    def list_recent_runs(self, owner: str, repo: str, workflow_id: int, limit: int = 1) -> List[WorkflowRun]:
        """Return the most recent runs of a workflow, newest first."""

    @abstractmethod
    def list_recent_commits(self, owner: str, repo: str, path: str, limit: int = 1) -> List[Commit]:
        """Return the most recent commits touching ``path``, newest first."""

    @abstractmethod
    def lookup_user(self, username: str) -> Optional[User]:
        """Return the user account, or None if it does not exist."""

    def cancel(self) -> None:
        """Abort outstanding backoff waits. The default client has none."""

    def reset(self) -> None:
        """Clear a previous cancel() so the client can serve a new scan."""


class GitHubEnterpriseClient(SourceControlClient):
    """REST adapter for GitHub Enterprise Server (``https://<host>/api/v3``)."""

    def __init__(
        self,
        token: str,
        base_url: str,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        pool_size: int = 10,
        user_agent: str = "ghes-schedule-scanner",
        session: Optional[requests.Session] = None,
        user_cache_ttl: int = DEFAULT_USER_CACHE_TTL,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """Initialize the client.

        Args:
            token: Personal access token for API authentication
            base_url: API base URL, e.g. https://github.example.com/api/v3
            request_timeout: Timeout in seconds applied to every request
            pool_size: HTTP connection pool size; match the scan concurrency
            user_agent: User agent string for API requests
            session: Pre-built session (mainly for tests)
            user_cache_ttl: Seconds to cache user lookups
            retry_policy: Pacing and backoff; read from GITHUB_REQ_* env vars when omitted
        """
        self.base_url = base_url.rstrip('/')
        self.request_timeout = request_timeout
        self.retry_policy = retry_policy or RetryPolicy.from_env()
        self.logger = logging.getLogger("schedule_scanner.api")
        self._session = session or make_rate_limited_session(token, user_agent=user_agent, pool_size=pool_size)
        self._stop = threading.Event()
        self._user_cache: TTLCache = TTLCache(maxsize=DEFAULT_USER_CACHE_SIZE, ttl=user_cache_ttl)
        self._user_cache_lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _get(self, operation: str, path: str, params: Optional[Dict[str, Any]] = None,
             allow_404: bool = False) -> Optional[requests.Response]:
        url = self._url(path)
        try:
            resp = request_with_rate_limit(
                self._session, 'GET', url,
                policy=self.retry_policy,
                logger=self.logger,
                stop_event=self._stop,
                params=params,
                timeout=self.request_timeout,
            )
        except requests.RequestException as e:
            raise SourceControlError(f"{operation}: GET {url} failed: {e}", operation=operation) from e

        if allow_404 and resp.status_code == 404:
            return None
        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            raise SourceControlError(
                f"{operation}: GET {url} returned HTTP {resp.status_code}",
                operation=operation,
                status_code=resp.status_code,
            ) from e
        return resp

    @staticmethod
    def _json(resp: requests.Response, operation: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise SourceControlError(f"{operation}: response is not JSON: {e}", operation=operation) from e

    def list_repositories(self, org: str, page: int, per_page: int = MAX_PAGE_SIZE) -> Tuple[List[Repository], bool]:
        per_page = min(per_page, MAX_PAGE_SIZE)
        params = {
            'type': 'sources',
            'sort': 'full_name',
            'direction': 'asc',
            'per_page': per_page,
            'page': page,
        }
        resp = self._get('list_repositories', f"orgs/{quote(org)}/repos", params=params)
        page_repos = self._json(resp, 'list_repositories') or []
        repos = [Repository.from_dict(r) for r in page_repos]
        # 'sources' already excludes forks on GitHub, but not every server version honours it
        repos = [r for r in repos if not r.is_fork]

        link_header = resp.headers.get('Link', '')
        if not page_repos:
            has_next = False
        elif link_header:
            has_next = 'rel="next"' in link_header
        else:
            has_next = len(page_repos) >= per_page
        return repos, has_next

    def list_workflows(self, owner: str, repo: str) -> List[WorkflowDefinition]:
        workflows: List[WorkflowDefinition] = []
        page = 1
        while True:
            resp = self._get(
                'list_workflows',
                f"repos/{owner}/{repo}/actions/workflows",
                params={'per_page': MAX_PAGE_SIZE, 'page': page},
            )
            data = self._json(resp, 'list_workflows') or {}
            items = data.get('workflows') or []
            workflows.extend(WorkflowDefinition.from_dict(w) for w in items)
            total = data.get('total_count', 0)
            if not items or len(workflows) >= total:
                break
            page += 1
        return workflows

    def get_file_content(self, owner: str, repo: str, path: str) -> str:
        resp = self._get('get_file_content', f"repos/{owner}/{repo}/contents/{quote(path)}")
        data = self._json(resp, 'get_file_content') or {}
        if not isinstance(data, dict):
            raise SourceControlError(f"get_file_content: {path} is not a file", operation='get_file_content')
        content = data.get('content') or ''
        if data.get('encoding') == 'base64':
            try:
                return base64.b64decode(content).decode('utf-8')
            except (binascii.Error, UnicodeDecodeError) as e:
                raise SourceControlError(
                    f"get_file_content: cannot decode {path}: {e}", operation='get_file_content'
                ) from e
        return content

    def list_recent_runs(self, owner: str, repo: str, workflow_id: int, limit: int = 1) -> List[WorkflowRun]:
        resp = self._get(
            'list_recent_runs',
            f"repos/{owner}/{repo}/actions/workflows/{workflow_id}/runs",
            params={'per_page': limit},
        )
        runs = (self._json(resp, 'list_recent_runs') or {}).get('workflow_runs') or []
        return [WorkflowRun.from_dict(r) for r in runs[:limit]]

    def list_recent_commits(self, owner: str, repo: str, path: str, limit: int = 1) -> List[Commit]:
        resp = self._get(
            'list_recent_commits',
            f"repos/{owner}/{repo}/commits",
            params={'path': path, 'per_page': limit},
            allow_404=True,
        )
        if resp is None:
            return []
        commits = self._json(resp, 'list_recent_commits') or []
        return [Commit.from_dict(c) for c in commits[:limit]]

    def lookup_user(self, username: str) -> Optional[User]:
        with self._user_cache_lock:
            if username in self._user_cache:
                self.logger.debug("Cache hit for user %s", username)
                return self._user_cache[username]

        resp = self._get('lookup_user', f"users/{quote(username)}", allow_404=True)
        user = User.from_dict(self._json(resp, 'lookup_user') or {}) if resp is not None else None
        with self._user_cache_lock:
            self._user_cache[username] = user
        return user

    def cancel(self) -> None:
        self._stop.set()

    def reset(self) -> None:
        self._stop.clear()

    def close(self) -> None:
        """Close the underlying session."""
        self._session.close()

    def __enter__(self) -> 'GitHubEnterpriseClient':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
