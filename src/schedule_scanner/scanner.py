"""Concurrent scan of an organization's repositories for scheduled workflows.

The scanner lists every repository of an organization, then fans out one task
per eligible repository on a bounded thread pool. Each task lists the
repository's workflows, parses each workflow file for ``on.schedule`` cron
triggers and, for scheduled workflows only, looks up the latest run status and
the last committer of the workflow file.

Failures of a single repository are recorded on the result and logged; they
never abort the scan. Only a failed repository listing or a cancellation does.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from .client import MAX_PAGE_SIZE, SourceControlClient
from .errors import (
    ConfigError,
    RepositoryListingError,
    RepositoryScanError,
    ScanCancelledError,
    SourceControlError,
)
from .exclusions import load_exclusions
from .models import UNKNOWN, Repository, ScanError, ScanResult, WorkflowDefinition, WorkflowInfo
from .schedule import extract_schedules, parse_workflow

DEFAULT_CONCURRENCY = 10
# How often the coordinator re-checks cancellation and the deadline
_POLL_INTERVAL_SEC = 0.05

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    """Lifecycle of a single scan invocation."""
    IDLE = 'idle'
    DISCOVERING = 'discovering'
    SCANNING = 'scanning'
    AGGREGATING = 'aggregating'
    DONE = 'done'
    FAILED = 'failed'


class _ScanRun:
    """Shared state of one scan. Every mutation goes through ``_lock``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.workflows: List[WorkflowInfo] = []
        self.errors: List[ScanError] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def task_started(self) -> int:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            return self.in_flight

    def task_finished(self) -> None:
        with self._lock:
            self.in_flight -= 1

    def add_workflows(self, workflows: List[WorkflowInfo]) -> None:
        with self._lock:
            self.workflows.extend(workflows)

    def add_error(self, error: ScanError) -> None:
        with self._lock:
            self.errors.append(error)


class RepositoryScanner:
    """Scans an organization for workflows with cron triggers."""

    def __init__(
        self,
        client: SourceControlClient,
        concurrency: int = DEFAULT_CONCURRENCY,
        exclusions: Optional[Iterable[str]] = None,
        exclude_file: Optional[str] = None,
        scan_timeout: Optional[float] = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        """Initialize the scanner.

        Args:
            client: Source-control capability used for every remote call
            concurrency: Maximum number of repositories scanned at once (>= 1)
            exclusions: Repository names to skip
            exclude_file: Path of a one-name-per-line exclusion list; merged with ``exclusions``
            scan_timeout: Overall deadline in seconds for one scan; None or 0 disables it
            page_size: Repositories requested per listing page

        Raises:
            ConfigError: if ``concurrency`` or ``scan_timeout`` is out of range
        """
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise ConfigError(f"concurrency must be a positive integer, got {concurrency!r}")
        if scan_timeout is not None and scan_timeout < 0:
            raise ConfigError(f"scan_timeout must not be negative, got {scan_timeout!r}")
        self.client = client
        self.concurrency = concurrency
        self.scan_timeout = scan_timeout or None
        self.page_size = page_size
        self.excluded_repos = frozenset(exclusions or ()) | load_exclusions(exclude_file)
        self.state = ScanState.IDLE
        self._abort = threading.Event()

    # ------------
    # Public entry
    # ------------

    def scan_scheduled_workflows(self, org: str, cancel_event: Optional[threading.Event] = None) -> ScanResult:
        """Scan all repositories of ``org`` and return the scheduled workflows found.

        Args:
            org: Organization login
            cancel_event: Set it from another thread to cancel the scan

        Returns:
            ScanResult with every scheduled workflow from the repositories that
            scanned cleanly; repositories that failed are listed in ``errors``.

        Raises:
            RepositoryListingError: if any page of the repository listing fails
            ScanCancelledError: if ``cancel_event`` is set or the deadline passes
        """
        start = time.monotonic()
        deadline = start + self.scan_timeout if self.scan_timeout else None
        self._abort.clear()
        self.client.reset()

        logger.info("Starting workflow scan of organization %s (max concurrent scans: %d)", org, self.concurrency)

        self.state = ScanState.DISCOVERING
        try:
            repos = self._discover_repositories(org, cancel_event, deadline)
        except (RepositoryListingError, ScanCancelledError):
            self.state = ScanState.FAILED
            raise

        eligible, archived_count, excluded_count = self._filter_repositories(repos)
        logger.info("Found %d repositories (%d archived, %d excluded, %d to scan)",
                    len(repos), archived_count, excluded_count, len(eligible))

        self.state = ScanState.SCANNING
        run = _ScanRun()
        try:
            self._fan_out(eligible, run, cancel_event, deadline)
        except ScanCancelledError:
            self.state = ScanState.FAILED
            raise

        self.state = ScanState.AGGREGATING
        duration = time.monotonic() - start
        logger.info("Scan completed in %.2fs: %d scheduled workflows, max %d concurrent scans, %d failed repositories",
                    duration, len(run.workflows), run.max_in_flight, len(run.errors))
        if run.errors:
            logger.warning("%d of %d repositories failed to scan: %s",
                           len(run.errors), len(eligible),
                           "; ".join(f"{e.repository} ({e.operation}: {e.message})" for e in run.errors))

        result = ScanResult(
            workflows=tuple(run.workflows),
            total_repos=len(repos),
            excluded_repos_count=excluded_count,
            archived_repos_count=archived_count,
            scan_duration=duration,
            max_concurrent_scans=run.max_in_flight,
            errors=tuple(run.errors),
        )
        self.state = ScanState.DONE
        return result

    # ---------
    # Discovery
    # ---------

    def _discover_repositories(self, org: str, cancel_event: Optional[threading.Event],
                               deadline: Optional[float]) -> List[Repository]:
        repos: List[Repository] = []
        page = 1
        while True:
            self._raise_if_stopped(cancel_event, deadline)
            try:
                page_repos, has_next = self.client.list_repositories(org, page, per_page=self.page_size)
            except SourceControlError as e:
                logger.error("Failed to list repositories of %s (page %d): %s", org, page, e)
                raise RepositoryListingError(
                    f"failed to list repositories of {org} (page {page}): {e}",
                    operation='list_repositories',
                    status_code=e.status_code,
                ) from e
            logger.debug("Fetched repository page %d (%d repositories)", page, len(page_repos))
            repos.extend(page_repos)
            if not has_next:
                break
            page += 1
        return repos

    def _filter_repositories(self, repos: List[Repository]) -> Tuple[List[Repository], int, int]:
        eligible: List[Repository] = []
        archived = 0
        excluded = 0
        for repo in repos:
            if repo.is_archived:
                logger.info("Skipping archived repository: %s", repo.name)
                archived += 1
                continue
            if repo.name in self.excluded_repos:
                logger.info("Skipping excluded repository: %s", repo.name)
                excluded += 1
                continue
            eligible.append(repo)
        return eligible, archived, excluded

    # -------
    # Fan-out
    # -------

    def _fan_out(self, repos: List[Repository], run: _ScanRun,
                 cancel_event: Optional[threading.Event], deadline: Optional[float]) -> None:
        slots = threading.BoundedSemaphore(self.concurrency)
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="repo-scan")
        futures: List[Future] = []
        aborted = False
        try:
            for repo in repos:
                if not self._acquire_slot(slots, cancel_event, deadline):
                    aborted = True
                    break
                future = executor.submit(self._scan_task, repo, run)
                # Runs on success, failure and cancellation alike
                future.add_done_callback(lambda _f: slots.release())
                futures.append(future)

            pending = set(futures)
            while pending and not aborted:
                _, pending = wait(pending, timeout=_POLL_INTERVAL_SEC, return_when=FIRST_COMPLETED)
                if self._stop_reason(cancel_event, deadline):
                    aborted = True
        finally:
            if aborted:
                self._abort.set()
                self.client.cancel()
            executor.shutdown(wait=not aborted, cancel_futures=True)

        if aborted:
            reason = self._stop_reason(cancel_event, deadline) or "scan cancelled"
            logger.error("Scan aborted: %s", reason)
            raise ScanCancelledError(reason)

    def _acquire_slot(self, slots: threading.BoundedSemaphore,
                      cancel_event: Optional[threading.Event], deadline: Optional[float]) -> bool:
        while not slots.acquire(timeout=_POLL_INTERVAL_SEC):
            if self._stop_reason(cancel_event, deadline):
                return False
        if self._stop_reason(cancel_event, deadline):
            slots.release()
            return False
        return True

    @staticmethod
    def _stop_reason(cancel_event: Optional[threading.Event], deadline: Optional[float]) -> Optional[str]:
        if cancel_event is not None and cancel_event.is_set():
            return "scan cancelled"
        if deadline is not None and time.monotonic() >= deadline:
            return "scan deadline exceeded"
        return None

    def _raise_if_stopped(self, cancel_event: Optional[threading.Event], deadline: Optional[float]) -> None:
        reason = self._stop_reason(cancel_event, deadline)
        if reason:
            logger.error("Scan aborted: %s", reason)
            raise ScanCancelledError(reason)

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise ScanCancelledError("scan cancelled")

    # ------------------
    # Per-repository scan
    # ------------------

    def _scan_task(self, repo: Repository, run: _ScanRun) -> None:
        active = run.task_started()
        logger.debug("Scanning repository %s (active scans: %d)", repo.name, active)
        try:
            workflows = self.scan_repository(repo)
        except ScanCancelledError:
            return
        except RepositoryScanError as e:
            logger.error("Failed to scan repository %s: %s", repo.name, e)
            run.add_error(ScanError(repository=repo.name, operation=e.operation, message=str(e.cause)))
            return
        except Exception as e:
            logger.error("Unexpected error scanning repository %s: %s", repo.name, e)
            run.add_error(ScanError(repository=repo.name, operation='scan_repository', message=str(e)))
            return
        finally:
            run.task_finished()

        if workflows:
            logger.info("Found %d scheduled workflows in %s", len(workflows), repo.name)
            run.add_workflows(workflows)

    def scan_repository(self, repo: Repository) -> List[WorkflowInfo]:
        """Return the scheduled workflows of one repository.

        Raises:
            RepositoryScanError: if the workflows cannot be listed, or a workflow
                file cannot be fetched or parsed
        """
        self._check_abort()
        try:
            workflows = self.client.list_workflows(repo.owner, repo.name)
        except ScanCancelledError:
            raise
        except Exception as e:
            raise RepositoryScanError(repo.name, 'list_workflows', e) from e

        scheduled: List[WorkflowInfo] = []
        for workflow in workflows:
            logger.debug("Checking workflow %s in %s", workflow.path, repo.name)
            schedules = self._workflow_schedules(repo, workflow)
            if not schedules:
                logger.debug("No schedules found in %s/%s", repo.name, workflow.path)
                continue

            logger.info("Found scheduled workflow %s in %s: %s", workflow.name, repo.name, ", ".join(schedules))
            last_status = self._last_run_status(repo, workflow)
            committer, is_active = self._last_committer(repo, workflow)
            scheduled.append(WorkflowInfo(
                repo_name=repo.name,
                workflow_name=workflow.name,
                workflow_id=workflow.id,
                workflow_file_name=workflow.path,
                cron_schedules=tuple(schedules),
                last_status=last_status,
                last_committer=committer,
                is_active_user=is_active,
            ))
        return scheduled

    def _workflow_schedules(self, repo: Repository, workflow: WorkflowDefinition) -> List[str]:
        self._check_abort()
        try:
            content = self.client.get_file_content(repo.owner, repo.name, workflow.path)
        except ScanCancelledError:
            raise
        except Exception as e:
            raise RepositoryScanError(repo.name, f'get_file_content {workflow.path}', e) from e
        try:
            document = parse_workflow(content)
        except Exception as e:
            raise RepositoryScanError(repo.name, f'parse_workflow {workflow.path}', e) from e
        return extract_schedules(document)

    def _last_run_status(self, repo: Repository, workflow: WorkflowDefinition) -> str:
        self._check_abort()
        try:
            runs = self.client.list_recent_runs(repo.owner, repo.name, workflow.id, limit=1)
        except ScanCancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to get workflow runs for %s/%s: %s", repo.name, workflow.path, e)
            return UNKNOWN
        if not runs or not runs[0].status:
            return UNKNOWN
        return runs[0].status

    def _last_committer(self, repo: Repository, workflow: WorkflowDefinition) -> Tuple[str, bool]:
        """Return (committer, is_active_user) for the newest commit touching the workflow file."""
        self._check_abort()
        try:
            commits = self.client.list_recent_commits(repo.owner, repo.name, workflow.path, limit=1)
        except ScanCancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to get commits for %s/%s: %s", repo.name, workflow.path, e)
            return UNKNOWN, False
        if not commits:
            return UNKNOWN, False

        commit = commits[0]
        committer = commit.author_name or commit.author_login or UNKNOWN
        if not commit.author_login:
            # Commit email is not linked to any account
            return committer, False

        self._check_abort()
        try:
            user = self.client.lookup_user(commit.author_login)
        except ScanCancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to look up user %s: %s", commit.author_login, e)
            return committer, False
        return committer, user is not None and user.is_active
