"""
Data models for GitHub API responses and scan results.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

UNKNOWN = "Unknown"

# Ordered cron expressions taken from one workflow's schedule trigger
ScheduleSet = List[str]


@dataclass
class Repository:
    """Repository information from the GitHub API."""
    name: str
    full_name: str
    owner: str
    is_archived: bool = False
    is_fork: bool = False
    default_branch: str = "main"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Repository':
        """Create a Repository instance from a REST payload."""
        name = data.get('name') or ''
        full_name = data.get('full_name') or name
        owner = (data.get('owner') or {}).get('login')
        if not owner and '/' in full_name:
            owner = full_name.split('/', 1)[0]
        return cls(
            name=name,
            full_name=full_name,
            owner=owner or '',
            is_archived=bool(data.get('archived', False)),
            is_fork=bool(data.get('fork', False)),
            default_branch=data.get('default_branch') or 'main',
        )


@dataclass
class WorkflowDefinition:
    """A GitHub Actions workflow registered in a repository."""
    id: int
    name: str
    path: str
    state: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.path.rsplit('/', 1)[-1]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        path = data.get('path') or ''
        return cls(
            id=int(data.get('id', 0)),
            name=data.get('name') or path,
            path=path,
            state=data.get('state'),
        )


@dataclass
class WorkflowRun:
    """A single execution of a workflow."""
    id: int
    status: Optional[str] = None
    conclusion: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowRun':
        return cls(
            id=int(data.get('id', 0)),
            status=data.get('status'),
            conclusion=data.get('conclusion'),
        )


@dataclass
class Commit:
    """Commit authorship as returned by the commits listing."""
    sha: str
    author_login: Optional[str] = None
    author_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Commit':
        # 'author' is the linked GitHub account and is null for unmapped emails;
        # 'commit.author' is the raw git author.
        account = data.get('author') or {}
        git_author = (data.get('commit') or {}).get('author') or {}
        return cls(
            sha=data.get('sha') or '',
            author_login=account.get('login'),
            author_name=git_author.get('name'),
        )


@dataclass
class User:
    """GitHub user account."""
    login: str
    name: Optional[str] = None
    suspended_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.suspended_at is None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        return cls(
            login=data.get('login') or '',
            name=data.get('name'),
            suspended_at=data.get('suspended_at'),
        )


@dataclass(frozen=True)
class WorkflowInfo:
    """A scheduled workflow together with its last run and last committer."""
    repo_name: str
    workflow_name: str
    workflow_id: int
    workflow_file_name: str
    cron_schedules: Tuple[str, ...]
    last_status: str = UNKNOWN
    last_committer: str = UNKNOWN
    is_active_user: bool = False

    def __post_init__(self) -> None:
        if not self.cron_schedules:
            raise ValueError(
                f"WorkflowInfo for {self.repo_name}/{self.workflow_file_name} needs at least one cron schedule"
            )
        object.__setattr__(self, 'cron_schedules', tuple(self.cron_schedules))

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['cron_schedules'] = list(self.cron_schedules)
        return result


@dataclass(frozen=True)
class ScanError:
    """A repository that could not be scanned."""
    repository: str
    operation: str
    message: str


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one scan of an organization.

    ``total_repos`` counts every repository returned by the listing, including
    archived and excluded ones; those are reported separately in
    ``archived_repos_count`` and ``excluded_repos_count``.
    """
    workflows: Tuple[WorkflowInfo, ...] = ()
    total_repos: int = 0
    excluded_repos_count: int = 0
    archived_repos_count: int = 0
    scan_duration: float = 0.0
    max_concurrent_scans: int = 0
    errors: Tuple[ScanError, ...] = field(default_factory=tuple)

    @property
    def workflow_count(self) -> int:
        return len(self.workflows)

    @property
    def failed_repos_count(self) -> int:
        return len(self.errors)

    @property
    def unknown_committers_count(self) -> int:
        return sum(1 for wf in self.workflows if wf.last_committer == UNKNOWN)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the result to a JSON-serialisable dictionary."""
        return {
            'workflows': [wf.to_dict() for wf in self.workflows],
            'total_repos': self.total_repos,
            'excluded_repos_count': self.excluded_repos_count,
            'archived_repos_count': self.archived_repos_count,
            'failed_repos_count': self.failed_repos_count,
            'scan_duration_seconds': round(self.scan_duration, 3),
            'max_concurrent_scans': self.max_concurrent_scans,
            'errors': [asdict(err) for err in self.errors],
        }
