"""Scheduled workflow scanner for GitHub Enterprise Server.

This package lists every repository of an organization, finds the GitHub Actions
workflows that run on a cron schedule, and reports each one with its latest run
status and last committer.

Example usage:
    ```python
    from schedule_scanner import GitHubEnterpriseClient, RepositoryScanner

    client = GitHubEnterpriseClient(token="your_token", base_url="https://github.example.com/api/v3")
    scanner = RepositoryScanner(client, concurrency=10, exclude_file="/etc/gss/exclude-repos.txt")
    result = scanner.scan_scheduled_workflows("platform")
    ```
"""
__version__ = '0.1.0'

from .client import GitHubEnterpriseClient, SourceControlClient
from .config import ScannerConfig
from .connectivity import ConnectivityChecker
from .errors import (
    ConfigError,
    ConnectivityError,
    PublishError,
    RepositoryListingError,
    RepositoryScanError,
    ScanCancelledError,
    ScannerError,
    SourceControlError,
    WorkflowParseError,
)
from .exclusions import load_exclusions, parse_exclusions
from .models import (
    Commit,
    Repository,
    ScanError,
    ScanResult,
    User,
    WorkflowDefinition,
    WorkflowInfo,
    WorkflowRun,
)
from .publishers import (
    ConsolePublisher,
    DiscordWebhookPublisher,
    HTMLPublisher,
    JSONPublisher,
    Publisher,
    SlackCanvasPublisher,
    SlackWebhookPublisher,
    create_publisher,
)
from .rate_limit import RetryPolicy
from .reporter import convert_to_kst, format_report
from .scanner import RepositoryScanner, ScanState
from .schedule import extract_schedules, parse_workflow

__all__ = [
    'GitHubEnterpriseClient',
    'SourceControlClient',
    'ScannerConfig',
    'ConnectivityChecker',
    'RepositoryScanner',
    'ScanState',
    'RetryPolicy',
    'Repository',
    'WorkflowDefinition',
    'WorkflowRun',
    'Commit',
    'User',
    'WorkflowInfo',
    'ScanError',
    'ScanResult',
    'extract_schedules',
    'parse_workflow',
    'load_exclusions',
    'parse_exclusions',
    'format_report',
    'convert_to_kst',
    'Publisher',
    'ConsolePublisher',
    'JSONPublisher',
    'SlackCanvasPublisher',
    'SlackWebhookPublisher',
    'DiscordWebhookPublisher',
    'HTMLPublisher',
    'create_publisher',
    'ScannerError',
    'ConfigError',
    'SourceControlError',
    'RepositoryListingError',
    'RepositoryScanError',
    'WorkflowParseError',
    'ScanCancelledError',
    'ConnectivityError',
    'PublishError',
]
