#!/usr/bin/env python3
"""
Scheduled workflow inventory for GitHub Enterprise Server.

This script enumerates the repositories of an organization, finds GitHub Actions workflows
with `on.schedule` cron triggers, and reports each one with its latest run status and the
last committer of the workflow file. Meant to run as a periodic batch job (e.g. a Kubernetes
CronJob).

Defaults:
- Settings are read from the environment and .env (GITHUB_TOKEN, GITHUB_ORGANIZATION, GITHUB_BASE_URL, ...)
- Repositories listed in /etc/gss/exclude-repos.txt are skipped
- Results are printed to the console

Usage examples:
- Org-wide scan, console table:
  ./scan_schedules.py -v
- JSON export with 20 concurrent scans:
  ./scan_schedules.py --publisher json --output reports/schedules.json --concurrency 20
- HTML page for a team dashboard:
  ./scan_schedules.py --publisher html --output public/index.html
"""
import argparse
import logging
import os
import sys
from typing import Dict, List, Optional

from dotenv import load_dotenv

from schedule_scanner import __version__
from schedule_scanner.client import GitHubEnterpriseClient
from schedule_scanner.config import ScannerConfig
from schedule_scanner.connectivity import ConnectivityChecker
from schedule_scanner.errors import ScannerError
from schedule_scanner.publishers import create_publisher
from schedule_scanner.scanner import RepositoryScanner


def setup_logging(verbosity: int = 1, quiet: bool = False, level_name: Optional[str] = None,
                  log_file: Optional[str] = 'logs/schedule_scan.log'):
    if quiet:
        verbosity = 0
    level = logging.INFO
    if level_name:
        level = getattr(logging, str(level_name).upper(), logging.INFO)
    else:
        if verbosity > 1:
            level = logging.DEBUG
        elif verbosity == 0:
            level = logging.WARNING
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or '.', exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            print(f"Warning: cannot write log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)-8s | %(message)s',
        handlers=handlers,
    )
    # Keep urllib3 connection chatter out of debug runs
    logging.getLogger('urllib3').setLevel(max(level, logging.INFO))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Report scheduled GitHub Actions workflows across an organization')
    parser.add_argument('--org', type=str, help='Organization to scan (overrides GITHUB_ORGANIZATION)')
    parser.add_argument('--token', type=str, help='Personal access token (overrides GITHUB_TOKEN)')
    parser.add_argument('--base-url', type=str, help='API base URL, e.g. https://github.example.com/api/v3')
    parser.add_argument('--concurrency', type=int, help='Max repositories scanned at once (overrides CONCURRENT_SCANS)')
    parser.add_argument('--request-timeout', type=int, help='Per-request timeout in seconds (overrides REQUEST_TIMEOUT)')
    parser.add_argument('--scan-timeout', type=int, help='Overall scan deadline in seconds, 0 for none')
    parser.add_argument('--exclude-file', type=str, help='File with repository names to skip, one per line')
    parser.add_argument('--publisher',
                        choices=['console', 'json', 'slack-canvas', 'slack-webhook', 'discord-webhook', 'html'],
                        help='Where to publish results (overrides PUBLISHER_TYPE)')
    parser.add_argument('--output', type=str, help='Output file for the json (default: stdout) or html publisher')
    parser.add_argument('--html-template', type=str, help='Jinja2 template for the html publisher (overrides HTML_TEMPLATE_PATH)')
    parser.add_argument('--skip-connectivity-check', action='store_true', help='Skip the server reachability check before scanning')
    parser.add_argument('--log-file', type=str, default='logs/schedule_scan.log', help='Log file path ("" to disable)')
    parser.add_argument('-v', '--verbose', action='count', default=1, help='Increase verbosity')
    parser.add_argument('-q', '--quiet', action='store_true', help='Only log warnings and errors')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser.parse_args(argv)


def apply_overrides(config: ScannerConfig, args: argparse.Namespace) -> ScannerConfig:
    if args.org:
        config.github_organization = args.org
    if args.token:
        config.github_token = args.token
    if args.base_url:
        config.github_base_url = args.base_url
    if args.concurrency is not None:
        config.concurrent_scans = args.concurrency
    if args.request_timeout is not None:
        config.request_timeout = args.request_timeout
    if args.scan_timeout is not None:
        config.scan_timeout = args.scan_timeout
    if args.exclude_file is not None:
        config.exclude_repos_file = args.exclude_file
    if args.publisher:
        config.publisher_type = args.publisher
    if args.output:
        if config.publisher_type == 'html':
            config.html_output_path = args.output
        else:
            config.json_output_path = args.output
    if args.html_template:
        config.html_template_path = args.html_template
    config.validate()
    return config


def run(config: ScannerConfig, skip_connectivity_check: bool = False) -> int:
    if not skip_connectivity_check:
        ConnectivityChecker(
            config.github_base_url,
            max_retries=config.connectivity_max_retries,
            retry_interval=config.connectivity_retry_interval,
            timeout=config.connectivity_timeout,
        ).verify_connectivity()

    publisher = create_publisher(config.publisher_type, config.publisher_options())
    logging.info(f"GitHub base URL: {config.github_base_url}")

    with GitHubEnterpriseClient(
        token=config.github_token,
        base_url=config.github_base_url,
        request_timeout=config.request_timeout,
        pool_size=config.concurrent_scans,
    ) as client:
        scanner = RepositoryScanner(
            client,
            concurrency=config.concurrent_scans,
            exclude_file=config.exclude_repos_file,
            scan_timeout=config.scan_timeout,
        )
        result = scanner.scan_scheduled_workflows(config.github_organization)

    publisher.publish(result)
    logging.info(f"Published {result.workflow_count} scheduled workflows via {publisher.name}")
    return 0


def _env_with_overrides(args: argparse.Namespace) -> Dict[str, str]:
    env = dict(os.environ)
    if args.org:
        env['GITHUB_ORGANIZATION'] = args.org
    if args.token:
        env['GITHUB_TOKEN'] = args.token
    if args.base_url:
        env['GITHUB_BASE_URL'] = args.base_url
    return env


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    log_file = args.log_file or None

    load_dotenv(override=True)
    try:
        config = apply_overrides(ScannerConfig.from_env(env=_env_with_overrides(args)), args)
    except ScannerError as e:
        setup_logging(args.verbose, args.quiet, log_file=log_file)
        logging.error(f"Configuration error: {e}")
        print("Please set GITHUB_TOKEN, GITHUB_ORGANIZATION and GITHUB_BASE_URL in your environment or .env")
        return 1

    # LOG_LEVEL applies unless -vv or -q was given explicitly
    level_name = None if args.verbose > 1 or args.quiet else config.log_level
    setup_logging(args.verbose, args.quiet, level_name=level_name, log_file=log_file)

    try:
        return run(config, skip_connectivity_check=args.skip_connectivity_check)
    except ScannerError as e:
        logging.error(f"Scan failed: {e}")
        return 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logging.info("Scan interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        if logging.getLogger().getEffectiveLevel() <= logging.DEBUG:
            import traceback
            traceback.print_exc()
        sys.exit(1)
