"""Publishers that deliver a scan result to stdout, a file, Slack, Discord or an HTML page."""
from __future__ import annotations

import json
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, TextIO

import requests
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape

from . import __version__
from .errors import ConfigError, PublishError
from .models import ScanResult, WorkflowInfo
from .reporter import convert_to_kst, format_report

logger = logging.getLogger(__name__)

SLACK_API_BASE_URL = "https://slack.com/api"
CANVAS_EDIT_ENDPOINT = "/canvases.edit"
# Slack rejects messages with more than 50 blocks
SLACK_MAX_BLOCKS = 50
# Discord limits: 10 embeds per message, 25 fields per embed, 1024 chars per field value
DISCORD_MAX_EMBEDS = 10
DISCORD_MAX_FIELDS = 25
DISCORD_MAX_FIELD_VALUE = 1024
DISCORD_SUMMARY_COLOR = 3447003
DISCORD_WORKFLOW_COLOR = 15844367

WORKFLOW_STATUS_ICONS: Dict[str, str] = {
    "success": ":white_check_mark:",
    "failure": ":x:",
    "cancelled": ":no_entry_sign:",
    "skipped": ":arrow_right_hook:",
    "timed_out": ":stopwatch:",
    "in_progress": ":running:",
    "queued": ":hourglass_flowing_sand:",
    "requested": ":bell:",
    "waiting": ":clock3:",
    "pending": ":pause_button:",
    "completed": ":white_check_mark:",
}
DEFAULT_STATUS_ICON = ":grey_question:"


def workflow_url(github_base_url: str, organization: str, wf: WorkflowInfo) -> str:
    """Browser URL of a workflow's Actions page, derived from the API base URL."""
    base = github_base_url.rstrip('/')
    if base.endswith('/api/v3'):
        base = base[:-len('/api/v3')]
    file_name = wf.workflow_file_name.rsplit('/', 1)[-1]
    return f"{base}/{organization}/{wf.repo_name}/actions/workflows/{file_name}"


def _scan_title(organization: str) -> str:
    return f"GitHub Scheduled Workflows Scan: {organization}"

class Publisher(ABC):
    """Delivers a finished ScanResult somewhere."""

    name = ""

    @abstractmethod
    def publish(self, result: ScanResult) -> None:
        """Publish ``result``; raise PublishError on failure."""


class ConsolePublisher(Publisher):
    name = "console"

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream

    def publish(self, result: ScanResult) -> None:
        logger.info("Publishing scan results to console")
        stream = self.stream or sys.stdout
        stream.write(format_report(result, version=__version__))
        stream.flush()


class JSONPublisher(Publisher):
    """Writes the result as indented JSON to ``output_path`` or stdout when empty."""

    name = "json"

    def __init__(self, output_path: str = "", stream: Optional[TextIO] = None) -> None:
        self.output_path = output_path
        self.stream = stream

    def publish(self, result: ScanResult) -> None:
        data = json.dumps(result.to_dict(), indent=2)
        if not self.output_path:
            stream = self.stream or sys.stdout
            stream.write(data + "\n")
            return
        try:
            parent = os.path.dirname(os.path.abspath(self.output_path))
            os.makedirs(parent, exist_ok=True)
            with open(self.output_path, 'w', encoding='utf-8') as f:
                f.write(data)
        except OSError as e:
            raise PublishError(f"failed to write JSON to {self.output_path}: {e}") from e
        logger.info("JSON report written: %s", self.output_path)


class SlackCanvasPublisher(Publisher):
    """Replaces the content of an existing Slack canvas with a markdown report."""

    name = "slack-canvas"
    max_retries = 3
    initial_backoff = 1.0
    backoff_factor = 2.0

    def __init__(self, token: str, channel_id: str, canvas_id: str, organization: str,
                 github_base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = 30) -> None:
        self.token = token
        self.channel_id = channel_id
        self.canvas_id = canvas_id
        self.organization = organization
        self.github_base_url = github_base_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def _validate(self) -> None:
        if not self.token:
            raise PublishError("invalid configuration: missing Slack API token")
        if not self.token.startswith("xoxb-"):
            raise PublishError("invalid configuration: Slack API token must start with 'xoxb-'")
        if not self.channel_id:
            raise PublishError("invalid configuration: missing Slack channel ID")
        if not self.canvas_id:
            raise PublishError("invalid configuration: missing Canvas ID")

    def workflow_url(self, wf: WorkflowInfo) -> str:
        return workflow_url(self.github_base_url, self.organization, wf)

    def render_markdown(self, result: ScanResult, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        parts: List[str] = ["# GHES Scheduled Workflows\n"]
        parts.append(
            ":bar_chart: *Scan Summary*\n"
            f"* Total Repositories: {result.total_repos}\n"
            f"* Excluded Repositories: {result.excluded_repos_count}\n"
            f"* Scheduled Workflows Found: {result.workflow_count}\n"
            f"* Unknown Committers: {result.unknown_committers_count}\n"
            f"* Failed Repositories: {result.failed_repos_count}\n\n"
            f"*Last Updated:* {now.strftime('%Y-%m-%d %H:%M:%S %Z')} by GHES Schedule Scanner\n"
        )
        for index, wf in enumerate(result.workflows, start=1):
            parts.append(self._workflow_row(wf, index))
        return "\n".join(parts)

    def _workflow_row(self, wf: WorkflowInfo, index: int) -> str:
        schedules = ", ".join(wf.cron_schedules)
        kst = ", ".join(convert_to_kst(s) for s in wf.cron_schedules)
        icon = WORKFLOW_STATUS_ICONS.get(wf.last_status, DEFAULT_STATUS_ICON)
        committer = wf.last_committer
        if not wf.is_active_user:
            committer = f":warning: {wf.last_committer} (Inactive)"
        return (
            f"* *[{index}]* {wf.repo_name}\n"
            f"  * *Workflow:* [{wf.workflow_name}]({self.workflow_url(wf)})\n"
            f"  * *Schedule (UTC):* `{schedules}`\n"
            f"  * *Schedule (KST):* `{kst}`\n"
            f"  * *Last Status:* {icon} {wf.last_status}\n"
            f"  * *Last Commit By:* {committer}\n"
        )

    def publish(self, result: ScanResult) -> None:
        self._validate()
        logger.info("Updating Slack canvas %s with %d workflows", self.canvas_id, result.workflow_count)
        markdown = self.render_markdown(result)
        logger.debug("Canvas markdown:\n%s", markdown)
        payload = {
            "canvas_id": self.canvas_id,
            "changes": [{
                "operation": "replace",
                "document_content": {"type": "markdown", "markdown": markdown},
            }],
        }
        self._post_with_retry(f"{SLACK_API_BASE_URL}{CANVAS_EDIT_ENDPOINT}", payload)
        logger.info("Successfully updated Slack canvas %s", self.canvas_id)

    def _post_with_retry(self, url: str, payload: Dict[str, Any]) -> None:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json; charset=utf-8",
        }
        backoff = self.initial_backoff
        last_error = ""
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.warning("Retrying canvas update (attempt %d/%d) after: %s",
                               attempt, self.max_retries, last_error)
            try:
                resp = self._session.post(url, json=payload, headers=headers, timeout=self.timeout)
            except requests.RequestException as e:
                last_error = f"network error: {e}"
                time.sleep(backoff)
                backoff *= self.backoff_factor
                continue

            if resp.status_code == 429:
                retry_after = resp.headers.get("Retry-After", "")
                wait = float(retry_after) if retry_after.isdigit() and int(retry_after) > 0 else backoff
                last_error = f"rate limited, retrying after {wait:.0f}s"
                time.sleep(wait)
                backoff *= self.backoff_factor
                continue
            if resp.status_code >= 500:
                last_error = f"server error (HTTP {resp.status_code}): {resp.text}"
                time.sleep(backoff)
                backoff *= self.backoff_factor
                continue
            if resp.status_code >= 400:
                raise PublishError(f"canvas update failed with HTTP {resp.status_code}: {resp.text}")

            try:
                body = resp.json()
            except ValueError as e:
                raise PublishError(f"canvas update returned invalid JSON: {e}") from e
            if not body.get("ok"):
                raise PublishError(f"Slack API error updating canvas {self.canvas_id}: {body.get('error')}")
            return

        raise PublishError(
            f"canvas update failed after {self.max_retries + 1} attempts for canvas {self.canvas_id}: {last_error}"
        )



def _committer_label(wf: WorkflowInfo) -> str:
    if wf.is_active_user:
        return wf.last_committer
    return f"{wf.last_committer} (Inactive)"


class _WebhookPublisher(Publisher):
    """POSTs one JSON payload to an incoming-webhook URL."""

    service = ""
    ok_statuses = (200,)

    def __init__(self, webhook_url: str, organization: str, github_base_url: str,
                 session: Optional[requests.Session] = None, timeout: float = 10) -> None:
        self.webhook_url = webhook_url
        self.organization = organization
        self.github_base_url = github_base_url
        self.timeout = timeout
        self._session = session or requests.Session()

    @abstractmethod
    def build_payload(self, result: ScanResult) -> Dict[str, Any]:
        """Message body sent to the webhook."""

    def workflow_url(self, wf: WorkflowInfo) -> str:
        return workflow_url(self.github_base_url, self.organization, wf)

    def publish(self, result: ScanResult) -> None:
        if not self.webhook_url:
            raise PublishError(f"invalid configuration: missing {self.service} webhook URL")
        logger.info("Sending %d workflows to %s webhook", result.workflow_count, self.service)
        payload = self.build_payload(result)
        try:
            resp = self._session.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise PublishError(f"failed to send {self.service} webhook: {e}") from e
        if resp.status_code not in self.ok_statuses:
            raise PublishError(
                f"{self.service} webhook returned HTTP {resp.status_code}: {resp.text}"
            )
        logger.info("%s webhook delivered", self.service)


def _slack_escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class SlackWebhookPublisher(_WebhookPublisher):
    """Posts a Block Kit summary to a Slack incoming webhook.

    One section block is sent per workflow. When the organization has more
    workflows than fit in a single message, the tail is summarised in a
    trailing context block.
    """

    name = "slack-webhook"
    service = "Slack"

    def build_payload(self, result: ScanResult) -> Dict[str, Any]:
        blocks: List[Dict[str, Any]] = [
            {"type": "header", "text": {"type": "plain_text", "text": _scan_title(self.organization)}},
            {"type": "section", "text": {"type": "mrkdwn", "text": (
                f"*Total Repositories:* {result.total_repos}\n"
                f"*Excluded Repositories:* {result.excluded_repos_count}\n"
                f"*Workflows with Schedules:* {result.workflow_count}\n"
                f"*Unknown Committers:* {result.unknown_committers_count}\n"
                f"*Failed Repositories:* {result.failed_repos_count}"
            )}},
            {"type": "divider"},
        ]
        room = SLACK_MAX_BLOCKS - len(blocks)
        shown = result.workflows
        if len(shown) > room:
            shown = shown[:room - 1]
        for wf in shown:
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": self._workflow_text(wf)}})
        hidden = result.workflow_count - len(shown)
        if hidden:
            blocks.append({"type": "context", "elements": [
                {"type": "mrkdwn", "text": f"...and {hidden} more scheduled workflows"},
            ]})
        return {"blocks": blocks}

    def _workflow_text(self, wf: WorkflowInfo) -> str:
        icon = WORKFLOW_STATUS_ICONS.get(wf.last_status, DEFAULT_STATUS_ICON)
        committer = _slack_escape(_committer_label(wf))
        if not wf.is_active_user:
            committer = f":warning: {committer}"
        return (
            f"*<{self.workflow_url(wf)}|{_slack_escape(wf.workflow_name)}>* in `{_slack_escape(wf.repo_name)}`\n"
            f"Schedule (UTC): `{', '.join(wf.cron_schedules)}`\n"
            f"Schedule (KST): `{', '.join(convert_to_kst(s) for s in wf.cron_schedules)}`\n"
            f"Last Status: {icon} {wf.last_status} | Last Commit By: {committer}"
        )


class DiscordWebhookPublisher(_WebhookPublisher):
    """Posts a summary embed plus workflow embeds to a Discord webhook."""

    name = "discord-webhook"
    service = "Discord"
    ok_statuses = (200, 204)

    def build_payload(self, result: ScanResult) -> Dict[str, Any]:
        embeds: List[Dict[str, Any]] = [{
            "title": "Scan Summary",
            "color": DISCORD_SUMMARY_COLOR,
            "fields": [
                {"name": "Total Repositories", "value": str(result.total_repos), "inline": True},
                {"name": "Excluded Repositories", "value": str(result.excluded_repos_count), "inline": True},
                {"name": "Workflows with Schedules", "value": str(result.workflow_count), "inline": True},
                {"name": "Unknown Committers", "value": str(result.unknown_committers_count), "inline": True},
                {"name": "Failed Repositories", "value": str(result.failed_repos_count), "inline": True},
            ],
        }]
        fields = [self._workflow_field(wf) for wf in result.workflows]
        capacity = (DISCORD_MAX_EMBEDS - 1) * DISCORD_MAX_FIELDS
        hidden = max(0, len(fields) - capacity)
        fields = fields[:capacity]
        for start in range(0, len(fields), DISCORD_MAX_FIELDS):
            embeds.append({
                "title": "Scheduled Workflows",
                "color": DISCORD_WORKFLOW_COLOR,
                "fields": fields[start:start + DISCORD_MAX_FIELDS],
            })
        if hidden:
            embeds[-1]["footer"] = {"text": f"...and {hidden} more scheduled workflows"}
        return {"content": _scan_title(self.organization), "embeds": embeds}

    def _workflow_field(self, wf: WorkflowInfo) -> Dict[str, Any]:
        value = (
            f"[{wf.workflow_name}]({self.workflow_url(wf)})\n"
            f"UTC: `{', '.join(wf.cron_schedules)}` | KST: `{', '.join(convert_to_kst(s) for s in wf.cron_schedules)}`\n"
            f"Last Status: {wf.last_status} | Last Commit By: {_committer_label(wf)}"
        )
        return {"name": wf.repo_name[:256], "value": value[:DISCORD_MAX_FIELD_VALUE], "inline": False}


DEFAULT_HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Scheduled Workflows: {{ organization }}</title>
<style>
body { font-family: sans-serif; margin: 2em; }
table { border-collapse: collapse; width: 100%; }
th, td { border: 1px solid #ccc; padding: 4px 8px; text-align: left; }
th { background: #f4f4f4; }
.inactive { color: #b00; }
</style>
</head>
<body>
<h1>GitHub Scheduled Workflows Scan: {{ organization }}</h1>
<p>Generated at {{ generated_at.strftime('%Y-%m-%d %H:%M:%S %Z') }} from {{ github_base_url }}</p>
<ul>
  <li>Total Repositories: {{ result.total_repos }}</li>
  <li>Excluded Repositories: {{ result.excluded_repos_count }}</li>
  <li>Workflows with Schedules: {{ result.workflow_count }}</li>
  <li>Unknown Committers: {{ result.unknown_committers_count }}</li>
  <li>Failed Repositories: {{ result.failed_repos_count }}</li>
</ul>
<table>
<thead>
<tr><th>#</th><th>Repository</th><th>Workflow</th><th>Schedule (UTC)</th><th>Schedule (KST)</th><th>Last Status</th><th>Last Commit By</th></tr>
</thead>
<tbody>
{% for wf in result.workflows %}
<tr>
  <td>{{ loop.index }}</td>
  <td>{{ wf.repo_name }}</td>
  <td><a href="{{ workflow_url(wf) }}">{{ wf.workflow_name }}</a></td>
  <td>{% for s in wf.cron_schedules %}<code>{{ s }}</code>{% if not loop.last %}<br>{% endif %}{% endfor %}</td>
  <td>{% for s in wf.cron_schedules %}<code>{{ s | kst }}</code>{% if not loop.last %}<br>{% endif %}{% endfor %}</td>
  <td>{{ wf.last_status }}</td>
  <td{% if not wf.is_active_user %} class="inactive"{% endif %}>{{ wf.last_committer }}{% if not wf.is_active_user %} (Inactive){% endif %}</td>
</tr>
{% endfor %}
</tbody>
</table>
</body>
</html>
"""


class HTMLPublisher(Publisher):
    """Renders the result to a standalone HTML page.

    ``template_path`` points at a Jinja2 template receiving ``result``,
    ``organization``, ``github_base_url``, ``generated_at``, the
    ``workflow_url(wf)`` helper and the ``kst`` filter. The built-in template
    is used when it is empty. Output is autoescaped.
    """

    name = "html"

    def __init__(self, output_path: str, organization: str, github_base_url: str,
                 template_path: str = "") -> None:
        self.output_path = output_path
        self.organization = organization
        self.github_base_url = github_base_url
        self.template_path = template_path

    def _environment(self, loader: Optional[FileSystemLoader] = None) -> Environment:
        env = Environment(
            loader=loader,
            autoescape=select_autoescape(["html", "htm", "j2"], default_for_string=True, default=True),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.filters["kst"] = convert_to_kst
        return env

    def render(self, result: ScanResult, now: Optional[datetime] = None) -> str:
        if self.template_path:
            directory, file_name = os.path.split(os.path.abspath(self.template_path))
            template = self._environment(FileSystemLoader(directory)).get_template(file_name)
        else:
            template = self._environment().from_string(DEFAULT_HTML_TEMPLATE)
        return template.render(
            result=result,
            organization=self.organization,
            github_base_url=self.github_base_url,
            generated_at=now or datetime.now(timezone.utc),
            workflow_url=lambda wf: workflow_url(self.github_base_url, self.organization, wf),
        )

    def publish(self, result: ScanResult) -> None:
        if not self.output_path:
            raise PublishError("invalid configuration: missing HTML output path")
        try:
            html = self.render(result)
        except TemplateError as e:
            raise PublishError(f"failed to render HTML report: {e}") from e
        try:
            parent = os.path.dirname(os.path.abspath(self.output_path))
            os.makedirs(parent, exist_ok=True)
            with open(self.output_path, 'w', encoding='utf-8') as f:
                f.write(html)
        except OSError as e:
            raise PublishError(f"failed to write HTML to {self.output_path}: {e}") from e
        logger.info("HTML report written: %s", self.output_path)


def create_publisher(kind: str, options: Mapping[str, str]) -> Publisher:
    """Build the publisher named ``kind`` from ``options`` (see ScannerConfig.publisher_options)."""
    organization = options.get("github_organization", "")
    base_url = options.get("github_base_url", "")
    if kind == "console":
        return ConsolePublisher()
    if kind == "json":
        return JSONPublisher(options.get("json_output_path", ""))
    if kind == "slack-canvas":
        return SlackCanvasPublisher(
            token=options.get("slack_bot_token", ""),
            channel_id=options.get("slack_channel_id", ""),
            canvas_id=options.get("slack_canvas_id", ""),
            organization=organization,
            github_base_url=base_url,
        )
    if kind == "slack-webhook":
        return SlackWebhookPublisher(options.get("slack_webhook_url", ""), organization, base_url)
    if kind == "discord-webhook":
        return DiscordWebhookPublisher(options.get("discord_webhook_url", ""), organization, base_url)
    if kind == "html":
        return HTMLPublisher(
            output_path=options.get("html_output_path", ""),
            organization=organization,
            github_base_url=base_url,
            template_path=options.get("html_template_path", ""),
        )
    raise ConfigError(f"unknown publisher type: {kind}")
