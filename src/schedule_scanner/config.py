"""Configuration for the schedule scanner, read from the environment and .env."""
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .exclusions import DEFAULT_EXCLUDE_FILE

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_REQUEST_TIMEOUT = 60
DEFAULT_CONCURRENT_SCANS = 10
DEFAULT_PUBLISHER = "console"


def _get_int(env: Mapping[str, str], key: str, default: int, minimum: int = 1) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_str(env: Mapping[str, str], *keys: str, default: str = "") -> str:
    for key in keys:
        value = env.get(key, "").strip()
        if value:
            return value
    return default


@dataclass
class ScannerConfig:
    """Runtime settings. Required: token, organization and base URL."""

    github_token: str
    github_organization: str
    github_base_url: str
    log_level: str = DEFAULT_LOG_LEVEL
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    concurrent_scans: int = DEFAULT_CONCURRENT_SCANS
    scan_timeout: int = 0
    exclude_repos_file: str = DEFAULT_EXCLUDE_FILE
    publisher_type: str = DEFAULT_PUBLISHER
    json_output_path: str = ""
    slack_bot_token: str = ""
    slack_channel_id: str = ""
    slack_canvas_id: str = ""
    slack_webhook_url: str = ""
    discord_webhook_url: str = ""
    html_output_path: str = ""
    html_template_path: str = ""
    connectivity_max_retries: int = 3
    connectivity_retry_interval: int = 5
    connectivity_timeout: int = 5

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        missing = [name for name, value in (
            ("GITHUB_TOKEN", self.github_token),
            ("GITHUB_ORGANIZATION", self.github_organization),
            ("GITHUB_BASE_URL", self.github_base_url),
        ) if not value]
        if missing:
            raise ConfigError(f"{', '.join(missing)} is not set")
        if self.concurrent_scans < 1:
            raise ConfigError(f"CONCURRENT_SCANS must be >= 1, got {self.concurrent_scans}")
        if self.request_timeout < 1:
            raise ConfigError(f"REQUEST_TIMEOUT must be >= 1, got {self.request_timeout}")
        if self.scan_timeout < 0:
            raise ConfigError(f"SCAN_TIMEOUT must be >= 0, got {self.scan_timeout}")
        if self.slack_bot_token and not self.slack_bot_token.startswith("xoxb-"):
            raise ConfigError("SLACK_BOT_TOKEN must start with 'xoxb-'")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "ScannerConfig":
        """Build the configuration from ``env`` (defaults to os.environ).

        With ``dotenv`` set, a .env file in the working directory is loaded first
        and overrides the process environment.
        """
        if env is None:
            if dotenv:
                load_dotenv(override=True)
            env = os.environ
        return cls(
            github_token=_get_str(env, "GITHUB_TOKEN"),
            github_organization=_get_str(env, "GITHUB_ORGANIZATION", "GITHUB_ORG"),
            github_base_url=_get_str(env, "GITHUB_BASE_URL"),
            log_level=_get_str(env, "LOG_LEVEL", default=DEFAULT_LOG_LEVEL).upper(),
            request_timeout=_get_int(env, "REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            concurrent_scans=_get_int(env, "CONCURRENT_SCANS", DEFAULT_CONCURRENT_SCANS),
            scan_timeout=_get_int(env, "SCAN_TIMEOUT", 0, minimum=0),
            exclude_repos_file=_get_str(env, "EXCLUDE_REPOS_FILE", default=DEFAULT_EXCLUDE_FILE),
            publisher_type=_get_str(env, "PUBLISHER_TYPE", default=DEFAULT_PUBLISHER),
            json_output_path=_get_str(env, "JSON_OUTPUT_PATH"),
            slack_bot_token=_get_str(env, "SLACK_BOT_TOKEN", "SLACK_TOKEN"),
            slack_channel_id=_get_str(env, "SLACK_CHANNEL_ID"),
            slack_canvas_id=_get_str(env, "SLACK_CANVAS_ID"),
            slack_webhook_url=_get_str(env, "SLACK_WEBHOOK_URL"),
            discord_webhook_url=_get_str(env, "DISCORD_WEBHOOK_URL"),
            html_output_path=_get_str(env, "HTML_OUTPUT_PATH"),
            html_template_path=_get_str(env, "HTML_TEMPLATE_PATH"),
            connectivity_max_retries=_get_int(env, "CONNECTIVITY_MAX_RETRIES", 3),
            connectivity_retry_interval=_get_int(env, "CONNECTIVITY_RETRY_INTERVAL", 5, minimum=0),
            connectivity_timeout=_get_int(env, "CONNECTIVITY_TIMEOUT", 5),
        )

    def publisher_options(self) -> Dict[str, str]:
        """Settings passed to the publisher factory."""
        return {
            "github_organization": self.github_organization,
            "github_base_url": self.github_base_url,
            "json_output_path": self.json_output_path,
            "slack_bot_token": self.slack_bot_token,
            "slack_channel_id": self.slack_channel_id,
            "slack_canvas_id": self.slack_canvas_id,
            "slack_webhook_url": self.slack_webhook_url,
            "discord_webhook_url": self.discord_webhook_url,
            "html_output_path": self.html_output_path,
            "html_template_path": self.html_template_path,
        }
