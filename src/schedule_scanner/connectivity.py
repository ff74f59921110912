"""Preflight check that the GitHub Enterprise Server is reachable."""
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

from .errors import ConnectivityError

logger = logging.getLogger(__name__)


class ConnectivityChecker:
    """Polls ``/api/v3/meta`` until the server answers or retries run out."""

    def __init__(self, base_url: str, max_retries: int = 3, retry_interval: float = 5,
                 timeout: float = 5, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url
        self.max_retries = max_retries if max_retries > 0 else 3
        self.retry_interval = retry_interval if retry_interval >= 0 else 5
        self.timeout = timeout if timeout > 0 else 5
        self._session = session or requests.Session()

    def meta_url(self) -> str:
        parsed = urlparse(self.base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ConnectivityError(f"invalid GitHub Enterprise Server URL: {self.base_url!r}")
        return f"{parsed.scheme}://{parsed.netloc}/api/v3/meta"

    def verify_connectivity(self) -> Dict[str, Any]:
        """Return the server's meta information once it responds with 2xx.

        Raises:
            ConnectivityError: if the URL is invalid or every attempt fails
        """
        url = self.meta_url()
        logger.info("Checking connectivity to %s", url)
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = self._session.get(url, timeout=self.timeout)
            except requests.RequestException as e:
                logger.warning("Connection attempt %d/%d failed: %s", attempt, self.max_retries, e)
            else:
                if 200 <= resp.status_code < 300:
                    try:
                        info = resp.json() or {}
                    except ValueError:
                        logger.warning("Failed to parse server information from %s", url)
                        info = {}
                    logger.info("Connected to GitHub Enterprise Server (version: %s)",
                                info.get("installed_version", "unknown"))
                    return info
                logger.warning("Connection attempt %d/%d returned HTTP %d",
                               attempt, self.max_retries, resp.status_code)
            if attempt < self.max_retries:
                logger.debug("Retrying connection in %ss", self.retry_interval)
                time.sleep(self.retry_interval)
        raise ConnectivityError(
            f"failed to connect to GitHub Enterprise Server after {self.max_retries} attempts"
        )
