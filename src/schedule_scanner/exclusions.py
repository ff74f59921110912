"""Static list of repositories to leave out of a scan."""
import logging
import os
from typing import FrozenSet, Optional

DEFAULT_EXCLUDE_FILE = "/etc/gss/exclude-repos.txt"

logger = logging.getLogger(__name__)


def parse_exclusions(text: str) -> FrozenSet[str]:
    """One repository name per line; blank lines and '#' comments are ignored."""
    names = set()
    for line in text.splitlines():
        name = line.strip()
        if not name or name.startswith('#'):
            continue
        names.add(name)
    return frozenset(names)


def load_exclusions(path: Optional[str]) -> FrozenSet[str]:
    """Load the exclusion list from ``path``.

    A missing file means nothing is excluded. Read errors are logged and also
    treated as an empty list so that a broken mount never stops a scan.
    """
    if not path:
        return frozenset()
    if not os.path.exists(path):
        logger.debug("Exclusion file %s not found; no repositories excluded", path)
        return frozenset()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            names = parse_exclusions(f.read())
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read exclusion file %s: %s. Continuing without exclusions.", path, e)
        return frozenset()
    for name in sorted(names):
        logger.info("Will exclude repository from scan: %s (source: %s)", name, path)
    return names
