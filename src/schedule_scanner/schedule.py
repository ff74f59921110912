"""Cron schedule extraction from GitHub Actions workflow files."""
from typing import Any, Dict, List

import yaml

from .errors import WorkflowParseError

# YAML 1.1 resolves a bare `on:` key to the boolean True
_TRIGGER_KEYS = ('on', True)


def parse_workflow(content: str) -> Dict[str, Any]:
    """Parse raw workflow YAML into a document.

    An empty file yields an empty dict. Syntax errors raise WorkflowParseError;
    a document that is valid YAML but not a mapping is returned as-is so that
    the extractor can ignore it.
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise WorkflowParseError(f"invalid workflow YAML: {e}") from e
    return data if data is not None else {}


def _trigger_section(document: Dict[Any, Any]) -> Any:
    for key in _TRIGGER_KEYS:
        if key in document:
            return document[key]
    return None


def extract_schedules(document: Any) -> List[str]:
    """Return the cron expressions under ``on.schedule`` in document order.

    Anything that does not look like a schedule entry is ignored, so this never
    raises and returns an empty list for workflows without a schedule trigger.
    """
    schedules: List[str] = []
    if not isinstance(document, dict):
        return schedules
    triggers = _trigger_section(document)
    if not isinstance(triggers, dict):
        return schedules
    entries = triggers.get('schedule')
    if not isinstance(entries, list):
        return schedules
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        cron = entry.get('cron')
        if isinstance(cron, str):
            schedules.append(cron)
    return schedules
