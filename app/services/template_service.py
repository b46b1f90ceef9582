import re
from typing import Any, Mapping, Optional

_TOKEN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

DEFAULT_SUBJECT_TEMPLATE = "Event {{event_key}}"
DEFAULT_BODY_TEMPLATE = "Event {{event_key}} for {{start_at}}"


def lookup_path(data: Any, path: str) -> Any:
    """Dotted lookup into nested mappings (and list indexes); None when any segment is missing."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def render_template(template: Optional[str], variables: Mapping[str, Any]) -> str:
    """Replace ``{{dot.path}}`` tokens. Unresolved paths render as an empty string."""
    if not template:
        return ""

    def _replace(match: re.Match) -> str:
        value = lookup_path(variables, match.group(1))
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    return _TOKEN.sub(_replace, template)
