"""HTML viewer rendering."""

import json
import re
from functools import lru_cache
from importlib import resources

_PLACEHOLDER = re.compile(r"__KV_(DATA|POLL|API)__")


@lru_cache(maxsize=1)
def _template() -> str:
    template = resources.files("kvnotes").joinpath("templates").joinpath("viewer.html")
    return template.read_text(encoding="utf-8")


def _script_safe(json_text: str) -> str:
    """JSON text that cannot end or reopen the <script> element it sits in."""
    # "<" only occurs inside JSON strings, where \u003c decodes to the same text
    return json_text.replace("<", "\\u003c")


def render_html(records_json: str, poll_endpoint: str = "", api_endpoint: str = "") -> str:
    """
    Fill the viewer template.

    Args:
        records_json: JSON array of records to embed
        poll_endpoint: URL the page polls for fresh data ("" for a static page)
        api_endpoint: URL prefix for mutations ("" makes the page read-only)
    """
    values = {
        "DATA": _script_safe(records_json),
        "POLL": _script_safe(json.dumps(poll_endpoint)),
        "API": _script_safe(json.dumps(api_endpoint)),
    }
    # Single pass so record text that looks like a placeholder stays as is
    return _PLACEHOLDER.sub(lambda m: values[m.group(1)], _template())
