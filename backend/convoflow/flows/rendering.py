# /convoflow/flows/rendering.py

"""
Pure helpers that turn node payloads into outbound message content.

No I/O happens here; everything is deterministic and unit-testable.
"""

import json
import re
from typing import Any, Dict, List, Optional

from convoflow.models.flow import ButtonSpec, CarouselItem

VARIABLE_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")

# WhatsApp Cloud API limits
MAX_BUTTON_TITLE = 20
MAX_LIST_ROWS_PER_SECTION = 10


def render_value(value: Any) -> str:
    """String form of a variable as it appears inside a message."""
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, (bool, dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def substitute_variables(text: Optional[str], variables: Dict[str, Any]) -> str:
    """
    Replaces every {{name}} token with the value of variables[name].
    Tokens without a matching variable are left as written.
    """
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return render_value(variables[name])
        return match.group(0)

    return VARIABLE_PATTERN.sub(_replace, text)


def format_buttons(buttons: Optional[List[ButtonSpec]]) -> List[Dict[str, str]]:
    """Reply buttons as the channel expects them: {id, title} with a 20 char title."""
    formatted = []
    for index, button in enumerate(buttons or []):
        formatted.append({
            "id": button.id or f"button_{index}",
            "title": button.label[:MAX_BUTTON_TITLE],
        })
    return formatted


def build_list_sections(items: List[CarouselItem], chunk_size: int = MAX_LIST_ROWS_PER_SECTION) -> List[Dict[str, Any]]:
    """
    Groups carousel items into interactive-list sections of at most
    chunk_size rows. Row ids are item_{section}_{row}.
    """
    sections = []
    for section_index, start in enumerate(range(0, len(items), chunk_size)):
        chunk = items[start:start + chunk_size]
        rows = [
            {
                "id": f"item_{section_index}_{row_index}",
                "title": item.title or f"Option {row_index + 1}",
                "description": item.description or "",
            }
            for row_index, item in enumerate(chunk)
        ]
        sections.append({"title": f"Section {section_index + 1}", "rows": rows})
    return sections
