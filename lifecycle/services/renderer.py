from dataclasses import dataclass
from typing import Any, Dict, Optional

from flask import render_template
from jinja2 import TemplateNotFound


@dataclass
class Rendered:
    html: str
    text: Optional[str] = None


def render(template_id: str, variables: Dict[str, Any]) -> Optional[Rendered]:
    """
    template_id: basename under templates/email/ without extension (e.g. 'welcome').
    Returns None for an unknown template; the plaintext part is optional.
    """
    try:
        html = render_template(f"email/{template_id}.html", **variables)
    except TemplateNotFound:
        return None
    try:
        text = render_template(f"email/{template_id}.txt", **variables)
    except TemplateNotFound:
        text = None
    return Rendered(html=html, text=text)
