"""
Index Generator

Builds the landing page from the store's artifact listing. Only HTML
outputs are listed; the index never lists itself.
"""

from __future__ import annotations
from typing import Iterable
import html

from ..contracts.base import OutputPath, INDEX_OUTPUT
from .templates import INDEX_BODY, INDEX_ITEM, page
from . import DEFAULT_RELOAD_PATH


INDEX_TITLE = "Markdown Documentation"


def render_index(outputs: Iterable[OutputPath], reload_path: str = DEFAULT_RELOAD_PATH) -> bytes:
    items = []
    for output in sorted(outputs):
        if output.suffix.lower() != ".html" or output.value == INDEX_OUTPUT:
            continue
        location = ""
        if output.parent:
            location = f'<span class="path">in {html.escape(output.parent)}</span>'
        items.append(INDEX_ITEM.substitute(
            href=html.escape(output.value, quote=True),
            name=html.escape(output.stem.replace("_", " ")),
            location=location,
        ))

    body = INDEX_BODY.substitute(heading=INDEX_TITLE, items="".join(items))
    return page(title=INDEX_TITLE, body=body, reload_path=reload_path).encode("utf-8")
