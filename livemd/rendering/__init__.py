"""
Rendering Layer

RESPONSIBILITY: Markdown bytes -> HTML bytes, asset passthrough
ALLOWED INPUTS: Source bytes plus the SourcePath they came from
OUTPUTS: (ContentKind, bytes)

WHAT THIS LAYER MUST NOT DO:
============================
- Touch the Artifact Store
- Hold locks or shared state between calls
- Fail on malformed markdown (degrade to best-effort HTML instead)

The only I/O lives in load_source(), and its failures surface as
RenderIoError.
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import quote, unquote, urlsplit, urlunsplit
import html
import logging
import posixpath

from markdown_it import MarkdownIt
from mdit_py_plugins.footnote import footnote_plugin
from mdit_py_plugins.tasklists import tasklists_plugin

from ..contracts.base import SourcePath, InvalidPath, RenderIoError
from ..contracts.events import ContentKind
from ..mapping import PathMapper, is_markdown
from . import templates

logger = logging.getLogger(__name__)


DEFAULT_RELOAD_PATH = "/_livemd/events"


@dataclass
class RenderConfig:
    """Configuration for the renderer."""
    title_fallback: str = "Markdown Preview"
    reload_path: str = DEFAULT_RELOAD_PATH

    def __post_init__(self):
        if not self.reload_path.startswith("/"):
            raise ValueError("reload_path must be an absolute URL path")


# =============================================================================
# SOURCE I/O
# =============================================================================

def load_source(path: Path) -> bytes:
    """Read a source file. The single I/O point of this layer."""
    try:
        return path.read_bytes()
    except OSError as e:
        raise RenderIoError(f"cannot read source: {e.strerror or e}", path=str(path))


# =============================================================================
# LINK REWRITING
# =============================================================================

def rewrite_href(href: str, source: SourcePath, mapper: PathMapper) -> str:
    """
    Point a link at the mapped output of the markdown document it names.

    Only links to .md documents inside the tree change. Anchors,
    external URLs and links leaving the tree come back untouched.
    """
    if not href or href.startswith("#"):
        return href

    parts = urlsplit(href)
    if parts.scheme or parts.netloc:
        return href

    path = unquote(parts.path)
    if not path or not is_markdown(path):
        return href

    rooted = path.startswith("/")
    if rooted:
        joined = path.lstrip("/")
    else:
        joined = posixpath.join(source.parent, path)

    normalized = posixpath.normpath(joined)
    if normalized.startswith(".."):
        return href

    try:
        output = mapper.to_output(SourcePath(normalized))
    except InvalidPath:
        return href

    if rooted:
        new_path = "/" + output.value
    else:
        new_path = posixpath.relpath(output.value, source.parent or ".")

    return urlunsplit(("", "", quote(new_path, safe="/"), parts.query, parts.fragment))


# =============================================================================
# RENDERER
# =============================================================================

def _build_parser() -> MarkdownIt:
    return (
        MarkdownIt("commonmark", {"typographer": True})
        .enable(["table", "strikethrough", "replacements", "smartquotes"])
        .use(footnote_plugin)
        .use(tasklists_plugin)
    )


class MarkdownRenderer:
    """
    Stateless per call: render() depends only on its arguments and the
    (immutable) mapper and config.
    """

    def __init__(self, mapper: PathMapper, config: Optional[RenderConfig] = None):
        self._mapper = mapper
        self._config = config or RenderConfig()
        self._md = _build_parser()

    @property
    def config(self) -> RenderConfig:
        return self._config

    def render_artifact(self, source: SourcePath, data: bytes) -> Tuple[ContentKind, bytes]:
        """Markdown becomes a page, everything else passes through."""
        if is_markdown(source):
            return ContentKind.HTML, self.render(data, source)
        return ContentKind.ASSET, data

    def render(self, source_bytes: bytes, source: SourcePath) -> bytes:
        text = source_bytes.decode("utf-8", errors="replace")
        try:
            title, body = self._render_body(text, source)
        except Exception:
            # Parser bugs must not take down the pipeline
            logger.warning("markdown parser failed on %s, serving plain text", source, exc_info=True)
            title = self._fallback_title(source)
            body = "<pre>" + html.escape(text) + "</pre>"

        document = templates.page(
            title=html.escape(title),
            body=body,
            reload_path=self._config.reload_path,
        )
        return document.encode("utf-8")

    def _render_body(self, text: str, source: SourcePath) -> Tuple[str, str]:
        env: dict = {}
        tokens = self._md.parse(text, env)

        title = None
        for i, token in enumerate(tokens):
            if title is None and token.type == "heading_open" and token.tag == "h1":
                inline = tokens[i + 1] if i + 1 < len(tokens) else None
                if inline is not None and inline.children:
                    title = "".join(
                        child.content for child in inline.children
                        if child.type in ("text", "code_inline")
                    ).strip() or None
            for child in token.children or ():
                if child.type == "link_open":
                    href = child.attrGet("href")
                    if isinstance(href, str):
                        child.attrSet("href", rewrite_href(href, source, self._mapper))

        body = self._md.renderer.render(tokens, self._md.options, env)
        return title or self._fallback_title(source), body

    def _fallback_title(self, source: SourcePath) -> str:
        return source.stem.replace("_", " ") or self._config.title_fallback
