"""
Path Mapping Layer

RESPONSIBILITY: SourcePath <-> OutputPath translation, root containment
ALLOWED INPUTS: Relative paths, absolute paths reported by the watcher
OUTPUTS: SourcePath, OutputPath, absolute filesystem paths for reading

WHAT THIS LAYER MUST NOT DO:
============================
- Read or write file contents
- Hold any mutable state

Markdown documents (.md, any case) map to .html, except README.md which
becomes the index.html of its directory. Everything else maps identity.
An index.html can therefore come from README.md, index.md or a literal
index.html; sources_for() lists them all.
"""

from __future__ import annotations
from pathlib import Path
from typing import Iterator, List, Optional, Union
import os
import posixpath

from ..contracts.base import SourcePath, OutputPath, InvalidPath, RenderIoError, INDEX_OUTPUT


MARKDOWN_SUFFIX = ".md"
HTML_SUFFIX = ".html"
# A README is the page of its directory
README_NAME = "README.md"

# Editor droppings that should never become artifacts
IGNORED_SUFFIXES = (".swp", ".swx", ".tmp", "~")
IGNORED_NAMES = frozenset({"4913"})


def is_markdown(path: Union[SourcePath, str]) -> bool:
    value = path.value if isinstance(path, SourcePath) else path
    return posixpath.splitext(value)[1].lower() == MARKDOWN_SUFFIX


def is_ignored(path: Union[SourcePath, str]) -> bool:
    """Hidden segments and editor temp files are never watched or served."""
    value = path.value if isinstance(path, SourcePath) else path
    segments = value.split("/")
    if any(segment.startswith(".") for segment in segments):
        return True
    name = segments[-1]
    return name in IGNORED_NAMES or name.endswith(IGNORED_SUFFIXES)


class PathMapper:
    """
    Maps between the content tree and the output namespace.

    The content root is resolved once so that paths reported through
    symlinked temp directories still compare equal. exclude names a
    directory under the root that is never content, typically the disk
    mirror of the store.
    """

    def __init__(self, content_root: Union[str, Path], exclude: Optional[Union[str, Path]] = None):
        self._root = Path(content_root).resolve()
        self._excluded: Optional[str] = None
        if exclude:
            try:
                self._excluded = Path(exclude).resolve().relative_to(self._root).as_posix()
            except ValueError:
                # Outside the root, so no event can ever come from it
                self._excluded = None
            if self._excluded == ".":
                raise ValueError("the excluded directory cannot be the content root itself")

    @property
    def root(self) -> Path:
        return self._root

    @property
    def excluded(self) -> Optional[SourcePath]:
        return SourcePath(self._excluded) if self._excluded else None

    def is_excluded(self, source: SourcePath) -> bool:
        if self._excluded is None:
            return False
        return source.value == self._excluded or source.value.startswith(self._excluded + "/")

    def to_output(self, source: SourcePath) -> OutputPath:
        if source.name == README_NAME:
            return OutputPath(posixpath.join(source.parent, INDEX_OUTPUT))
        if is_markdown(source):
            base, _ = posixpath.splitext(source.value)
            return OutputPath(base + HTML_SUFFIX)
        return OutputPath(source.value)

    def to_source(self, output: OutputPath) -> Optional[SourcePath]:
        """The markdown document an .html output is rendered from."""
        candidates = self.sources_for(output)
        if candidates and is_markdown(candidates[0]):
            return candidates[0]
        return None

    def sources_for(self, output: OutputPath) -> List[SourcePath]:
        """
        Every source that maps onto output, markdown first. README.md
        comes before index.md for a directory index.
        """
        found: List[SourcePath] = []
        if output.suffix.lower() == HTML_SUFFIX:
            base, _ = posixpath.splitext(output.value)
            if output.name == INDEX_OUTPUT:
                found.append(SourcePath(posixpath.join(output.parent, README_NAME)))
            found.append(SourcePath(base + MARKDOWN_SUFFIX))
        found.append(SourcePath(output.value))
        return [s for s in found if self.to_output(s) == output]

    def relative_source(self, path: Union[str, Path]) -> SourcePath:
        """
        Convert an absolute filesystem path into a SourcePath.
        Raises InvalidPath for anything outside the root.
        """
        candidate = Path(os.path.abspath(path))
        try:
            relative = candidate.relative_to(self._root)
        except ValueError:
            # The watcher may report unresolved paths (e.g. /tmp vs /private/tmp)
            try:
                relative = candidate.resolve().relative_to(self._root)
            except (ValueError, OSError, RuntimeError):
                raise InvalidPath("path is outside the content root", path=str(path))
        return SourcePath(relative.as_posix())

    def resolve(self, source: SourcePath) -> Path:
        """
        Absolute path for reading a source.
        Symlinks may not lead out of the root. A symlink that cannot be
        resolved at all (a loop) is a RenderIoError like any other
        unreadable source.
        """
        try:
            target = (self._root / source.value).resolve()
        except (OSError, RuntimeError) as e:
            # RuntimeError up to Python 3.12, OSError(ELOOP) afterwards
            raise RenderIoError(f"cannot resolve source: {e}", path=source.value)
        if target != self._root and self._root not in target.parents:
            raise InvalidPath("path resolves outside the content root", path=source.value)
        return target

    def iter_sources(self) -> Iterator[SourcePath]:
        """
        Walk the content root and yield every non-ignored file in a
        stable order, skipping the excluded directory.
        """
        for dirpath, dirnames, filenames in os.walk(self._root):
            current = Path(dirpath)
            kept = []
            for d in sorted(dirnames):
                if d.startswith("."):
                    continue
                if self.is_excluded(self.relative_source(current / d)):
                    continue
                kept.append(d)
            dirnames[:] = kept
            for name in sorted(filenames):
                try:
                    source = self.relative_source(current / name)
                except InvalidPath:
                    continue
                if not is_ignored(source) and not self.is_excluded(source):
                    yield source
