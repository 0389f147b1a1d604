"""
Virtual documents for polyglot-lsp.

A virtual document owns, for one language, the concatenation of all code
of that language found in the editors of a notebook (or in one file), and
the provenance of every one of its lines: which editor it came from, which
line of that editor, and by how many columns it is shifted.

Foreign code found by the extractors is appended to child documents keyed
by language, which may in turn extract further languages. The root of this
tree is the document of the host language.

Line tables are rebuilt wholesale on every change. ``rebuild()`` builds
into staging tables and commits the whole tree at once, so conversions
never observe a partially built document.
"""

from __future__ import annotations

import logging
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Sequence

from polyglot_lsp.errors import OutOfRangeError
from polyglot_lsp.extractors import ExtractedCode, ExtractorsRegistry, ForeignCodeExtractor
from polyglot_lsp.overrides import OverridesRegistry, apply_overrides
from polyglot_lsp.positioning import (
    EditorPosition,
    RootPosition,
    SourceRange,
    VirtualPosition,
    offset_at_position,
    position_at_offset,
)

if TYPE_CHECKING:
    from polyglot_lsp.editors import CodeEditor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VirtualLine:
    """Provenance of one virtual line.

    The editor column of virtual column ``c`` is ``c + column_shift``.
    """

    editor: CodeEditor
    editor_line: int
    column_shift: int = 0
    skip_inspect: bool = False
    """The line was rewritten by an override; inspections on it are ignored."""
    has_foreign_code: bool = False
    """The line also carries foreign code that was kept in the host."""


@dataclass(frozen=True)
class SourceLine:
    """Provenance of one root (source) line."""

    editor: CodeEditor
    editor_line: int


@dataclass(frozen=True)
class ForeignRegion:
    """Editor range whose code was extracted into a foreign document."""

    editor: CodeEditor
    range: SourceRange
    document: VirtualDocument


@dataclass(frozen=True)
class _LineOrigin:
    editor_line: int
    shift: int


@dataclass
class _Tables:
    text_lines: list[str] = field(default_factory=list)
    virtual_lines: list[VirtualLine] = field(default_factory=list)
    source_lines: list[SourceLine] = field(default_factory=list)
    regions: list[ForeignRegion] = field(default_factory=list)
    # (editor, editor_line) -> [(column_shift, virtual_line), ...]
    editor_index: dict[tuple[CodeEditor, int], list[tuple[int, int]]] = field(
        default_factory=dict
    )


class VirtualDocument:
    """Per-language concatenation of code with line-level provenance.

    Args:
        language: Language of this document.
        uri: Identifier of this document, used by the session layer.
        foreign_code_extractors: Extractors keyed by host language; the ones
            registered for ``language`` run on every appended block.
        overrides_registry: Host code overrides keyed by language.
        parent: Owning document, None for the root.
        standalone: Whether this document holds a single standalone snippet.
    """

    def __init__(
        self,
        language: str,
        uri: str,
        foreign_code_extractors: ExtractorsRegistry | None = None,
        overrides_registry: OverridesRegistry | None = None,
        parent: VirtualDocument | None = None,
        standalone: bool = False,
    ) -> None:
        self.language = language
        self.uri = uri
        self.standalone = standalone
        self.foreign_code_extractors = foreign_code_extractors or {}
        self.overrides_registry = overrides_registry or {}
        self.foreign_documents: dict[str, VirtualDocument] = {}
        self.revision = 0

        self._parent = weakref.ref(parent) if parent is not None else None
        self._tables = _Tables()
        self._staging: _Tables | None = None
        self._standalone_counters: dict[str, int] = {}
        self._value = ""

    def __repr__(self) -> str:
        return f"VirtualDocument({self.uri!r}, language={self.language!r})"

    # ------------------------------------------------------------------
    # Tree
    # ------------------------------------------------------------------

    @property
    def parent(self) -> VirtualDocument | None:
        return self._parent() if self._parent is not None else None

    @property
    def root(self) -> VirtualDocument:
        """The outermost document of the tree."""
        document = self
        while document.parent is not None:
            document = document.parent
        return document

    @property
    def id_path(self) -> str:
        """Path of language keys from the root, e.g. ``python/r/``."""
        parent = self.parent
        if parent is None:
            return f"{self.language}/"
        key = next(k for k, doc in parent.foreign_documents.items() if doc is self)
        return f"{parent.id_path}{key}/"

    @property
    def foreign_extractors(self) -> list[ForeignCodeExtractor]:
        return self.foreign_code_extractors.get(self.language, [])

    def iter_documents(self) -> Iterator[VirtualDocument]:
        """Yield this document and all its descendants, depth first."""
        yield self
        for document in self.foreign_documents.values():
            yield from document.iter_documents()

    # ------------------------------------------------------------------
    # Committed state
    # ------------------------------------------------------------------

    @property
    def value(self) -> str:
        """The virtual text."""
        return self._value

    @property
    def virtual_lines(self) -> Sequence[VirtualLine]:
        return self._tables.virtual_lines

    @property
    def last_virtual_line(self) -> int:
        return len(self._tables.virtual_lines) - 1

    @property
    def last_source_line(self) -> int:
        return len(self._tables.source_lines) - 1

    @property
    def is_empty(self) -> bool:
        """Whether the last rebuild produced no lines."""
        return not self._tables.virtual_lines

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    @property
    def _writable(self) -> _Tables:
        return self._staging if self._staging is not None else self._tables

    def clear(self) -> None:
        """Reset the line tables of this document and of all its children.

        Inside ``rebuild()`` this resets the staging tables; otherwise the
        live tables are emptied.
        """
        if self._staging is not None:
            self._staging = _Tables()
        else:
            self._tables = _Tables()
            self._value = ""
        self._standalone_counters = {}
        for document in self.foreign_documents.values():
            document.clear()

    @contextmanager
    def rebuild(self) -> Iterator[VirtualDocument]:
        """Rebuild the document tree as one transaction.

        Usage::

            with document.rebuild():
                for editor in editors:
                    document.append_code_block(editor.get_value(), editor)

        Nothing is visible to readers until the block exits; if it raises,
        the previous tables stay live.
        """
        self._begin()
        self.clear()
        try:
            yield self
        except BaseException:
            self._rollback()
            raise
        self._commit()

    def _begin(self) -> None:
        self._staging = _Tables()
        for document in self.foreign_documents.values():
            document._begin()

    def _rollback(self) -> None:
        self._staging = None
        for document in self.foreign_documents.values():
            document._rollback()

    def _commit(self) -> None:
        if self._staging is not None:
            self._tables = self._staging
            self._staging = None
        self._refresh_value()
        for document in self.foreign_documents.values():
            document._commit()

    def _refresh_value(self) -> None:
        lines = self._tables.text_lines
        value = "\n".join(lines) + "\n" if lines else ""
        if value != self._value:
            self._value = value
            self.revision += 1

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def append_code_block(
        self,
        code: str,
        editor: CodeEditor,
        origins: list[_LineOrigin] | None = None,
    ) -> None:
        """Append one editor's code to this document.

        ``origins`` maps each line of ``code`` to its editor line and column
        shift; it is only passed when a parent document forwards extracted
        foreign code. Top-level blocks also extend the source line table.
        """
        tables = self._writable

        if origins is None:
            line_count = code.count("\n") + 1
            origins = [_LineOrigin(editor_line=i, shift=0) for i in range(line_count)]
            tables.source_lines.extend(
                SourceLine(editor=editor, editor_line=i) for i in range(line_count)
            )

        host_code, origins, foreign_lines = self._extract_foreign_code(code, editor, origins)

        overridden: set[int] = set()
        overrides = self.overrides_registry.get(self.language)
        if overrides:
            result = apply_overrides(host_code, overrides)
            host_code = result.code
            overridden = result.overridden_lines

        for index, (text_line, origin) in enumerate(zip(host_code.split("\n"), origins)):
            virtual_line = len(tables.virtual_lines)
            tables.virtual_lines.append(
                VirtualLine(
                    editor=editor,
                    editor_line=origin.editor_line,
                    column_shift=origin.shift,
                    skip_inspect=index in overridden,
                    has_foreign_code=origin.editor_line in foreign_lines,
                )
            )
            tables.text_lines.append(text_line)
            tables.editor_index.setdefault((editor, origin.editor_line), []).append(
                (origin.shift, virtual_line)
            )

        if self._staging is None:
            self._refresh_value()

    def _extract_foreign_code(
        self, code: str, editor: CodeEditor, origins: list[_LineOrigin]
    ) -> tuple[str, list[_LineOrigin], set[int]]:
        """Run the extractors, feeding foreign documents; return the host code left."""
        tables = self._writable
        foreign_lines: set[int] = set()

        for extractor in self.foreign_extractors:
            if not extractor.has_foreign_code(code):
                continue
            keep_in_host = getattr(extractor, "keep_in_host", True)
            results = extractor.extract_foreign_code(code)

            for result in results:
                if result.foreign_code is None or result.range is None:
                    continue
                document = self._choose_foreign_document(extractor)
                region = SourceRange(
                    start=_to_editor(result.range.start, origins),
                    end=_to_editor(result.range.end, origins),
                )
                tables.regions.append(
                    ForeignRegion(editor=editor, range=region, document=document)
                )
                if keep_in_host:
                    foreign_lines.update(range(region.start.line, region.end.line + 1))
                document.append_code_block(
                    result.foreign_code,
                    editor,
                    _foreign_origins(result.foreign_code, result.range.start, origins),
                )

            code, origins = _kept_host_code(code, results, origins, keep_in_host)

        return code, origins, foreign_lines

    def _choose_foreign_document(self, extractor: ForeignCodeExtractor) -> VirtualDocument:
        language = extractor.language
        if extractor.standalone:
            ordinal = self._standalone_counters.get(language, 0)
            self._standalone_counters[language] = ordinal + 1
            key = f"{language}-{ordinal}"
        else:
            key = language

        document = self.foreign_documents.get(key)
        if document is None:
            document = VirtualDocument(
                language=language,
                uri=f"{self.uri}.{key}",
                foreign_code_extractors=self.foreign_code_extractors,
                overrides_registry=self.overrides_registry,
                parent=self,
                standalone=extractor.standalone,
            )
            if self._staging is not None:
                document._begin()
            self.foreign_documents[key] = document
            logger.debug(f"Created foreign document {document.uri}")
        return document

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_virtual_line(self, position: VirtualPosition) -> VirtualLine:
        """Return the line table entry of a virtual line.

        Raises:
            OutOfRangeError: If the line is not part of this document.
        """
        if not 0 <= position.line <= self.last_virtual_line:
            raise OutOfRangeError(
                f"Virtual line {position.line} has no owning editor in {self.uri} "
                f"(last line: {self.last_virtual_line})"
            )
        return self._tables.virtual_lines[position.line]

    def get_source_line(self, position: RootPosition) -> SourceLine:
        """Return the line table entry of a root (source) line."""
        if not 0 <= position.line <= self.last_source_line:
            raise OutOfRangeError(
                f"Source line {position.line} has no owning editor in {self.uri} "
                f"(last line: {self.last_source_line})"
            )
        return self._tables.source_lines[position.line]

    def get_editor_at_virtual_line(self, position: VirtualPosition) -> CodeEditor:
        """Editor owning the virtual line."""
        return self.get_virtual_line(position).editor

    def get_editor_at_source_line(self, position: RootPosition) -> CodeEditor:
        return self.get_source_line(position).editor

    def transform_virtual_to_editor(self, position: VirtualPosition) -> EditorPosition:
        """Convert a virtual position to a position of its editor.

        Columns are moved by the shift of the line, which is non-zero for
        foreign code that does not start at the beginning of a line.
        """
        line = self.get_virtual_line(position)
        return EditorPosition(
            line=line.editor_line, column=position.column + line.column_shift
        )

    def transform_editor_to_virtual(
        self, editor: CodeEditor, position: EditorPosition
    ) -> VirtualPosition:
        """Convert an editor position to a position of this document.

        When several snippets share an editor line, the one starting
        closest before ``position.column`` wins.

        Raises:
            OutOfRangeError: If this document has no code at the position.
        """
        entries = self._tables.editor_index.get((editor, position.line))
        if not entries:
            raise OutOfRangeError(
                f"Editor line {position.line} has no virtual line in {self.uri}"
            )
        candidates = [entry for entry in entries if entry[0] <= position.column]
        if not candidates:
            raise OutOfRangeError(
                f"Column {position.column} precedes the code of editor line "
                f"{position.line} in {self.uri}"
            )
        shift, virtual_line = max(candidates, key=lambda entry: entry[0])
        return VirtualPosition(line=virtual_line, column=position.column - shift)

    def transform_source_to_editor(self, position: RootPosition) -> EditorPosition:
        """Convert a root position to a position of its editor."""
        line = self.get_source_line(position)
        return EditorPosition(line=line.editor_line, column=position.column)

    def document_at_editor_position(
        self, editor: CodeEditor, position: EditorPosition
    ) -> VirtualDocument:
        """Return the innermost document owning the position."""
        regions = [r for r in self._tables.regions if r.editor is editor]
        for region in regions:
            if region.range.contains(position):
                return region.document.document_at_editor_position(editor, position)

        if (editor, position.line) in self._tables.editor_index:
            return self

        # The line was removed from this document (keep_in_host=False).
        for region in regions:
            if region.range.start.line <= position.line <= region.range.end.line:
                return region.document.document_at_editor_position(editor, position)
        return self

    def has_editor_line(self, editor: CodeEditor, line: int) -> bool:
        return (editor, line) in self._tables.editor_index


def _to_editor(position: EditorPosition, origins: Sequence[_LineOrigin]) -> EditorPosition:
    origin = origins[min(position.line, len(origins) - 1)]
    return EditorPosition(line=origin.editor_line, column=position.column + origin.shift)


def _foreign_origins(
    foreign_code: str, start: EditorPosition, origins: Sequence[_LineOrigin]
) -> list[_LineOrigin]:
    """Origins of the lines of a foreign snippet starting at ``start`` of the host code."""
    foreign_origins: list[_LineOrigin] = []
    for k in range(foreign_code.count("\n") + 1):
        origin = origins[min(start.line + k, len(origins) - 1)]
        column = start.column if k == 0 else 0
        foreign_origins.append(
            _LineOrigin(editor_line=origin.editor_line, shift=origin.shift + column)
        )
    return foreign_origins


def _kept_host_code(
    code: str,
    results: Sequence[ExtractedCode],
    origins: Sequence[_LineOrigin],
    keep_in_host: bool,
) -> tuple[str, list[_LineOrigin]]:
    """Concatenate the host fragments and work out where each of their lines starts.

    With ``keep_in_host=False`` the extractor closes the host text before a
    match with a newline of its own; the line after such a newline starts
    where the next fragment starts.
    """
    host_code = "".join(result.host_code or "" for result in results)
    if host_code == code:
        return code, list(origins)

    lines = code.split("\n")
    line_starts: list[int] = []
    pending = True

    for result in results:
        host = result.host_code
        if not host:
            continue
        start = offset_at_position(result.host_start, lines)
        synthetic_newline = result.foreign_code is not None and not keep_in_host
        real_length = len(host) - 1 if synthetic_newline else len(host)

        if pending:
            line_starts.append(start)
            pending = False

        index = host.find("\n")
        while index != -1:
            if index >= real_length:
                pending = True
            else:
                line_starts.append(start + index + 1)
            index = host.find("\n", index + 1)

    if pending:
        line_starts.append(len(code))

    kept_origins = []
    for offset in line_starts:
        position = position_at_offset(offset, lines)
        origin = origins[min(position.line, len(origins) - 1)]
        kept_origins.append(
            _LineOrigin(editor_line=origin.editor_line, shift=origin.shift + position.column)
        )
    return host_code, kept_origins
