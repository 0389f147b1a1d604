"""
Annotation aggregation for polyglot-lsp.

Language servers report diagnostics and document highlights in the
coordinates of a virtual document. This module groups them by range,
translates them to editor-local ranges, drops the ones that no longer
belong to the document, and reconciles them against the markers already
placed so that repeated updates only create and clear what changed.

Markers are keyed by their content and their *editor-local* range plus an
editor identity, so inserting lines in another cell does not invalidate
them.
"""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, TypeVar, Union

from lsprotocol import types as lsp
from lsprotocol.converters import get_converter

from polyglot_lsp.errors import OutOfRangeError, PositionError
from polyglot_lsp.positioning import EditorPosition, EditorRange, VirtualPosition

if TYPE_CHECKING:
    from polyglot_lsp.editors import CodeEditor
    from polyglot_lsp.virtual_document import VirtualDocument
    from polyglot_lsp.virtual_editor import VirtualEditor

logger = logging.getLogger(__name__)

DEFAULT_SEVERITY = lsp.DiagnosticSeverity.Warning

Annotation = Union[lsp.Diagnostic, lsp.DocumentHighlight]
A = TypeVar("A", lsp.Diagnostic, lsp.DocumentHighlight)

RangeKey = tuple[int, int, int, int]

_converter = get_converter()


def range_key(range_: lsp.Range) -> RangeKey:
    """Structural identity of a range."""
    return (range_.start.line, range_.start.character, range_.end.line, range_.end.character)


def collapse_overlapping(annotations: Iterable[A]) -> dict[RangeKey, list[A]]:
    """Group annotations sharing exactly the same range, in first-seen order."""
    by_range: dict[RangeKey, list[A]] = {}
    for annotation in annotations:
        by_range.setdefault(range_key(annotation.range), []).append(annotation)
    return by_range


def effective_severity(diagnostics: Iterable[lsp.Diagnostic]) -> lsp.DiagnosticSeverity:
    """The most severe (numerically smallest) severity of the group."""
    return lsp.DiagnosticSeverity(
        min((diagnostic.severity or DEFAULT_SEVERITY) for diagnostic in diagnostics)
    )


def _fingerprint(annotation: Annotation) -> str:
    if isinstance(annotation, lsp.Diagnostic):
        payload = [
            annotation.severity,
            annotation.message,
            annotation.code,
            annotation.source,
            _converter.unstructure(annotation.related_information),
        ]
    else:
        payload = ["highlight", annotation.kind]
    return json.dumps(payload, sort_keys=True, default=str)


@dataclass(frozen=True)
class AnnotationKey:
    """Stable identity of a marker."""

    annotations: tuple[str, ...]
    start: EditorPosition
    end: EditorPosition
    editor_id: int


@dataclass
class Marker:
    """What to draw and where."""

    key: AnnotationKey
    range: EditorRange
    title: str = ""
    class_name: str = ""
    severity: lsp.DiagnosticSeverity | None = None


@dataclass
class PlacementPlan:
    """Marker changes produced by one update."""

    create: list[Marker] = field(default_factory=list)
    retain: list[Marker] = field(default_factory=list)
    clear: list[Marker] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.create and not self.clear


class AnnotationAggregator:
    """Reconciles annotation batches of one virtual document with placed markers."""

    def __init__(self, virtual_editor: VirtualEditor, virtual_document: VirtualDocument) -> None:
        self.virtual_editor = virtual_editor
        self.virtual_document = virtual_document
        self._markers: dict[AnnotationKey, Marker] = {}
        self._editor_ids: dict[CodeEditor, int] = {}
        self._next_editor_id = itertools.count()

    @property
    def markers(self) -> list[Marker]:
        return list(self._markers.values())

    def editor_id(self, editor: CodeEditor) -> int:
        if editor not in self._editor_ids:
            self._editor_ids[editor] = next(self._next_editor_id)
        return self._editor_ids[editor]

    def _forget_removed_editors(self) -> None:
        live = set(self.virtual_editor.editors)
        for editor in [editor for editor in self._editor_ids if editor not in live]:
            del self._editor_ids[editor]

    def update(self, annotations: Iterable[Annotation]) -> PlacementPlan:
        """Reconcile a full batch; anything tracked but absent from it is cleared."""
        self._forget_removed_editors()
        plan = PlacementPlan()
        seen: set[AnnotationKey] = set()

        for group in collapse_overlapping(annotations).values():
            placed = self._place(group)
            if placed is None:
                continue
            seen.add(placed.key)
            existing = self._markers.get(placed.key)
            if existing is not None:
                plan.retain.append(existing)
            else:
                self._markers[placed.key] = placed
                plan.create.append(placed)

        for key in [key for key in self._markers if key not in seen]:
            plan.clear.append(self._markers.pop(key))

        return plan

    def reset(self) -> PlacementPlan:
        plan = PlacementPlan(clear=list(self._markers.values()))
        self._markers.clear()
        return plan

    def _place(self, group: list[Annotation]) -> Marker | None:
        document = self.virtual_document
        start = VirtualPosition.from_lsp(group[0].range.start)
        end = VirtualPosition.from_lsp(group[0].range.end)

        if start.line > document.last_virtual_line:
            logger.info(f"Malformed annotation was skipped (out of lines): {group}")
            return None

        try:
            start_in_root = self.virtual_editor.virtual_position_to_root_position(start, document)
            owner = self.virtual_editor.document_at_root_position(start_in_root)
        except PositionError as e:
            logger.info(f"Annotation skipped, mapping is stale: {e}")
            return None

        if owner is not document:
            logger.debug(
                f"Ignoring annotations for {document.uri} "
                f"(this region is covered by another virtual document: {owner.uri}): {group}"
            )
            return None

        line = document.get_virtual_line(start)
        if line.skip_inspect:
            logger.debug(f"Ignoring annotations silenced for this line: {group}")
            return None

        try:
            end_line = document.get_virtual_line(end)
            start_in_editor = document.transform_virtual_to_editor(start)
            end_in_editor = document.transform_virtual_to_editor(end)
        except OutOfRangeError as e:
            logger.info(f"Malformed annotation was skipped: {e}")
            return None

        if end_line.editor is not line.editor:
            logger.info(f"Annotation spanning two editors was skipped: {group}")
            return None

        key = AnnotationKey(
            annotations=tuple(_fingerprint(annotation) for annotation in group),
            start=start_in_editor,
            end=end_in_editor,
            editor_id=self.editor_id(line.editor),
        )
        editor_range = EditorRange(start=start_in_editor, end=end_in_editor, editor=line.editor)

        if isinstance(group[0], lsp.Diagnostic):
            severity = effective_severity(group)
            title = "\n".join(
                d.message + (f" ({d.source})" if d.source else "") for d in group
            )
            class_name = f"lsp-diagnostic lsp-diagnostic-{severity.name.lower()}"
            return Marker(
                key=key, range=editor_range, title=title, class_name=class_name, severity=severity
            )

        kind = group[0].kind
        class_name = "lsp-highlight"
        if kind:
            class_name += f" lsp-highlight-{lsp.DocumentHighlightKind(kind).name.lower()}"
        return Marker(key=key, range=editor_range, class_name=class_name)
