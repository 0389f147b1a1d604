"""Tests for annotation aggregation and marker reconciliation."""

import logging

import pytest
from lsprotocol import types as lsp

from polyglot_lsp.config import default_overrides
from polyglot_lsp.editors import NotebookCell
from polyglot_lsp.markers import (
    DEFAULT_SEVERITY,
    AnnotationAggregator,
    collapse_overlapping,
    effective_severity,
)
from polyglot_lsp.positioning import EditorPosition
from polyglot_lsp.virtual_editor import VirtualEditorForNotebook


def make_range(start_line, start_character, end_line, end_character):
    return lsp.Range(
        start=lsp.Position(line=start_line, character=start_character),
        end=lsp.Position(line=end_line, character=end_character),
    )


def diagnostic(range_, message="problem", severity=None, source=None):
    return lsp.Diagnostic(range=range_, message=message, severity=severity, source=source)


@pytest.fixture
def python_aggregator(notebook):
    return AnnotationAggregator(notebook, notebook.virtual_document)


@pytest.fixture
def r_aggregator(notebook):
    return AnnotationAggregator(notebook, notebook.virtual_document.foreign_documents["r"])


class TestSeverity:
    def test_most_severe_wins(self):
        """Test the most severe diagnostic wins."""
        diagnostics = [
            diagnostic(make_range(0, 0, 0, 1), severity=lsp.DiagnosticSeverity(code))
            for code in (3, 1, 2)
        ]
        assert effective_severity(diagnostics) == lsp.DiagnosticSeverity.Error

    def test_missing_severity_defaults_to_warning(self):
        """Test diagnostics without severity."""
        diagnostics = [
            diagnostic(make_range(0, 0, 0, 1)),
            diagnostic(make_range(0, 0, 0, 1), severity=lsp.DiagnosticSeverity.Hint),
        ]
        assert DEFAULT_SEVERITY == lsp.DiagnosticSeverity.Warning
        assert effective_severity(diagnostics) == lsp.DiagnosticSeverity.Warning


class TestCollapse:
    def test_groups_by_identical_range(self):
        """Test grouping by identical range."""
        a = diagnostic(make_range(0, 0, 0, 1), "a")
        b = diagnostic(make_range(0, 0, 0, 2), "b")
        c = diagnostic(make_range(0, 0, 0, 1), "c")
        groups = list(collapse_overlapping([a, b, c]).values())
        assert groups == [[a, c], [b]]


class TestDiagnostics:
    """Diagnostics of the host document."""

    def test_identical_ranges_merge(self, python_aggregator, cells):
        """Test diagnostics with identical ranges merge into one marker."""
        range_ = make_range(6, 0, 6, 1)
        plan = python_aggregator.update(
            [
                diagnostic(range_, "first", lsp.DiagnosticSeverity.Warning, source="lint"),
                diagnostic(range_, "second", lsp.DiagnosticSeverity.Error),
            ]
        )

        assert len(plan.create) == 1
        marker = plan.create[0]
        assert marker.severity == lsp.DiagnosticSeverity.Error
        assert marker.title == "first (lint)\nsecond"
        assert marker.class_name == "lsp-diagnostic lsp-diagnostic-error"
        assert marker.range.editor is cells[2].editor
        assert marker.range.start == EditorPosition(1, 0)
        assert marker.range.end == EditorPosition(1, 1)

    def test_reconciliation_is_idempotent(self, python_aggregator):
        """Test that a repeated batch changes nothing."""
        batch = [diagnostic(make_range(0, 0, 0, 1), "unused")]
        first = python_aggregator.update(batch)
        second = python_aggregator.update(batch)

        assert len(first.create) == 1
        assert second.create == []
        assert second.clear == []
        assert second.retain == first.create
        assert second.is_noop

    def test_absent_annotations_are_cleared(self, python_aggregator):
        """Test that markers missing from a batch are cleared."""
        python_aggregator.update([diagnostic(make_range(0, 0, 0, 1))])
        plan = python_aggregator.update([])
        assert len(plan.clear) == 1
        assert python_aggregator.markers == []

    def test_changed_message_replaces_marker(self, python_aggregator):
        """Test a diagnostic whose message changed."""
        python_aggregator.update([diagnostic(make_range(0, 0, 0, 1), "old")])
        plan = python_aggregator.update([diagnostic(make_range(0, 0, 0, 1), "new")])
        assert [m.title for m in plan.create] == ["new"]
        assert [m.title for m in plan.clear] == ["old"]

    def test_out_of_range_is_dropped(self, python_aggregator, caplog):
        """Test a diagnostic past the last line."""
        with caplog.at_level(logging.INFO, logger="polyglot_lsp.markers"):
            plan = python_aggregator.update([diagnostic(make_range(99, 0, 99, 1))])
        assert plan.create == []
        assert "out of lines" in caplog.text

    def test_region_of_other_document_is_ignored(self, python_aggregator):
        """Test a diagnostic on code of another language."""
        # line 3 of the host is R code from the %%R cell
        plan = python_aggregator.update([diagnostic(make_range(3, 0, 3, 1))])
        assert plan.create == []

    def test_range_spanning_two_editors_is_dropped(self, python_aggregator):
        """Test a diagnostic spanning two cells."""
        plan = python_aggregator.update([diagnostic(make_range(1, 0, 2, 1))])
        assert plan.create == []

    def test_markers_survive_edits_in_other_cells(self, notebook, python_aggregator, cells):
        """Test markers after lines are added above them."""
        python_aggregator.update([diagnostic(make_range(6, 0, 6, 1), "z")])

        cells[0].editor.set_value("x = 1\nx += 1\nprint(x)")
        notebook.perform_documents_update()

        plan = python_aggregator.update([diagnostic(make_range(7, 0, 7, 1), "z")])
        assert plan.create == []
        assert len(plan.retain) == 1

    def test_removed_cells_are_forgotten(self, notebook, python_aggregator, cells):
        """Editors of deleted cells are released on the next update."""
        python_aggregator.update([diagnostic(make_range(2, 0, 2, 1), "magic")])
        removed = cells.pop(1)
        notebook.perform_documents_update()

        plan = python_aggregator.update([])

        assert [m.title for m in plan.clear] == ["magic"]
        assert removed.editor not in python_aggregator._editor_ids

    def test_reset(self, python_aggregator):
        """Test clearing all markers."""
        python_aggregator.update([diagnostic(make_range(0, 0, 0, 1))])
        plan = python_aggregator.reset()
        assert len(plan.clear) == 1
        assert python_aggregator.markers == []


class TestForeignDiagnostics:
    def test_mapped_to_editor_columns(self, r_aggregator, cells):
        """Test foreign diagnostics mapped to cell columns."""
        plan = r_aggregator.update([diagnostic(make_range(2, 0, 2, 1), "object not found")])

        marker = plan.create[0]
        assert marker.range.editor is cells[2].editor
        assert marker.range.start == EditorPosition(0, 3)
        assert marker.range.end == EditorPosition(0, 4)


class TestSilencedLines:
    def test_overridden_lines_are_skipped(self, make_editor):
        """Test diagnostics on overridden magics."""
        cells = [NotebookCell(editor=make_editor("%time f()\nx = y"))]
        virtual_editor = VirtualEditorForNotebook(
            cells, "python", "file:///t.ipynb", overrides_registry=default_overrides()
        )
        virtual_editor.perform_documents_update()
        aggregator = AnnotationAggregator(virtual_editor, virtual_editor.virtual_document)

        plan = aggregator.update(
            [
                diagnostic(make_range(0, 0, 0, 3), "get_ipython is not defined"),
                diagnostic(make_range(1, 4, 1, 5), "y is not defined"),
            ]
        )
        assert [m.title for m in plan.create] == ["y is not defined"]


class TestHighlights:
    def test_highlight_kinds(self, python_aggregator):
        """Test highlight class names."""
        plan = python_aggregator.update(
            [
                lsp.DocumentHighlight(
                    range=make_range(0, 0, 0, 1), kind=lsp.DocumentHighlightKind.Write
                ),
                lsp.DocumentHighlight(range=make_range(1, 6, 1, 7)),
            ]
        )
        assert [m.class_name for m in plan.create] == [
            "lsp-highlight lsp-highlight-write",
            "lsp-highlight",
        ]
