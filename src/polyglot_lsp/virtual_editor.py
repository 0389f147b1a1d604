"""
Virtual editors for polyglot-lsp.

A virtual editor presents a notebook (or a single file) as one flattened
document in root space, owns the tree of virtual documents built from it,
and implements the conversions between root, editor and virtual
positions that every language feature relies on.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

from polyglot_lsp.errors import StaleMappingError
from polyglot_lsp.positioning import EditorPosition, RootPosition, VirtualPosition
from polyglot_lsp.virtual_document import VirtualDocument

if TYPE_CHECKING:
    from polyglot_lsp.editors import CodeEditor, NotebookCell, Token
    from polyglot_lsp.extractors import ExtractorsRegistry
    from polyglot_lsp.overrides import OverridesRegistry

logger = logging.getLogger(__name__)


class VirtualEditor:
    """Base class of the per-notebook / per-file orchestrators.

    Subclasses provide ``editors``: the editors to index, in display order.
    """

    def __init__(
        self,
        language: str,
        path: str,
        overrides_registry: OverridesRegistry | None = None,
        foreign_code_extractors: ExtractorsRegistry | None = None,
    ) -> None:
        self.language = language
        self.path = path
        self.overrides_registry = overrides_registry or {}
        self.code_extractors = foreign_code_extractors or {}
        self.virtual_document = VirtualDocument(
            language=language,
            uri=self._document_uri(),
            foreign_code_extractors=self.code_extractors,
            overrides_registry=self.overrides_registry,
        )
        # editor -> root line of its first line
        self._editor_root_lines: dict[CodeEditor, int] = {}

    def _document_uri(self) -> str:
        return self.path

    @property
    def editors(self) -> Sequence[CodeEditor]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def perform_documents_update(self) -> None:
        """Rebuild the virtual documents and the shift table from the editors.

        Runs to completion without yielding; calling it twice without edits
        in between produces identical documents and tables.
        """
        editor_root_lines: dict[CodeEditor, int] = {}
        root_line = 0

        with self.virtual_document.rebuild():
            for editor in self.editors:
                code = editor.get_value()
                editor_root_lines[editor] = root_line
                self.virtual_document.append_code_block(code, editor)
                root_line += code.count("\n") + 1

        self._editor_root_lines = editor_root_lines
        logger.debug(
            f"Rebuilt {self.virtual_document.uri}: {len(editor_root_lines)} editors, "
            f"{root_line} root lines"
        )

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def transform_editor_to_root(
        self, editor: CodeEditor, position: EditorPosition
    ) -> RootPosition:
        """Convert an editor position to a root position.

        Raises:
            StaleMappingError: If the editor is unknown to the last update.
        """
        shift = self._editor_root_lines.get(editor)
        if shift is None:
            raise StaleMappingError(f"{editor!r} not found in the current shift table")
        return RootPosition(line=position.line + shift, column=position.column)

    def root_position_to_editor_position(self, position: RootPosition) -> EditorPosition:
        """Convert a root position to a position of the editor that owns it."""
        return self.virtual_document.transform_source_to_editor(position)

    def get_editor_at_root_position(self, position: RootPosition) -> CodeEditor:
        """Editor owning the root line."""
        return self.virtual_document.get_editor_at_source_line(position)

    def document_at_root_position(self, position: RootPosition) -> VirtualDocument:
        """Return the virtual document which owns the position."""
        editor = self.get_editor_at_root_position(position)
        editor_position = self.root_position_to_editor_position(position)
        return self.virtual_document.document_at_editor_position(editor, editor_position)

    def root_position_to_virtual_position(self, position: RootPosition) -> VirtualPosition:
        """Convert to a position in the document owning ``position``."""
        editor = self.get_editor_at_root_position(position)
        editor_position = self.root_position_to_editor_position(position)
        document = self.virtual_document.document_at_editor_position(editor, editor_position)
        return document.transform_editor_to_virtual(editor, editor_position)

    def virtual_position_to_root_position(
        self, position: VirtualPosition, document: VirtualDocument | None = None
    ) -> RootPosition:
        """Convert a position of ``document`` (the root document by default)."""
        document = document or self.virtual_document
        editor = document.get_editor_at_virtual_line(position)
        editor_position = document.transform_virtual_to_editor(position)
        return self.transform_editor_to_root(editor, editor_position)

    # ------------------------------------------------------------------
    # Editor access
    # ------------------------------------------------------------------

    def get_token_at(self, position: RootPosition) -> Token:
        """Token at a root position, delegated to the owning editor."""
        editor = self.get_editor_at_root_position(position)
        return editor.get_token_at(self.root_position_to_editor_position(position))

    def get_value(self) -> str:
        return "\n".join(editor.get_value() for editor in self.editors)


class VirtualEditorForNotebook(VirtualEditor):
    """Virtual editor over the code cells of a notebook.

    ``cells`` is the live, ordered list of cells; call
    ``perform_documents_update()`` after changing it.
    """

    def __init__(
        self,
        cells: list[NotebookCell],
        language: str,
        path: str,
        overrides_registry: OverridesRegistry | None = None,
        foreign_code_extractors: ExtractorsRegistry | None = None,
    ) -> None:
        self.cells = cells
        super().__init__(language, path, overrides_registry, foreign_code_extractors)

    def _document_uri(self) -> str:
        return f"{self.path}.{self.language}"

    @property
    def editors(self) -> list[CodeEditor]:
        return [cell.editor for cell in self.cells if cell.is_code]

    def transform_from_notebook_to_root(
        self, cell: NotebookCell, position: EditorPosition
    ) -> RootPosition:
        return self.transform_editor_to_root(cell.editor, position)

    def get_cell_at(
        self, position: VirtualPosition, document: VirtualDocument | None = None
    ) -> NotebookCell | None:
        editor = (document or self.virtual_document).get_editor_at_virtual_line(position)
        return next((cell for cell in self.cells if cell.editor is editor), None)

    def get_editor_index(
        self, position: VirtualPosition, document: VirtualDocument | None = None
    ) -> int:
        cell = self.get_cell_at(position, document)
        return next((i for i, other in enumerate(self.cells) if other is cell), -1)


class VirtualEditorForFile(VirtualEditor):
    """Virtual editor over a single file editor; root space is editor space."""

    def __init__(
        self,
        editor: CodeEditor,
        language: str,
        path: str,
        overrides_registry: OverridesRegistry | None = None,
        foreign_code_extractors: ExtractorsRegistry | None = None,
    ) -> None:
        self.editor = editor
        super().__init__(language, path, overrides_registry, foreign_code_extractors)

    @property
    def editors(self) -> list[CodeEditor]:
        return [self.editor]
