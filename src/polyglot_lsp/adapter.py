"""
Per-document adapter between user interaction and the language server.

One adapter serves one virtual document (and its connection). It turns
root-space interactions (cursor moves, mouse hover, typed characters) into
virtual-space requests, and turns the responses back into editor-space
placements for the rendering layer. Responses and interactions that land
in a region owned by another virtual document are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol, Sequence, runtime_checkable

from lsprotocol import types as lsp

from polyglot_lsp.errors import ChangeTimeoutError, PositionError
from polyglot_lsp.markers import AnnotationAggregator, PlacementPlan
from polyglot_lsp.positioning import (
    EditorPosition,
    EditorRange,
    RootPosition,
    VirtualPosition,
)
from polyglot_lsp.timing import ChangeWaiter, Debouncer, WaitOutcome

if TYPE_CHECKING:
    from polyglot_lsp.editors import CodeEditor
    from polyglot_lsp.virtual_document import VirtualDocument
    from polyglot_lsp.virtual_editor import VirtualEditor

logger = logging.getLogger(__name__)

DEFAULT_HOVER_DELAY = 0.25


@dataclass
class EditorChange:
    """A change reported by an editor: the inserted lines and the change origin."""

    text: list[str]
    origin: str | None = None


@runtime_checkable
class LanguageConnection(Protocol):
    """The connection of one virtual document to its language server."""

    def get_language_completion_characters(self) -> list[str]:
        ...

    def get_language_signature_characters(self) -> list[str]:
        ...

    def get_hover(self, position: VirtualPosition) -> None:
        ...

    def get_document_highlights(self, position: VirtualPosition) -> None:
        ...

    def get_signature_help(self, position: VirtualPosition) -> None:
        ...


@dataclass
class HoverPlacement:
    markup: lsp.MarkupContent
    range: EditorRange
    show_tooltip: bool = True


@dataclass
class SignaturePlacement:
    markup: lsp.MarkupContent
    editor: CodeEditor
    position: EditorPosition


def get_markup_for_hover(response: lsp.Hover) -> lsp.MarkupContent:
    """Normalise hover contents (markup, marked strings, lists of them) to markup."""
    contents = response.contents
    if isinstance(contents, lsp.MarkupContent):
        return contents
    if not isinstance(contents, list):
        contents = [contents]

    content = contents[0]
    if isinstance(content, str):
        return lsp.MarkupContent(kind=lsp.MarkupKind.PlainText, value=content)
    return lsp.MarkupContent(
        kind=lsp.MarkupKind.Markdown,
        value=f"```{content.language}\n{content.value}\n```",
    )


def markdown_from_signature(item: lsp.SignatureInformation, language: str) -> str:
    """Render a signature as markdown.

    Servers often return plain-text docstrings; doctest lines (``>>>``)
    become code blocks and the rest is fenced as text.
    """
    markdown = f"```{language}\n{item.label}\n```"
    documentation = item.documentation
    if not documentation:
        return markdown

    if isinstance(documentation, lsp.MarkupContent):
        documentation = documentation.value
    markdown += "\n"

    in_text_block = False
    for line in documentation.split("\n"):
        if line.strip() == item.label.strip():
            continue
        if line.startswith(">>>"):
            if in_text_block:
                markdown += "```\n\n"
                in_text_block = False
            line = f"```{language}\n{line[3:]}\n```"
        elif not in_text_block:
            markdown += "```\n"
            in_text_block = True
        markdown += line + "\n"

    if in_text_block:
        markdown += "```"
    return markdown


class VirtualDocumentAdapter:
    """Glue between one virtual document, its connection and the editors.

    Args:
        connection: Connection to the language server of ``virtual_document``.
        virtual_editor: The virtual editor owning the document tree.
        virtual_document: The document served by this adapter.
        invoke_completer: Called when a completion trigger character is typed.
        hover_delay: Debounce delay for hover requests, in seconds.
        change_waiter: Waiter for editor changes (a default one is created).
    """

    def __init__(
        self,
        connection: LanguageConnection,
        virtual_editor: VirtualEditor,
        virtual_document: VirtualDocument,
        invoke_completer: Callable[[lsp.CompletionTriggerKind], None],
        hover_delay: float = DEFAULT_HOVER_DELAY,
        change_waiter: ChangeWaiter[EditorChange] | None = None,
    ) -> None:
        self.connection = connection
        self.virtual_editor = virtual_editor
        self.virtual_document = virtual_document
        self.invoke_completer = invoke_completer
        self.diagnostics = AnnotationAggregator(virtual_editor, virtual_document)
        self.highlights = AnnotationAggregator(virtual_editor, virtual_document)

        self.hover_character: RootPosition | None = None
        self.signature_character: RootPosition | None = None
        self.show_next_tooltip = True

        self._change_waiter: ChangeWaiter[EditorChange] = change_waiter or ChangeWaiter()
        self._debounced_hover = Debouncer(hover_delay, self.connection.get_hover)
        self._completion_characters: list[str] = []
        self._signature_characters: list[str] = []

    @property
    def completion_characters(self) -> list[str]:
        if not self._completion_characters:
            self._completion_characters = self.connection.get_language_completion_characters()
        return self._completion_characters

    @property
    def signature_characters(self) -> list[str]:
        if not self._signature_characters:
            self._signature_characters = self.connection.get_language_signature_characters()
        return self._signature_characters

    # ------------------------------------------------------------------
    # Changes and triggers
    # ------------------------------------------------------------------

    def handle_change(self, editor: CodeEditor, change: EditorChange) -> None:
        """Record a change so that the next cursor update can act on it."""
        self._change_waiter.notify(change)

    def invalidate_last_change(self) -> None:
        self._change_waiter.invalidate()

    async def update_after_change(self, cursor: RootPosition) -> None:
        """React to the last change: fire completion or signature help on trigger characters.

        Raises:
            ChangeTimeoutError: no change was delivered in time; the pending
                change state is invalidated.
        """
        outcome = await self._change_waiter.wait()
        if outcome is WaitOutcome.TIMED_OUT:
            self.invalidate_last_change()
            raise ChangeTimeoutError(
                "No change obtained from the editor within the expected time of "
                f"{self._change_waiter.timeout:.2f}s"
            )

        change = self._change_waiter.change
        self.invalidate_last_change()

        try:
            document = self.virtual_editor.document_at_root_position(cursor)
            if document is not self.virtual_document:
                return

            if change is None or not change.text or not change.text[0]:
                # deletion
                return

            if change.origin == "paste":
                last_character = "\n".join(change.text)[-1]
            else:
                last_character = change.text[0][0]

            if last_character in self.completion_characters:
                self.invoke_completer(lsp.CompletionTriggerKind.TriggerCharacter)
            elif last_character in self.signature_characters:
                self.signature_character = cursor
                virtual_position = self.virtual_editor.root_position_to_virtual_position(cursor)
                self.connection.get_signature_help(virtual_position)
        except PositionError as e:
            logger.warning(f"Change handling skipped to keep the editor in sync: {e}")

    # ------------------------------------------------------------------
    # Cursor and mouse
    # ------------------------------------------------------------------

    def on_cursor_activity(self, root_position: RootPosition) -> None:
        try:
            document = self.virtual_editor.document_at_root_position(root_position)
            if document is not self.virtual_document:
                return
            virtual_position = self.virtual_editor.root_position_to_virtual_position(root_position)
        except PositionError as e:
            logger.warning(f"Could not obtain virtual document from position {root_position}: {e}")
            return
        self.connection.get_document_highlights(virtual_position)

    def handle_mouse_over(
        self, root_position: RootPosition | None, show_tooltip: bool = True
    ) -> None:
        """Request a (debounced) hover for the character under the mouse."""
        self.show_next_tooltip = show_tooltip

        if root_position is None:
            self._forget_hover()
            return

        try:
            token = self.virtual_editor.get_token_at(root_position)
            document = self.virtual_editor.document_at_root_position(root_position)
            if token.is_empty or document is not self.virtual_document:
                self._forget_hover()
                return
            virtual_position = self.virtual_editor.root_position_to_virtual_position(root_position)
        except PositionError as e:
            logger.debug(f"No hover for {root_position}: {e}")
            self._forget_hover()
            return

        if root_position != self.hover_character:
            self.hover_character = root_position
            self._debounced_hover(virtual_position)

    def _forget_hover(self) -> None:
        self.hover_character = None
        self._debounced_hover.cancel()

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def handle_hover(self, response: lsp.Hover | None) -> HoverPlacement | None:
        """Place a hover response, or None if there is nothing to show."""
        if (
            self.hover_character is None
            or response is None
            or not response.contents
            or (isinstance(response.contents, list) and len(response.contents) == 0)
        ):
            return None

        try:
            editor_range = self.editor_range_for_hover(self.hover_character, response.range)
        except PositionError as e:
            logger.debug(f"Hover response dropped: {e}")
            return None

        return HoverPlacement(
            markup=get_markup_for_hover(response),
            range=editor_range,
            show_tooltip=self.show_next_tooltip,
        )

    def handle_signature(self, response: lsp.SignatureHelp | None) -> SignaturePlacement | None:
        """Render signature help at the character which triggered it."""
        if self.signature_character is None or response is None or not response.signatures:
            return None

        root_position = self.signature_character
        try:
            editor = self.virtual_editor.get_editor_at_root_position(root_position)
            editor_position = self.virtual_editor.root_position_to_editor_position(root_position)
            language = self.virtual_editor.document_at_root_position(root_position).language
        except PositionError as e:
            logger.debug(f"Signature response dropped: {e}")
            return None

        markup = lsp.MarkupContent(
            kind=lsp.MarkupKind.Markdown,
            value="\n\n".join(
                markdown_from_signature(item, language) for item in response.signatures
            ),
        )
        return SignaturePlacement(markup=markup, editor=editor, position=editor_position)

    def handle_highlight(
        self, items: Sequence[lsp.DocumentHighlight] | None
    ) -> PlacementPlan:
        return self.highlights.update(items or [])

    def handle_diagnostic(self, params: lsp.PublishDiagnosticsParams) -> PlacementPlan:
        """Reconcile published diagnostics into markers."""
        return self.diagnostics.update(params.diagnostics)

    # ------------------------------------------------------------------
    # Ranges
    # ------------------------------------------------------------------

    def range_to_editor_range(
        self, range_: lsp.Range, editor: CodeEditor | None = None
    ) -> EditorRange:
        start = VirtualPosition.from_lsp(range_.start)
        end = VirtualPosition.from_lsp(range_.end)
        if editor is None:
            editor = self.virtual_document.get_editor_at_virtual_line(start)
        return EditorRange(
            start=self.virtual_document.transform_virtual_to_editor(start),
            end=self.virtual_document.transform_virtual_to_editor(end),
            editor=editor,
        )

    def editor_range_for_hover(
        self, character: RootPosition, range_: lsp.Range | None
    ) -> EditorRange:
        """Editor range of a hover at ``character``, from the response or the token."""
        editor = self.virtual_editor.get_editor_at_root_position(character)

        if range_ is not None:
            return self.range_to_editor_range(range_, editor)

        # construct the range from the token under the hover character
        token = self.virtual_editor.get_token_at(character)
        start_in_root = RootPosition(line=character.line, column=token.start)
        end_in_root = RootPosition(line=character.line, column=token.end)
        return EditorRange(
            start=self.virtual_editor.root_position_to_editor_position(start_in_root),
            end=self.virtual_editor.root_position_to_editor_position(end_in_root),
            editor=editor,
        )
