"""
Editors consumed by the virtual editor.

An editor is one concrete text-editing unit: a notebook cell or a file.
``CodeEditor`` declares every operation the package may call; operations
an implementation does not provide fall through to a single shared path
that logs the missing capability once and raises ``NotImplementedError``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, NoReturn

from lsprotocol import types as lsp

from polyglot_lsp.errors import OutOfRangeError
from polyglot_lsp.positioning import EditorPosition

if TYPE_CHECKING:
    from pygls.workspace import TextDocument

logger = logging.getLogger(__name__)

_WORD_CHARS = re.compile(r"\w")


@dataclass(frozen=True)
class Token:
    """A token under a position, columns local to the editor line."""

    start: int
    end: int
    string: str
    type: str | None = None

    @property
    def is_empty(self) -> bool:
        return len(self.string) == 0


class CodeEditor:
    """Interface of an editor (cell or file) seen by the virtual editor.

    Editors are compared and hashed by identity: the same editor object must
    be used across rebuilds.
    """

    _reported_missing: ClassVar[set[tuple[str, str]]] = set()

    @property
    def uri(self) -> str:
        self._not_implemented("uri")

    @property
    def line_count(self) -> int:
        return self.get_value().count("\n") + 1

    def get_value(self) -> str:
        self._not_implemented("get_value")

    def set_value(self, text: str) -> None:
        self._not_implemented("set_value")

    def get_token_at(self, position: EditorPosition) -> Token:
        self._not_implemented("get_token_at")

    def _not_implemented(self, capability: str) -> NoReturn:
        name = type(self).__name__
        key = (name, capability)
        if key not in CodeEditor._reported_missing:
            CodeEditor._reported_missing.add(key)
            logger.warning(f"Unimplemented capability {capability} for {name}")
        raise NotImplementedError(f"{name} does not implement {capability}")


class TextDocumentEditor(CodeEditor):
    """Editor backed by a pygls ``TextDocument``.

    This is how the server sees notebook cells: the workspace keeps one
    text document per cell and applies the client's edits to it.
    """

    def __init__(self, document: TextDocument) -> None:
        self.document = document

    def __repr__(self) -> str:
        return f"TextDocumentEditor({self.document.uri!r})"

    @property
    def uri(self) -> str:
        return self.document.uri

    def get_value(self) -> str:
        return self.document.source

    def set_value(self, text: str) -> None:
        self.document.apply_change(lsp.TextDocumentContentChangeWholeDocument(text=text))
        self.document.version = (self.document.version or 0) + 1

    def get_token_at(self, position: EditorPosition) -> Token:
        lines = self.get_value().split("\n")
        if position.line >= len(lines):
            raise OutOfRangeError(
                f"Line {position.line} is past the end of {self.document.uri}"
            )
        line_text = lines[position.line]
        col = min(position.column, len(line_text))

        start = col
        while start > 0 and _WORD_CHARS.match(line_text[start - 1]):
            start -= 1

        end = col
        while end < len(line_text) and _WORD_CHARS.match(line_text[end]):
            end += 1

        return Token(start=start, end=end, string=line_text[start:end])


@dataclass
class NotebookCell:
    """A notebook cell: its editor and its type (``code``, ``markdown``, ``raw``)."""

    editor: CodeEditor
    cell_type: str = "code"

    @property
    def is_code(self) -> bool:
        return self.cell_type == "code"
