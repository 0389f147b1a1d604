"""
Coordinate spaces for polyglot-lsp.

Three position kinds are used throughout the package and are never
implicitly convertible into one another:

- ``RootPosition``: the flattened document (all code cells as consecutive
  lines in display order). This is what the UI speaks.
- ``EditorPosition``: local to one concrete editor (a cell or a file).
- ``VirtualPosition``: inside one synthesized per-language virtual document.

Positions of different kinds never compare equal, even when their line and
column are the same. Conversions go through the virtual editor / virtual
document tables only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from lsprotocol import types as lsp

if TYPE_CHECKING:
    from polyglot_lsp.editors import CodeEditor


@dataclass(frozen=True, order=True)
class _Position:
    line: int
    column: int

    @classmethod
    def from_lsp(cls, position: lsp.Position):
        return cls(line=position.line, column=position.character)

    def to_lsp(self) -> lsp.Position:
        return lsp.Position(line=self.line, character=self.column)


class RootPosition(_Position):
    """Position in the flattened notebook/file."""


class EditorPosition(_Position):
    """Position local to one editor."""


class VirtualPosition(_Position):
    """Position inside a virtual document."""


@dataclass(frozen=True)
class SourceRange:
    """A range of editor positions, as produced by the extractors."""

    start: EditorPosition
    end: EditorPosition

    def contains(self, position: EditorPosition) -> bool:
        return self.start <= position <= self.end


@dataclass(frozen=True)
class EditorRange:
    """A range within one specific editor, ready to be marked."""

    start: EditorPosition
    end: EditorPosition
    editor: CodeEditor

    def to_lsp(self) -> lsp.Range:
        return lsp.Range(start=self.start.to_lsp(), end=self.end.to_lsp())


def position_at_offset(offset: int, lines: Sequence[str]) -> EditorPosition:
    """Convert a character offset into a position.

    ``lines`` is the text split on ``"\\n"``. Offsets count characters, not
    bytes, so multi-byte text maps correctly.
    """
    line = 0
    column = 0
    for text_line in lines:
        if len(text_line) < offset:
            line += 1
            offset -= len(text_line) + 1
        else:
            column = offset
            break
    return EditorPosition(line=line, column=column)


def offset_at_position(position: _Position, lines: Sequence[str]) -> int:
    """Inverse of :func:`position_at_offset`."""
    return sum(len(text_line) + 1 for text_line in lines[: position.line]) + position.column
