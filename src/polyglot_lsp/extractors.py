"""
Foreign code extraction for polyglot-lsp.

A foreign code extractor makes it possible to analyse code of language X
embedded in code (or a notebook) of language Y, for example R in IPython
(``%%R`` / ``%R`` magics), HTML inside a Python string, or SQL in a cell
magic. Extraction is pattern-driven: a regular expression finds the
embedded blocks and a template builds the foreign code from the match
groups. No attempt is made to parse either language.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from polyglot_lsp.errors import ExtractorConfigurationError
from polyglot_lsp.positioning import EditorPosition, SourceRange, position_at_offset

logger = logging.getLogger(__name__)

# templates made of a single group reference: \2, \g<2>, \g<code>
_GROUP_TEMPLATE = re.compile(r"\\(\d+)|\\g<(\w+)>")


@dataclass
class ExtractedCode:
    """One fragment of an extraction pass."""

    foreign_code: str | None
    """Foreign code (may be empty, e.g. for a bare ``%R`` line) or None if none."""

    host_code: str | None
    """Code to be retained in the virtual document of the host."""

    range: SourceRange | None
    """Range of the foreign code relative to the input; None for trailing host code."""

    host_start: EditorPosition = EditorPosition(line=0, column=0)
    """Where ``host_code`` starts in the input."""


@runtime_checkable
class ForeignCodeExtractor(Protocol):
    """Protocol for foreign code extractors."""

    @property
    def language(self) -> str:
        """The foreign language."""
        ...

    @property
    def standalone(self) -> bool:
        """Whether each extracted snippet needs its own virtual document.

        False means snippets are appended to one running document of the
        foreign language; True means every snippet is isolated (and needs a
        separate connection upstream).
        """
        ...

    def has_foreign_code(self, code: str) -> bool:
        """Test if there is any foreign code in the snippet."""
        ...

    def extract_foreign_code(self, code: str) -> list[ExtractedCode]:
        """Split the code into host and foreign fragments."""
        ...


ExtractorsRegistry = dict[str, list[ForeignCodeExtractor]]
"""Extractors keyed by host language."""


class RegExpForeignCodeExtractor:
    """Regular-expression based, configurable foreign code extractor.

    Args:
        language: The foreign language produced by this extractor.
        pattern: Regular expression matched repeatedly over the host code.
        extract_to_foreign: ``re`` expansion template (``\\2``, ``\\g<code>``)
            building the foreign code from a match.
        keep_in_host: Whether the matched text stays in the host document.
        is_standalone: Whether every match spawns its own virtual document.
    """

    def __init__(
        self,
        language: str,
        pattern: str,
        extract_to_foreign: str,
        keep_in_host: bool = True,
        is_standalone: bool = False,
    ) -> None:
        try:
            self._expression = re.compile(pattern)
        except re.error as e:
            raise ExtractorConfigurationError(
                f"Invalid pattern for {language} extractor: {pattern!r} ({e})"
            ) from e
        self._language = language
        self._template = extract_to_foreign
        self._template_group = _template_group(extract_to_foreign)
        self.keep_in_host = keep_in_host
        self._standalone = is_standalone

    def __repr__(self) -> str:
        return (
            f"RegExpForeignCodeExtractor(language={self._language!r}, "
            f"pattern={self._expression.pattern!r})"
        )

    @property
    def language(self) -> str:
        return self._language

    @property
    def standalone(self) -> bool:
        return self._standalone

    @property
    def pattern(self) -> str:
        return self._expression.pattern

    def has_foreign_code(self, code: str) -> bool:
        # compiled patterns keep no cursor between calls
        return self._expression.search(code) is not None

    def extract_foreign_code(self, code: str) -> list[ExtractedCode]:
        lines = code.split("\n")
        extracts: list[ExtractedCode] = []
        started_from = 0

        for match in self._expression.finditer(code):
            foreign_code = self._expand(match)

            if self.keep_in_host:
                host_code = code[started_from : match.end()]
            elif started_from == match.start():
                host_code = ""
            else:
                host_code = code[started_from : match.start()] + "\n"

            start_offset = self._foreign_start(match, foreign_code)
            extracts.append(
                ExtractedCode(
                    foreign_code=foreign_code,
                    host_code=host_code,
                    range=SourceRange(
                        start=position_at_offset(start_offset, lines),
                        end=position_at_offset(start_offset + len(foreign_code), lines),
                    ),
                    host_start=position_at_offset(started_from, lines),
                )
            )
            started_from = match.end()

        if started_from != len(code):
            extracts.append(
                ExtractedCode(
                    foreign_code=None,
                    host_code=code[started_from:],
                    range=None,
                    host_start=position_at_offset(started_from, lines),
                )
            )

        return extracts

    def _expand(self, match: re.Match[str]) -> str:
        try:
            return match.expand(self._template)
        except (re.error, IndexError) as e:
            raise ExtractorConfigurationError(
                f"Template {self._template!r} does not fit pattern "
                f"{self._expression.pattern!r} of the {self._language} extractor: {e}"
            ) from e

    def _foreign_start(self, match: re.Match[str], foreign_code: str) -> int:
        """Offset of the foreign code in the input."""
        if self._template_group is not None:
            start = match.start(self._template_group)
            if start != -1:
                return start

        offset = match.group(0).find(foreign_code)
        if offset == -1:
            raise ExtractorConfigurationError(
                f"Template {self._template!r} of the {self._language} extractor produced "
                f"code which is not part of the match {match.group(0)!r}; "
                "positions of the foreign code cannot be mapped"
            )
        return match.start() + offset


def _template_group(template: str) -> int | str | None:
    match = _GROUP_TEMPLATE.fullmatch(template)
    if match is None:
        return None
    if match.group(1) is not None:
        return int(match.group(1))
    name = match.group(2)
    return int(name) if name.isdigit() else name
