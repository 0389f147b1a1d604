"""
Host code overrides.

Magics that stay in the host stream (``%ls``, ``!pip install``, the first
line of a ``%%R`` cell...) are not valid host code. Overrides rewrite them
into something the host language server accepts, e.g.
``get_ipython().run_line_magic("ls", "")``, the way masked lines are
replaced with ``pass`` before Python analysis.

Overrides never change the number of lines, so line provenance of the host
virtual document stays exact. Columns on overridden lines are not remapped;
diagnostics reported on those lines are skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Sequence

logger = logging.getLogger(__name__)

OVERRIDE_SCOPES = ("line", "cell")


@dataclass(frozen=True)
class CodeOverride:
    """A rewrite rule for host code.

    ``scope="line"`` rules must match a whole line; ``scope="cell"`` rules
    are searched once in the whole block. ``replacement`` is an ``re``
    expansion template.
    """

    pattern: str
    replacement: str
    scope: str = "line"
    expression: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.scope not in OVERRIDE_SCOPES:
            raise ValueError(f"Unknown override scope: {self.scope!r}")
        object.__setattr__(self, "expression", re.compile(self.pattern))


OverridesRegistry = dict[str, list[CodeOverride]]
"""Overrides keyed by the language of the document they apply to."""


@dataclass
class OverrideResult:
    code: str
    overridden_lines: set[int]


def apply_overrides(code: str, overrides: Sequence[CodeOverride]) -> OverrideResult:
    """Apply cell overrides, then line overrides, to a block of host code."""
    overridden: set[int] = set()

    for override in overrides:
        if override.scope != "cell":
            continue
        match = override.expression.search(code)
        if match is None:
            continue
        replaced = match.expand(override.replacement)
        candidate = code[: match.start()] + replaced + code[match.end() :]
        if candidate.count("\n") != code.count("\n"):
            logger.warning(
                f"Cell override {override.pattern!r} changes the line count, skipped"
            )
            continue
        first_line = code.count("\n", 0, match.start())
        last_line = first_line + replaced.count("\n")
        overridden.update(range(first_line, last_line + 1))
        code = candidate

    line_overrides = [o for o in overrides if o.scope == "line"]
    if not line_overrides:
        return OverrideResult(code=code, overridden_lines=overridden)

    lines = code.split("\n")
    for index, line in enumerate(lines):
        if index in overridden:
            continue
        for override in line_overrides:
            match = override.expression.fullmatch(line)
            if match is None:
                continue
            replaced = match.expand(override.replacement)
            if "\n" in replaced:
                logger.warning(
                    f"Line override {override.pattern!r} produced several lines, skipped"
                )
                continue
            lines[index] = replaced
            overridden.add(index)
            break

    return OverrideResult(code="\n".join(lines), overridden_lines=overridden)
