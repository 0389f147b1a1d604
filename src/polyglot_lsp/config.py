"""
Settings for polyglot-lsp.

Settings come from the client's ``initializationOptions`` (camelCase keys)
and optionally from a TOML file with the same shape::

    language = "python"
    hoverDelay = 0.25

    [changeWait]
    attempts = 30
    interval = 0.022

    [[foreignCodeExtractors.python]]
    language = "sql"
    pattern = '^%%sql( .*?)?\\n([\\s\\S]*)'
    extractToForeign = '\\2'
    keepInHost = true

    [[overrides.python]]
    pattern = '^%%time( .*?)?\\n'
    replacement = '\\n'
    scope = "cell"

User extractors and overrides are added after the defaults for the same
language, unless ``useDefaultExtractors`` / ``useDefaultOverrides`` is false.
"""

from __future__ import annotations

import logging
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from polyglot_lsp.adapter import DEFAULT_HOVER_DELAY
from polyglot_lsp.errors import ConfigError, ExtractorConfigurationError
from polyglot_lsp.extractors import ExtractorsRegistry, RegExpForeignCodeExtractor
from polyglot_lsp.overrides import CodeOverride, OverridesRegistry
from polyglot_lsp.timing import DEFAULT_WAIT_ATTEMPTS, DEFAULT_WAIT_INTERVAL

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "python"

# IPython cell magics whose body is code of another language
CELL_MAGIC_LANGUAGES: dict[str, str] = {
    "html": "html",
    "javascript": "javascript",
    "js": "javascript",
    "latex": "latex",
    "markdown": "markdown",
    "bash": "shell",
    "sh": "shell",
}


def default_extractors() -> ExtractorsRegistry:
    """Extractors for the IPython magics embedding other languages."""
    extractors = [
        RegExpForeignCodeExtractor(
            language="r",
            pattern=r"^%%R( .*?)?\n([\s\S]*)",
            extract_to_foreign=r"\2",
            keep_in_host=True,
        ),
        RegExpForeignCodeExtractor(
            language="r",
            pattern=r"(^|\n)%R (.*)\n?",
            extract_to_foreign=r"\2",
            keep_in_host=True,
        ),
    ]
    for magic, language in CELL_MAGIC_LANGUAGES.items():
        extractors.append(
            RegExpForeignCodeExtractor(
                language=language,
                pattern=rf"^%%{magic}( .*?)?\n([\s\S]*)",
                extract_to_foreign=r"\2",
                keep_in_host=True,
            )
        )
    return {"python": extractors}


def default_overrides() -> OverridesRegistry:
    """Rewrites of IPython magics into calls the Python servers understand."""
    return {
        "python": [
            CodeOverride(
                pattern=r"^%%(\w+)( .*?)?\n([\s\S]*)",
                replacement='get_ipython().run_cell_magic("\\1", "\\2", """\n\\3""")',
                scope="cell",
            ),
            CodeOverride(
                pattern=r'(\s*)%(\w+) ?([^"\n]*)',
                replacement=r'\1get_ipython().run_line_magic("\2", "\3")',
            ),
            CodeOverride(
                pattern=r'(\s*)!([^"\n]*)',
                replacement=r'\1get_ipython().getoutput("\2")',
            ),
        ]
    }


@dataclass
class Settings:
    """Complete polyglot-lsp settings."""

    language: str = DEFAULT_LANGUAGE
    extractors: ExtractorsRegistry = field(default_factory=default_extractors)
    overrides: OverridesRegistry = field(default_factory=default_overrides)
    change_wait_attempts: int = DEFAULT_WAIT_ATTEMPTS
    change_wait_interval: float = DEFAULT_WAIT_INTERVAL
    hover_delay: float = DEFAULT_HOVER_DELAY


def _expect(value: Any, kind: type | tuple[type, ...], name: str) -> Any:
    kinds = kind if isinstance(kind, tuple) else (kind,)
    # bool is an int subclass
    if not isinstance(value, kinds) or (isinstance(value, bool) and bool not in kinds):
        raise ConfigError(f"Invalid value for {name}: {value!r}")
    return value


def _parse_extractor(options: Any, host: str) -> RegExpForeignCodeExtractor:
    name = f"foreignCodeExtractors.{host}"
    _expect(options, dict, name)
    try:
        return RegExpForeignCodeExtractor(
            language=_expect(options["language"], str, f"{name}.language"),
            pattern=_expect(options["pattern"], str, f"{name}.pattern"),
            extract_to_foreign=_expect(
                options["extractToForeign"], str, f"{name}.extractToForeign"
            ),
            keep_in_host=_expect(options.get("keepInHost", True), bool, f"{name}.keepInHost"),
            is_standalone=_expect(
                options.get("isStandalone", False), bool, f"{name}.isStandalone"
            ),
        )
    except KeyError as e:
        raise ConfigError(f"Missing key {e} in {name}") from e
    except ExtractorConfigurationError as e:
        raise ConfigError(str(e)) from e


def _parse_override(options: Any, language: str) -> CodeOverride:
    name = f"overrides.{language}"
    _expect(options, dict, name)
    try:
        return CodeOverride(
            pattern=_expect(options["pattern"], str, f"{name}.pattern"),
            replacement=_expect(options["replacement"], str, f"{name}.replacement"),
            scope=_expect(options.get("scope", "line"), str, f"{name}.scope"),
        )
    except KeyError as e:
        raise ConfigError(f"Missing key {e} in {name}") from e
    except (ValueError, re.error) as e:
        raise ConfigError(f"Invalid override in {name}: {e}") from e


def _parse_registry(
    options: Any, name: str, parse: Callable[[Any, str], Any]
) -> dict[str, list[Any]]:
    _expect(options, dict, name)
    registry: dict[str, list[Any]] = {}
    for language, entries in options.items():
        _expect(entries, list, f"{name}.{language}")
        registry[language] = [parse(entry, language) for entry in entries]
    return registry


def settings_from_options(options: dict[str, Any] | None) -> Settings:
    """Build settings from ``initializationOptions``-shaped data.

    Raises:
        ConfigError: on unknown shapes or invalid values.
    """
    options = options or {}
    _expect(options, dict, "options")

    extractors = default_extractors() if options.get("useDefaultExtractors", True) else {}
    if "foreignCodeExtractors" in options:
        user = _parse_registry(
            options["foreignCodeExtractors"], "foreignCodeExtractors", _parse_extractor
        )
        for language, entries in user.items():
            extractors.setdefault(language, []).extend(entries)

    overrides = default_overrides() if options.get("useDefaultOverrides", True) else {}
    if "overrides" in options:
        user_overrides = _parse_registry(options["overrides"], "overrides", _parse_override)
        for language, entries in user_overrides.items():
            overrides.setdefault(language, []).extend(entries)

    change_wait = _expect(options.get("changeWait", {}), dict, "changeWait")
    settings = Settings(
        language=_expect(options.get("language", DEFAULT_LANGUAGE), str, "language"),
        extractors=extractors,
        overrides=overrides,
        change_wait_attempts=_expect(
            change_wait.get("attempts", DEFAULT_WAIT_ATTEMPTS), int, "changeWait.attempts"
        ),
        change_wait_interval=float(
            _expect(
                change_wait.get("interval", DEFAULT_WAIT_INTERVAL),
                (int, float),
                "changeWait.interval",
            )
        ),
        hover_delay=float(
            _expect(options.get("hoverDelay", DEFAULT_HOVER_DELAY), (int, float), "hoverDelay")
        ),
    )
    logger.debug(
        f"Settings loaded: {sum(len(e) for e in extractors.values())} extractors, "
        f"{sum(len(o) for o in overrides.values())} overrides"
    )
    return settings


def read_options(path: Path | str) -> dict[str, Any]:
    """Read raw options from a TOML file.

    Raises:
        ConfigError: if the file cannot be read or parsed.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read settings file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    return data


def load_settings(path: Path | str) -> Settings:
    """Load settings from a TOML file; raises ConfigError on invalid input."""
    return settings_from_options(read_options(path))
