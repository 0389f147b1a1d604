"""Shared fixtures: editors over pygls text documents and a small mixed notebook."""

import itertools

import pytest
from pygls.workspace import TextDocument

from polyglot_lsp.editors import NotebookCell, TextDocumentEditor
from polyglot_lsp.extractors import RegExpForeignCodeExtractor
from polyglot_lsp.virtual_editor import VirtualEditorForNotebook

NOTEBOOK_URI = "file:///notebooks/analysis.ipynb"

# Root lines of the sample notebook:
#   0  x = 1            cell 0
#   1  print(x)
#   2  %%R              cell 1 (R from line 1 on)
#   3  y <- 2
#   4  print(y)
#   5  %R z <- 3        cell 2 (R from column 3)
#   6  z = 4
SAMPLE_CELLS = [
    "x = 1\nprint(x)",
    "%%R\ny <- 2\nprint(y)",
    "%R z <- 3\nz = 4",
]


@pytest.fixture
def make_editor():
    """Factory for editors backed by pygls text documents."""
    counter = itertools.count()

    def factory(source: str, uri: str | None = None) -> TextDocumentEditor:
        if uri is None:
            uri = f"{NOTEBOOK_URI}#cell{next(counter)}"
        return TextDocumentEditor(TextDocument(uri=uri, source=source))

    return factory


@pytest.fixture
def r_cell_extractor():
    return RegExpForeignCodeExtractor(
        language="r",
        pattern=r"^%%R( .*?)?\n([\s\S]*)",
        extract_to_foreign=r"\2",
        keep_in_host=True,
    )


@pytest.fixture
def r_line_extractor():
    return RegExpForeignCodeExtractor(
        language="r",
        pattern=r"(^|\n)%R (.*)\n?",
        extract_to_foreign=r"\2",
        keep_in_host=True,
    )


@pytest.fixture
def r_extractors(r_cell_extractor, r_line_extractor):
    return {"python": [r_cell_extractor, r_line_extractor]}


@pytest.fixture
def cells(make_editor):
    return [NotebookCell(editor=make_editor(source)) for source in SAMPLE_CELLS]


@pytest.fixture
def notebook(cells, r_extractors):
    """The sample notebook, already indexed."""
    virtual_editor = VirtualEditorForNotebook(
        cells=cells,
        language="python",
        path=NOTEBOOK_URI,
        foreign_code_extractors=r_extractors,
    )
    virtual_editor.perform_documents_update()
    return virtual_editor
