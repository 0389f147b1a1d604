"""Tests for the language server layer."""

import json
import logging
import sys
from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from lsprotocol import types as lsp
from pygls.workspace import TextDocument

from polyglot_lsp.adapter import LanguageConnection
from polyglot_lsp.config import Settings
from polyglot_lsp.positioning import RootPosition
from polyglot_lsp.server import (
    PolyglotLanguageServer,
    describe_documents,
    execute_command,
    initialize,
    load_notebook,
    main,
    notebook_sync_options,
    root_to_virtual,
)

NOTEBOOK_URI = "file:///notebooks/analysis.ipynb"


@pytest.fixture
def test_server():
    """Create a fresh server, independent of the module-level one."""
    return PolyglotLanguageServer(name="test-polyglot-lsp", version="0")


@pytest.fixture
def text_documents(cells):
    """The sample notebook's cell documents, by uri."""
    return {cell.editor.uri: cell.editor.document for cell in cells}


@pytest.fixture
def workspace(text_documents):
    """Mock pygls workspace holding the sample notebook."""
    workspace = MagicMock()
    workspace.get_notebook_document.return_value = lsp.NotebookDocument(
        uri=NOTEBOOK_URI,
        notebook_type="jupyter-notebook",
        version=1,
        cells=[
            lsp.NotebookCell(kind=lsp.NotebookCellKind.Code, document=uri)
            for uri in text_documents
        ],
    )
    workspace.get_text_document.side_effect = lambda uri: text_documents[uri]
    return workspace


@pytest.fixture
def synced_server(test_server, workspace):
    with patch.object(
        PolyglotLanguageServer, "workspace", new_callable=PropertyMock
    ) as mock_workspace:
        mock_workspace.return_value = workspace
        test_server.sync_notebook(NOTEBOOK_URI)
        yield test_server


class TestNotebookSync:
    """Keeping virtual editors in step with the workspace."""

    def test_update_notebook(self, test_server, cells):
        """Test building a notebook's virtual documents."""
        virtual_editor = test_server.update_notebook(NOTEBOOK_URI, cells)

        assert test_server.get_virtual_editor(NOTEBOOK_URI) is virtual_editor
        r = virtual_editor.virtual_document.foreign_documents["r"]
        assert r.value == "y <- 2\nprint(y)\nz <- 3\n"

    def test_update_reuses_virtual_editor(self, test_server, cells):
        """Test that an update keeps the virtual editor."""
        first = test_server.update_notebook(NOTEBOOK_URI, cells)
        second = test_server.update_notebook(NOTEBOOK_URI, cells[:1])

        assert first is second
        assert second.virtual_document.value == "x = 1\nprint(x)\n"

    def test_sync_from_workspace(self, synced_server, text_documents):
        """Test syncing a notebook from the workspace."""
        virtual_editor = synced_server.get_virtual_editor(NOTEBOOK_URI)
        document = virtual_editor.virtual_document

        assert [cell.editor.uri for cell in virtual_editor.cells] == list(text_documents)
        # magics are overridden line for line
        assert document.value.startswith("x = 1\nprint(x)\nget_ipython().run_cell_magic")
        assert document.value.count("\n") == 7
        assert document.foreign_documents["r"].value == "y <- 2\nprint(y)\nz <- 3\n"

    def test_cell_editors_are_reused(self, synced_server, text_documents):
        """Test that cell editors survive a document swap."""
        virtual_editor = synced_server.get_virtual_editor(NOTEBOOK_URI)
        editors = [cell.editor for cell in virtual_editor.cells]

        # pygls replaces the document object on some changes
        uri = next(iter(text_documents))
        text_documents[uri] = TextDocument(uri=uri, source="x = 10\nprint(x)")
        synced_server.sync_notebook(NOTEBOOK_URI)

        assert [cell.editor for cell in virtual_editor.cells] == editors
        assert virtual_editor.virtual_document.value.startswith("x = 10\n")

    def test_markdown_cells(self, test_server, workspace, text_documents):
        """Test markup cells become markdown cells."""
        notebook = workspace.get_notebook_document.return_value
        notebook.cells[0].kind = lsp.NotebookCellKind.Markup
        with patch.object(
            PolyglotLanguageServer, "workspace", new_callable=PropertyMock
        ) as mock_workspace:
            mock_workspace.return_value = workspace
            virtual_editor = test_server.sync_notebook(NOTEBOOK_URI)

        assert virtual_editor.cells[0].cell_type == "markdown"
        assert not virtual_editor.virtual_document.value.startswith("x = 1")

    def test_unknown_notebook(self, test_server):
        """Test syncing a notebook the workspace does not know."""
        workspace = MagicMock()
        workspace.get_notebook_document.return_value = None
        with patch.object(
            PolyglotLanguageServer, "workspace", new_callable=PropertyMock
        ) as mock_workspace:
            mock_workspace.return_value = workspace
            assert test_server.sync_notebook("file:///missing.ipynb") is None

    def test_deleted_cell_editors_are_dropped(self, synced_server, workspace, text_documents):
        """Cells removed by a notebook change release their editors."""
        notebook = workspace.get_notebook_document.return_value
        removed = notebook.cells.pop()
        synced_server.sync_notebook(NOTEBOOK_URI)

        assert removed.document not in synced_server._cell_editors
        assert set(synced_server._cell_editors) == set(text_documents) - {removed.document}

    def test_forget_notebook(self, synced_server, text_documents):
        """Test closing a notebook."""
        synced_server.forget_notebook(NOTEBOOK_URI, list(text_documents))
        assert synced_server.get_virtual_editor(NOTEBOOK_URI) is None
        assert synced_server._cell_editors == {}


class TestAdapters:
    """Adapters created by the server follow its settings."""

    @pytest.fixture
    def connection(self):
        return MagicMock(spec=LanguageConnection)

    def test_timing_from_settings(self, test_server, cells, connection):
        """Change waits and hover delay come from the configured settings."""
        test_server.configure({"hoverDelay": 0.5, "changeWait": {"attempts": 3, "interval": 0.1}})
        virtual_editor = test_server.update_notebook(NOTEBOOK_URI, cells)

        adapter = test_server.create_adapter(connection, NOTEBOOK_URI, MagicMock())

        assert adapter.virtual_document is virtual_editor.virtual_document
        assert adapter._debounced_hover.delay == 0.5
        assert adapter._change_waiter.timeout == pytest.approx(0.3)

    def test_foreign_document(self, test_server, cells, connection):
        """An adapter can be created for a foreign document."""
        virtual_editor = test_server.update_notebook(NOTEBOOK_URI, cells)
        r = virtual_editor.virtual_document.foreign_documents["r"]

        adapter = test_server.create_adapter(connection, NOTEBOOK_URI, MagicMock(), r)

        assert adapter.virtual_document is r
        assert adapter.virtual_editor is virtual_editor

    def test_notebook_not_open(self, test_server, connection):
        """No adapter is created for an unknown notebook."""
        assert test_server.create_adapter(connection, NOTEBOOK_URI, MagicMock()) is None


def test_notebook_sync_options():
    """All notebooks are synced, whatever the language of their cells."""
    selector = notebook_sync_options().notebook_selector[0]
    assert selector.notebook == "*"
    assert selector.cells is None


class TestInspection:
    def test_describe_documents(self, notebook):
        """Test describing the virtual documents."""
        descriptions = describe_documents(notebook)

        assert [d["language"] for d in descriptions] == ["python", "r"]
        assert descriptions[0]["uri"] == notebook.virtual_document.uri
        assert descriptions[1]["text"] == "y <- 2\nprint(y)\nz <- 3\n"

    def test_root_to_virtual(self, notebook):
        """Test locating a root position."""
        r = notebook.virtual_document.foreign_documents["r"]
        assert root_to_virtual(notebook, RootPosition(5, 5)) == {
            "uri": r.uri,
            "language": "r",
            "position": {"line": 2, "character": 2},
        }

    def test_root_to_virtual_out_of_range(self, notebook):
        """Test a root position past the last line."""
        assert root_to_virtual(notebook, RootPosition(99, 0)) is None


class TestExecuteCommand:
    """Workspace commands exposed by the server."""

    @pytest.mark.asyncio
    async def test_virtual_documents(self, test_server, cells):
        """Test the virtual documents command."""
        test_server.update_notebook(NOTEBOOK_URI, cells)
        params = lsp.ExecuteCommandParams(
            command=PolyglotLanguageServer.CMD_VIRTUAL_DOCUMENTS, arguments=[NOTEBOOK_URI]
        )
        with patch("polyglot_lsp.server.server", test_server):
            result = await execute_command(params)

        assert [d["language"] for d in result] == ["python", "r"]

    @pytest.mark.asyncio
    async def test_root_to_virtual(self, test_server, cells):
        """Test the root to virtual command."""
        test_server.update_notebook(NOTEBOOK_URI, cells)
        params = lsp.ExecuteCommandParams(
            command=PolyglotLanguageServer.CMD_ROOT_TO_VIRTUAL,
            arguments=[NOTEBOOK_URI, {"line": 3, "character": 2}],
        )
        with patch("polyglot_lsp.server.server", test_server):
            result = await execute_command(params)

        assert result["language"] == "r"
        assert result["position"] == {"line": 0, "character": 2}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "command,arguments",
        [
            (PolyglotLanguageServer.CMD_VIRTUAL_DOCUMENTS, []),
            (PolyglotLanguageServer.CMD_VIRTUAL_DOCUMENTS, ["file:///unknown.ipynb"]),
            (PolyglotLanguageServer.CMD_ROOT_TO_VIRTUAL, [NOTEBOOK_URI]),
            ("polyglot.unknown", [NOTEBOOK_URI]),
        ],
    )
    async def test_invalid_requests(self, test_server, cells, command, arguments):
        """Test commands with missing or unknown arguments."""
        test_server.update_notebook(NOTEBOOK_URI, cells)
        params = lsp.ExecuteCommandParams(command=command, arguments=arguments)
        with patch("polyglot_lsp.server.server", test_server):
            assert await execute_command(params) is None


class TestInitialize:
    @pytest.mark.asyncio
    async def test_initialization_options(self, test_server):
        """Test settings from initializationOptions."""
        params = lsp.InitializeParams(
            process_id=None,
            capabilities=lsp.ClientCapabilities(),
            initialization_options={"hoverDelay": 0.5, "changeWait": {"attempts": 3}},
        )
        with patch("polyglot_lsp.server.server", test_server):
            await initialize(params)

        assert test_server.settings.hover_delay == 0.5
        assert test_server.settings.change_wait_attempts == 3

    @pytest.mark.asyncio
    async def test_file_options_are_layered(self, test_server):
        """Test initializationOptions over the settings file."""
        test_server.file_options = {"hoverDelay": 0.1, "language": "r"}
        params = lsp.InitializeParams(
            process_id=None,
            capabilities=lsp.ClientCapabilities(),
            initialization_options={"hoverDelay": 0.5},
        )
        with patch("polyglot_lsp.server.server", test_server):
            await initialize(params)

        assert test_server.settings.hover_delay == 0.5
        assert test_server.settings.language == "r"

    @pytest.mark.asyncio
    async def test_invalid_options_keep_settings(self, test_server, caplog):
        """Test invalid initializationOptions."""
        previous = test_server.settings
        params = lsp.InitializeParams(
            process_id=None,
            capabilities=lsp.ClientCapabilities(),
            initialization_options={"hoverDelay": "soon"},
        )
        with patch("polyglot_lsp.server.server", test_server):
            with caplog.at_level(logging.ERROR, logger="polyglot_lsp.server"):
                await initialize(params)

        assert test_server.settings is previous
        assert "Invalid initializationOptions" in caplog.text


@pytest.fixture
def notebook_file(tmp_path):
    path = tmp_path / "analysis.ipynb"
    path.write_text(
        json.dumps(
            {
                "metadata": {"language_info": {"name": "python"}},
                "cells": [
                    {"cell_type": "code", "source": ["x = 1\n", "print(x)"]},
                    {"cell_type": "markdown", "source": "# Plotting"},
                    {"cell_type": "code", "source": "%%R\ny <- 2"},
                ],
            }
        )
    )
    return path


class TestNotebookFiles:
    def test_load_notebook(self, notebook_file):
        """Test loading an .ipynb file."""
        virtual_editor = load_notebook(notebook_file, Settings())

        assert virtual_editor.virtual_document.value.startswith("x = 1\nprint(x)\n")
        assert virtual_editor.virtual_document.foreign_documents["r"].value == "y <- 2\n"
        assert virtual_editor.cells[1].cell_type == "markdown"

    def test_dump(self, test_server, notebook_file, capsys):
        """Test printing the virtual documents of a notebook."""
        argv = ["polyglot-lsp", "--dump", str(notebook_file)]
        with patch.object(sys, "argv", argv), patch("polyglot_lsp.server.server", test_server):
            main()

        out = capsys.readouterr().out
        assert "(python, revision" in out
        assert "(r, revision" in out
        assert "y <- 2" in out

    def test_dump_missing_file(self, test_server, tmp_path):
        """Test dumping a missing notebook."""
        argv = ["polyglot-lsp", "--dump", str(tmp_path / "missing.ipynb")]
        with patch.object(sys, "argv", argv), patch("polyglot_lsp.server.server", test_server):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1

    def test_invalid_config(self, test_server, tmp_path):
        """Test an invalid settings file."""
        config = tmp_path / "polyglot.toml"
        config.write_text("hoverDelay = 'soon'")
        argv = ["polyglot-lsp", "--config", str(config)]
        with patch.object(sys, "argv", argv), patch("polyglot_lsp.server.server", test_server):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 2
