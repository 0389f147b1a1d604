"""
Polyglot Language Server

Exposes the virtual document engine over LSP using pygls: notebooks opened
by the client are flattened into virtual documents per language, rebuilt on
every change, and can be inspected through workspace commands.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from lsprotocol import types as lsp
from pygls.lsp.server import LanguageServer
from pygls.workspace import TextDocument

from polyglot_lsp import __version__
from polyglot_lsp.adapter import LanguageConnection, VirtualDocumentAdapter
from polyglot_lsp.config import Settings, read_options, settings_from_options
from polyglot_lsp.editors import NotebookCell, TextDocumentEditor
from polyglot_lsp.errors import ConfigError, PositionError
from polyglot_lsp.positioning import RootPosition
from polyglot_lsp.timing import ChangeWaiter
from polyglot_lsp.virtual_editor import VirtualEditorForNotebook

if TYPE_CHECKING:
    from polyglot_lsp.virtual_document import VirtualDocument
    from polyglot_lsp.virtual_editor import VirtualEditor

# WARNING by default; stderr may be shown to the user as errors by some clients
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class PolyglotLanguageServer(LanguageServer):
    """Language server keeping one virtual editor per open notebook."""

    CMD_VIRTUAL_DOCUMENTS = "polyglot.virtualDocuments"
    CMD_ROOT_TO_VIRTUAL = "polyglot.rootToVirtual"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)

        self.settings = Settings()
        # Options read from --config; initializationOptions are layered on top
        self.file_options: dict[str, Any] = {}

        self._notebooks: dict[str, VirtualEditorForNotebook] = {}
        self._cell_editors: dict[str, TextDocumentEditor] = {}

    def configure(self, options: dict[str, Any] | None = None) -> None:
        """Rebuild settings from the file options and ``options``."""
        self.settings = settings_from_options({**self.file_options, **(options or {})})

    def get_virtual_editor(self, notebook_uri: str) -> VirtualEditorForNotebook | None:
        return self._notebooks.get(notebook_uri)

    def editor_for_cell(self, document: TextDocument) -> TextDocumentEditor:
        """Return the editor of a cell, reusing it across rebuilds."""
        editor = self._cell_editors.get(document.uri)
        if editor is None:
            editor = TextDocumentEditor(document)
            self._cell_editors[document.uri] = editor
        elif editor.document is not document:
            editor.document = document
        return editor

    def update_notebook(
        self, notebook_uri: str, cells: list[NotebookCell]
    ) -> VirtualEditorForNotebook:
        """Create or refresh the virtual editor of a notebook and rebuild it."""
        virtual_editor = self._notebooks.get(notebook_uri)
        if virtual_editor is None:
            virtual_editor = VirtualEditorForNotebook(
                cells=cells,
                language=self.settings.language,
                path=notebook_uri,
                overrides_registry=self.settings.overrides,
                foreign_code_extractors=self.settings.extractors,
            )
            self._notebooks[notebook_uri] = virtual_editor
        else:
            virtual_editor.cells[:] = cells

        virtual_editor.perform_documents_update()
        return virtual_editor

    def sync_notebook(self, notebook_uri: str) -> VirtualEditorForNotebook | None:
        """Rebuild a notebook from the workspace state."""
        notebook = self.workspace.get_notebook_document(notebook_uri=notebook_uri)
        if notebook is None:
            logger.warning(f"Notebook not found in workspace: {notebook_uri}")
            return None

        previous = self._notebooks.get(notebook_uri)
        previous_uris = {cell.editor.uri for cell in previous.cells} if previous else set()

        cells = [
            NotebookCell(
                editor=self.editor_for_cell(self.workspace.get_text_document(cell.document)),
                cell_type="code" if cell.kind == lsp.NotebookCellKind.Code else "markdown",
            )
            for cell in notebook.cells
        ]
        # cells deleted from the notebook
        for uri in previous_uris - {cell.editor.uri for cell in cells}:
            self._cell_editors.pop(uri, None)

        return self.update_notebook(notebook_uri, cells)

    def forget_notebook(self, notebook_uri: str, cell_uris: list[str]) -> None:
        self._notebooks.pop(notebook_uri, None)
        for uri in cell_uris:
            self._cell_editors.pop(uri, None)

    def create_adapter(
        self,
        connection: LanguageConnection,
        notebook_uri: str,
        invoke_completer: Callable[[lsp.CompletionTriggerKind], None],
        document: VirtualDocument | None = None,
    ) -> VirtualDocumentAdapter | None:
        """Create the adapter of one virtual document of an open notebook.

        ``document`` defaults to the host document. Change waits and hover
        debouncing follow the current settings.
        """
        virtual_editor = self._notebooks.get(notebook_uri)
        if virtual_editor is None:
            logger.warning(f"Cannot create an adapter, notebook is not open: {notebook_uri}")
            return None

        return VirtualDocumentAdapter(
            connection,
            virtual_editor,
            virtual_editor.virtual_document if document is None else document,
            invoke_completer,
            hover_delay=self.settings.hover_delay,
            change_waiter=ChangeWaiter(
                attempts=self.settings.change_wait_attempts,
                interval=self.settings.change_wait_interval,
            ),
        )


def describe_documents(virtual_editor: VirtualEditor) -> list[dict[str, Any]]:
    """Describe every virtual document of the tree, root first."""
    return [
        {
            "uri": document.uri,
            "language": document.language,
            "revision": document.revision,
            "text": document.value,
        }
        for document in virtual_editor.virtual_document.iter_documents()
    ]


def root_to_virtual(
    virtual_editor: VirtualEditor, position: RootPosition
) -> dict[str, Any] | None:
    """Locate the owning document of a root position and the position inside it."""
    try:
        document = virtual_editor.document_at_root_position(position)
        virtual_position = virtual_editor.root_position_to_virtual_position(position)
    except PositionError as e:
        logger.debug(f"Cannot map {position}: {e}")
        return None
    return {
        "uri": document.uri,
        "language": document.language,
        "position": {"line": virtual_position.line, "character": virtual_position.column},
    }


def load_notebook(path: Path, settings: Settings) -> VirtualEditorForNotebook:
    """Build the virtual editor of an ``.ipynb`` file."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    language = (
        data.get("metadata", {}).get("language_info", {}).get("name") or settings.language
    )
    uri = path.resolve().as_uri()
    cells = []
    for index, cell in enumerate(data.get("cells", [])):
        source = cell.get("source", "")
        if isinstance(source, list):
            source = "".join(source)
        document = TextDocument(uri=f"{uri}#cell{index}", source=source)
        cells.append(
            NotebookCell(
                editor=TextDocumentEditor(document),
                cell_type=cell.get("cell_type", "code"),
            )
        )

    virtual_editor = VirtualEditorForNotebook(
        cells=cells,
        language=language,
        path=uri,
        overrides_registry=settings.overrides,
        foreign_code_extractors=settings.extractors,
    )
    virtual_editor.perform_documents_update()
    return virtual_editor


def notebook_sync_options() -> lsp.NotebookDocumentSyncOptions:
    """Sync every notebook and all of its cells.

    The host language comes from the settings, which are only known after
    initialization, so cells are not filtered by language here.
    """
    return lsp.NotebookDocumentSyncOptions(
        notebook_selector=[lsp.NotebookDocumentFilterWithNotebook(notebook="*")]
    )


# Create server instance
server = PolyglotLanguageServer(
    name="polyglot-lsp",
    version=__version__,
    notebook_document_sync=notebook_sync_options(),
)


# ============================================================================
# Lifecycle Events
# ============================================================================


@server.feature(lsp.INITIALIZE)
async def initialize(params: lsp.InitializeParams) -> None:
    """Handle the initialize request - read settings from initializationOptions."""
    opts = params.initialization_options or {}
    if not isinstance(opts, dict):
        logger.warning(f"Ignoring initializationOptions of type {type(opts).__name__}")
        opts = {}
    try:
        server.configure(opts)
    except ConfigError as e:
        logger.error(f"Invalid initializationOptions, keeping previous settings: {e}")


# ============================================================================
# Notebook Events
# ============================================================================


@server.feature(lsp.NOTEBOOK_DOCUMENT_DID_OPEN)
async def did_open_notebook(params: lsp.DidOpenNotebookDocumentParams) -> None:
    """Handle notebook open."""
    uri = params.notebook_document.uri
    logger.debug(f"Notebook opened: {uri}")
    server.sync_notebook(uri)


@server.feature(lsp.NOTEBOOK_DOCUMENT_DID_CHANGE)
async def did_change_notebook(params: lsp.DidChangeNotebookDocumentParams) -> None:
    """Handle notebook change (cell structure or cell text)."""
    uri = params.notebook_document.uri
    logger.debug(f"Notebook changed: {uri}")
    server.sync_notebook(uri)


@server.feature(lsp.NOTEBOOK_DOCUMENT_DID_CLOSE)
async def did_close_notebook(params: lsp.DidCloseNotebookDocumentParams) -> None:
    """Handle notebook close."""
    uri = params.notebook_document.uri
    logger.debug(f"Notebook closed: {uri}")
    server.forget_notebook(uri, [cell.uri for cell in params.cell_text_documents])


# ============================================================================
# Execute Command
# ============================================================================


@server.feature(lsp.WORKSPACE_EXECUTE_COMMAND)
async def execute_command(params: lsp.ExecuteCommandParams) -> object | None:
    """Execute a command.

    ``polyglot.virtualDocuments [notebookUri]`` lists the virtual documents
    of a notebook; ``polyglot.rootToVirtual [notebookUri, {line, character}]``
    maps a root position to the owning document.
    """
    arguments = params.arguments or []
    if not arguments or not isinstance(arguments[0], str):
        return None
    virtual_editor = server.get_virtual_editor(arguments[0])
    if virtual_editor is None:
        return None

    if params.command == PolyglotLanguageServer.CMD_VIRTUAL_DOCUMENTS:
        return describe_documents(virtual_editor)

    elif params.command == PolyglotLanguageServer.CMD_ROOT_TO_VIRTUAL:
        if len(arguments) < 2 or not isinstance(arguments[1], dict):
            return None
        position = RootPosition(
            line=int(arguments[1].get("line", 0)),
            column=int(arguments[1].get("character", 0)),
        )
        return root_to_virtual(virtual_editor, position)

    return None


# ============================================================================
# Main Entry Point
# ============================================================================


def dump_notebook(path: Path, settings: Settings) -> None:
    """Print the virtual documents of a notebook file."""
    virtual_editor = load_notebook(path, settings)
    for description in describe_documents(virtual_editor):
        print(
            f"# {description['uri']} "
            f"({description['language']}, revision {description['revision']})"
        )
        print(description["text"])


def main() -> None:
    """Main entry point for the language server."""
    parser = argparse.ArgumentParser(
        description="Polyglot Language Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--stdio",
        action="store_true",
        default=True,
        help="Use stdio for communication (default)",
    )
    parser.add_argument(
        "--tcp",
        action="store_true",
        help="Use TCP for communication",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="TCP host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=2087,
        help="TCP port (default: 2087)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set the logging level (default: WARNING)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"polyglot-lsp {__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="TOML file with extractors, overrides and timing settings",
    )
    parser.add_argument(
        "--dump",
        type=Path,
        metavar="NOTEBOOK",
        help="Print the virtual documents of an .ipynb file and exit",
    )

    args = parser.parse_args()

    # Set log level
    logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        if args.config is not None:
            server.file_options = read_options(args.config)
        server.configure()
    except ConfigError as e:
        parser.error(str(e))

    if args.dump is not None:
        try:
            dump_notebook(args.dump, server.settings)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Cannot read notebook {args.dump}: {e}", file=sys.stderr)
            sys.exit(1)
        return

    if args.tcp:
        logger.info(f"Starting polyglot-lsp in TCP mode on {args.host}:{args.port}")
        server.start_tcp(args.host, args.port)
    else:
        logger.info("Starting polyglot-lsp in stdio mode")
        server.start_io()


if __name__ == "__main__":
    main()
