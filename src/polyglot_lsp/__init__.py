"""
Polyglot Language Server

Language Server Protocol support for notebooks and files mixing several
languages: embedded code (IPython magics, HTML in strings...) is extracted
into one virtual document per language, with exact position mapping back
to the cells it came from.
"""

__version__ = "0.1.0"


# Import on demand to avoid pulling in pygls for library use
def get_server():
    from polyglot_lsp.server import PolyglotLanguageServer
    return PolyglotLanguageServer

__all__ = ["get_server", "__version__"]
