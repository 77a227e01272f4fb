# Sphinx configuration for the vault-rag API reference (docs/index.md)

from __future__ import annotations

import importlib.metadata

project = "vault-rag"
author = "vault-rag contributors"

try:
    release = importlib.metadata.version("vault-rag")
except importlib.metadata.PackageNotFoundError:
    release = "0.1.0"
version = ".".join(release.split(".")[:2])

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",
    "myst_parser",
]

root_doc = "index"
source_suffix = {".md": "markdown"}
exclude_patterns = ["_build"]

# index.md embeds the autosummary table in an eval-rst fence
myst_enable_extensions = ["colon_fence"]

autosummary_generate = True
autodoc_default_options = {
    "members": True,
    "show-inheritance": True,
    "member-order": "bysource",
}
autodoc_typehints = "description"
# Optional backends; the API pages build without the extras installed
autodoc_mock_imports = ["mcp", "chromadb", "sentence_transformers", "httpx"]

# Docstrings use Google-style Args/Returns/Raises sections
napoleon_google_docstring = True

html_theme = "furo"
html_title = f"vault-rag {release}"
