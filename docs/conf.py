"""Sphinx configuration for pgbridge documentation."""

import os
import sys

# Add src/ to path so Sphinx can import pgbridge modules directly
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

project = "pgbridge"
author = "pgbridge contributors"
copyright = "2025, pgbridge contributors"  # noqa: A001

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.intersphinx",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "sphinx_autodoc_typehints",
    "sphinx_copybutton",
]

# Napoleon (Google-style docstrings)
napoleon_google_docstring = True
napoleon_numpy_docstring = False

# Theme
html_theme = "furo"
html_title = "pgbridge"

# Autodoc
autodoc_member_order = "bysource"
autodoc_typehints = "description"

# Intersphinx
intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "protobuf": ("https://googleapis.dev/python/protobuf/latest/", None),
}

# General
exclude_patterns = ["_build"]
