# Configuration file for Sphinx documentation builder
import os
import sys

sys.path.insert(0, os.path.abspath(".."))

project = "Spot Autotrade"
copyright = "2026, Trading System Team"
author = "Trading System Team"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.viewcode",
    "sphinx.ext.napoleon",
    "sphinx_rtd_theme",
]

templates_path = ["_templates"]
exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

html_theme = "sphinx_rtd_theme"
html_theme_options = {
    "display_version": True,
    "prev_next_buttons_location": "bottom",
}

# Google-style docstrings throughout the package
napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_include_private_names = False

autodoc_member_order = "bysource"
autodoc_typehints = "description"
autodoc_mock_imports = ["loguru"]
