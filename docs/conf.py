import os
import sys

# Import the package from the source tree
sys.path.insert(0, os.path.abspath(".."))

project   = "counterpart"
copyright = "2026, counterpart contributors"
author    = "counterpart contributors"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx_autodoc_typehints",
    "sphinx_copybutton",
]

html_theme = "sphinx_rtd_theme"

autodoc_member_order    = "bysource"
autodoc_typehints       = "description"
always_document_param_types = True

napoleon_use_param  = True
napoleon_use_rtype  = False
napoleon_numpy_docstring = True
