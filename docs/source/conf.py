# Configuration file for the Sphinx documentation builder.
#
# For a full list of options see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Path setup --------------------------------------------------------------

import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join('..', '..')))
from dampedhill import __version__ as version

# -- Project information -----------------------------------------------------

project = 'dampedhill'
author = 'dampedhill developers'

# The full version, including alpha/beta/rc tags
release = version


# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.mathjax',
]

templates_path = []
exclude_patterns = []


# -- Options for HTML output -------------------------------------------------

html_theme = 'furo'


def autodoc_skip_member(app, what, name, obj, skip, options):
    # only document callables and modules
    exclude = callable(obj) is False and what != "module"
    return True if exclude else None


def setup(app):
    app.connect('autodoc-skip-member', autodoc_skip_member)
