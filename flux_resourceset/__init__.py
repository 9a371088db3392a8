"""
.. include:: ../README.md
"""

__all__ = [
    "manifest",
    "template",
    "filters",
    "expression",
    "dependency",
    "copy_from",
    "inventory",
    "cluster",
    "controller",
    "exceptions",
]
