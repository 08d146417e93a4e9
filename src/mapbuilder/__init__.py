"""Config-driven country map builder: attribute joins, classification, rendering."""

__version__ = "0.1.0"
