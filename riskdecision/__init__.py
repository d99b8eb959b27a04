"""Decision automation rules for package risk assessment."""

__version__ = "0.1.0"
