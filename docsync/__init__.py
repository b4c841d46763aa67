"""Keep local Markdown files and Google Docs in sync."""

__version__ = "0.1.0"
