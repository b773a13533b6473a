"""Metadata Injector: generate stock-photo titles, descriptions and keywords with AI."""

__version__ = "0.1.0"
