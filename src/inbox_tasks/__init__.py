"""Email normalisation and LLM-assisted task extraction."""

__version__ = "0.1.0"
