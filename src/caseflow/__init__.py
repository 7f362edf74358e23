"""caseflow: phase transition engine for legal case management."""

__version__ = "0.1.0"
