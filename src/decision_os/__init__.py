"""Decision OS — a file-backed store for decisions, surprises and compressed learnings."""

__version__ = "0.1.0"
