"""casepal - code-similarity retrieval for test-case recommendations."""

__version__ = "0.1.0"
