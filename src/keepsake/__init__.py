"""keepsake — tiered personal memory with scope-checked retrieval."""

__version__ = "0.1.0"
