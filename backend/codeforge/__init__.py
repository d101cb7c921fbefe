"""Generation orchestration engine: turns a prompt into validated source files."""

__version__ = "0.1.0"
