"""wtf - explain a git repository and its recent commits in plain language."""

__version__ = "0.1.0"
