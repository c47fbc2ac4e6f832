"""Online assessment-taking engine."""

__version__ = "0.1.0"
