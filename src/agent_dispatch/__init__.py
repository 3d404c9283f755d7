"""Single-flight job queue and supervisor for external AI-agent CLIs."""

__version__ = "0.1.0"
