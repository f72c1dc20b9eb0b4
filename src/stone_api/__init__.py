"""Stone Atlas API: identity and session management."""

__version__ = "0.4.0"
