"""WA Sender Runtime - outbound messaging session service."""

__version__ = "1.0.0"
