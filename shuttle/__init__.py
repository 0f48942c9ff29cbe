"""Shuttle — queued SFTP uploads and removals through a long-lived worker."""

__version__ = "0.1.0"
