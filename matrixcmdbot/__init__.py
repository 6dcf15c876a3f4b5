"""A Matrix chat bot library: configuration, a small client, sync and command handling."""

__version__ = "0.1.0"