"""Newsdesk: issue-based newsletter content pipeline workers."""

__version__ = "1.0.0"
