"""Hours: Bitbucket activity sync for time tracking."""

__version__ = "0.1.0"
