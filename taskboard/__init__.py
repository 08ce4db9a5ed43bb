"""TaskBoard: project, board and time-tracking API."""

__version__ = "1.0.0"
