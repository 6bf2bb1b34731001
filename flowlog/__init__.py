"""flowlog: record the screen in sessions and turn them into an activity log."""

__version__ = "0.1.0"
