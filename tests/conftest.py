import pytest


class RecordingReporter:
    """Captures narration so tests can assert on it."""

    def __init__(self):
        self.messages = []
        self.tables = []

    def info(self, message):
        self.messages.append(("info", message))

    def warn(self, message):
        self.messages.append(("warn", message))

    def error(self, message):
        self.messages.append(("error", message))

    def success(self, message):
        self.messages.append(("success", message))

    def table(self, rows, columns=None):
        self.tables.append(list(rows))

    def lines(self, level=None):
        return [m for lvl, m in self.messages if level is None or lvl == level]


@pytest.fixture
def reporter() -> RecordingReporter:
    """Reporter that records every narrated line and table."""
    return RecordingReporter()
