"""Test configuration and fixtures."""
import sys
from pathlib import Path

import pytest

# The modules live at the repository root
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def write_lines(tmp_path):
    """Write a record file and return its path as a string."""
    def _write(name, lines, trailing_newline=True):
        path = tmp_path / name
        text = "\n".join(lines)
        if lines and trailing_newline:
            text += "\n"
        path.write_text(text, encoding="utf-8")
        return str(path)
    return _write


class FakeTransport:
    """Records whispers; fails (False or raise) on the given 0-based call."""

    def __init__(self, fail_at=None, raise_error=None):
        self.sent = []
        self.fail_at = fail_at
        self.raise_error = raise_error
        self.calls = 0

    async def __call__(self, recipient, text):
        index = self.calls
        self.calls += 1
        if index == self.fail_at:
            if self.raise_error is not None:
                raise self.raise_error
            return False
        self.sent.append((recipient, text))
        return True


@pytest.fixture
def transport():
    return FakeTransport()
