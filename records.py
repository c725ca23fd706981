import os
import tempfile
from dataclasses import dataclass

CONSUMED_MARKER = "#"


class FileUnavailable(Exception):
    def __init__(self, path: str, not_found: bool, errno: int = None):
        self.path = path
        self.not_found = not_found
        self.errno = errno
        if not_found:
            msg = f'Record file "{path}" does not appear to exist'
        else:
            msg = f'Failed to read record file "{path}" (errno={errno})'
        super().__init__(msg)


@dataclass(eq=False)
class MessageRecord:
    value: str
    consumed: bool = False
    line_number: int = 0  # 1-based line in the source file


# -----------------------------
# Atomic write (temp file + rename)
# -----------------------------
def _atomic_write_text_sync(path: str, text: str):
    dir_name = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(dir=dir_name, prefix="._tmp_", suffix=".txt")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def parse_records(text: str, marker: str = CONSUMED_MARKER) -> list:
    records = []
    for i, line in enumerate(text.splitlines(), start=1):
        consumed = line.startswith(marker)
        value = (line[len(marker):] if consumed else line).strip()
        # A plain " #abc" line keeps its raw text so it never reads back as consumed
        if not consumed and value.startswith(marker):
            value = line.rstrip()
        # Blank lines (or a bare marker) never become records
        if not value:
            continue
        records.append(MessageRecord(value=value, consumed=consumed, line_number=i))
    return records


class RecordStore:
    """
    One line-oriented record file. Consumed records keep their line, prefixed
    with the marker, so the file doubles as an audit trail of what was sent.
    """

    def __init__(self, path: str, marker: str = CONSUMED_MARKER):
        self.path = path
        self.marker = marker
        self.records = []
        self._trailing_newline = True

    def load(self) -> list:
        try:
            with open(self.path, "r", encoding="utf-8", newline="") as f:
                text = f.read()
        except FileNotFoundError as e:
            raise FileUnavailable(self.path, not_found=True, errno=e.errno) from e
        except OSError as e:
            raise FileUnavailable(self.path, not_found=False, errno=e.errno) from e

        self.records = parse_records(text, self.marker)
        self._trailing_newline = text.endswith(("\n", "\r"))
        return list(self.records)

    def unconsumed(self) -> list:
        return [r for r in self.records if not r.consumed]

    def consumed_count(self) -> int:
        return sum(1 for r in self.records if r.consumed)

    def serialize(self) -> str:
        lines = [(self.marker + r.value) if r.consumed else r.value for r in self.records]
        text = "\n".join(lines)
        if lines and self._trailing_newline:
            text += "\n"
        return text

    def mark_consumed(self, record: MessageRecord):
        if not any(r is record for r in self.records):
            raise ValueError(f"Record {record.value!r} does not belong to {self.path}")
        record.consumed = True
        # Persisted immediately, never batched
        _atomic_write_text_sync(self.path, self.serialize())
