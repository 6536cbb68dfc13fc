# ABOUTME: Small file helpers shared by the audit log and the monitor
# ABOUTME: Line-atomic appends under an exclusive flock and tolerant JSON-lines reading

import fcntl
import json
from pathlib import Path
from typing import Any, Dict, Iterator


def append_line(path: Path, line: str) -> None:
    """
    Append one line to a file while holding an exclusive lock.

    Raises:
        OSError: If the file cannot be opened or written
    """
    with open(path, "a", encoding="utf-8") as fh:
        fcntl.flock(fh, fcntl.LOCK_EX)
        try:
            fh.write(line + "\n")
            fh.flush()
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


def read_json_lines(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield each JSON object in a JSON-lines file, skipping unparsable lines."""
    if not path.exists():
        return
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError:
                continue
            if isinstance(record, dict):
                yield record
