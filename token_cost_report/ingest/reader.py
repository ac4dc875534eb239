"""
Usage-log discovery and line decoding.

Walks a directory snapshot for newline-delimited JSON files and decodes
each line on its own. Bad lines are the caller's to count and skip.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from token_cost_report.core.errors import FatalConfigError

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"


def find_log_files(root) -> List[Path]:
    """Enumerate candidate log files under root, recursively.

    Args:
        root: Directory to scan

    Returns:
        Sorted list of ``*.jsonl`` file paths

    Raises:
        FatalConfigError: If root is missing, not a directory or unreadable
    """
    root_path = Path(root)
    if not root_path.exists():
        raise FatalConfigError(f"Usage log directory not found: {root_path}", str(root_path))
    if not root_path.is_dir():
        raise FatalConfigError(f"Usage log path is not a directory: {root_path}", str(root_path))
    if not os.access(root_path, os.R_OK | os.X_OK):
        raise FatalConfigError(f"Usage log directory is not readable: {root_path}", str(root_path))

    files = []
    for dirpath, _dirnames, filenames in os.walk(root_path, onerror=_log_walk_error):
        for name in filenames:
            if name.endswith(LOG_SUFFIX):
                candidate = Path(dirpath) / name
                if candidate.is_file():
                    files.append(candidate)
    files.sort()
    return files


def _log_walk_error(error: OSError) -> None:
    logger.warning("Skipping unreadable directory %s: %s", error.filename, error)


def read_log_lines(path) -> Iterator[Tuple[int, str]]:
    """Yield (line_number, text) for each non-blank line, in file order.

    Undecodable bytes are replaced rather than raised so one damaged line
    cannot take the rest of the file with it. Opening or reading the file
    can still raise OSError.
    """
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line_number, line in enumerate(f, 1):
            text = line.strip()
            if text:
                yield line_number, text


def decode_line(text: str) -> Optional[Dict[str, Any]]:
    """Decode one JSON line into an object, or None if it is not one."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None
    return data
