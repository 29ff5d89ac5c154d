"""Small file helpers for state that external readers consume"""

import json
import os
import tempfile
from typing import Any, Optional


def _umask_mode() -> int:
    """Mode a plain ``open(path, "w")`` would create the file with"""
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def atomic_write_text(path: str, content: str, encoding: str = "utf-8", mode: Optional[int] = None):
    """Write ``content`` to a temp file beside ``path`` and rename it over ``path``.

    Readers only ever see the old file or the complete new one. The file gets
    ``mode``, or the umask default when ``mode`` is None.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=os.path.basename(path) + ".", suffix=".tmp", dir=directory)
    try:
        os.fchmod(fd, _umask_mode() if mode is None else mode)
        with os.fdopen(fd, "w", encoding=encoding) as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: str, data: Any, mode: Optional[int] = None):
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n", mode=mode)


def read_json(path: str):
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)
