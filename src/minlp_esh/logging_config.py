from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s | %(name)s | %(message)s"


class _StdoutTee:
    def __init__(self, a: TextIO, b: TextIO):
        self.a = a
        self.b = b

    def write(self, s: str) -> int:
        self.a.write(s)
        self.b.write(s)
        self.flush()
        return len(s)

    def flush(self) -> None:
        self.a.flush()
        self.b.flush()


def setup_logging(level: str = "INFO", log_dir: str | Path = "Report") -> Path | None:
    """Configure the root logger.

    At DEBUG level the log and anything printed to stdout are also written to
    a timestamped file under `log_dir`; its path is returned.
    """
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format=LOG_FORMAT)

    if str(level).upper() != "DEBUG":
        return None
    try:
        out_dir = Path(log_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = out_dir / f"minlp_esh_debug_{ts}.txt"
        f = open(log_path, mode="w", encoding="utf-8", buffering=1)
    except OSError as exc:
        log.warning("could not open debug log file in %s: %s", log_dir, exc)
        return None
    fh = logging.StreamHandler(f)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(fh)
    # Tee stdout (print) to the same file, while keeping console output
    sys.stdout = _StdoutTee(sys.stdout, f)
    print(f"[LOG] Writing DEBUG logs and prints to {log_path}")
    return log_path


__all__ = ["setup_logging", "LOG_FORMAT"]
