"""
Run log: structured JSON-Lines records of backup and restore runs.
Never contains key material.
"""
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import get_config_dir

REDACTED_KEYS = ("password", "token", "secret", "key", "identity")


class RunLog:
    """Appends events to run.jsonl in the config directory."""

    def __init__(self, log_file: Optional[Path] = None):
        self.log_file = log_file or get_config_dir() / "run.jsonl"

    def log(self, event_type: str, **kwargs: Any) -> None:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "details": {
                k: "*****" if k in REDACTED_KEYS else v for k, v in kwargs.items()
            },
        }
        line = json.dumps(entry, default=str) + "\n"
        try:
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            sys.stderr.write(f"[AppBackup] Failed to write run log: {e}\n")
            try:
                fallback = self.log_file.with_name("run_fallback.log")
                with fallback.open("a", encoding="utf-8") as f:
                    f.write(line)
            except OSError:
                pass

def get_run_log(last_n: int = 50, log_file: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Retrieve the last N events from the run log, skipping damaged lines."""
    log_file = log_file or get_config_dir() / "run.jsonl"
    if not log_file.exists():
        return []
    with log_file.open("r", encoding="utf-8") as f:
        lines = f.readlines()
    parsed = []
    for line in lines[-last_n:] if last_n > 0 else []:
        if not line.strip():
            continue
        try:
            parsed.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return parsed
