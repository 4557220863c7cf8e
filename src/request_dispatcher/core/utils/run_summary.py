"""
Run-level structured summary writer.

Writes machine-readable artifacts for each dispatch run:
- var/logs/runs/{run_id}/summary.json     (final roll-up)
- var/logs/runs/{run_id}/summary.ndjson   (append-only events stream)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class RunSummaryWriter:
    """Utility to persist structured run summaries and events to disk."""

    def __init__(self, run_id: str, base_dir: str = "var/logs/runs") -> None:
        self.run_id = run_id
        self.base_dir = Path(base_dir)
        self.run_dir = self.base_dir / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.ndjson_path = self.run_dir / "summary.ndjson"
        self.summary_json_path = self.run_dir / "summary.json"

        self.append_event({"event": "run_initialized"})

    def append_event(self, event: Dict[str, Any]) -> None:
        """Append an event to the NDJSON stream with an auto timestamp and run_id."""
        safe_event = dict(event or {})
        safe_event.setdefault("run_id", self.run_id)
        safe_event.setdefault("timestamp", _utc_now())
        with self.ndjson_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(safe_event, ensure_ascii=False, default=str) + "\n")

    def write_final_summary(self, summary: Dict[str, Any]) -> Path:
        """Write the final roll-up JSON and return the file path."""
        data = dict(summary or {})
        data.setdefault("run_id", self.run_id)
        data.setdefault("written_at", _utc_now())
        with self.summary_json_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        self.append_event({
            "event": "final_summary_written",
            "path": str(self.summary_json_path),
            "totals": {
                "dispatched_count": data.get("dispatched_count"),
                "successful_calls": data.get("successful_calls"),
                "failed_calls": data.get("failed_calls"),
            },
        })
        return self.summary_json_path

    def get_run_directory(self) -> Path:
        return self.run_dir
