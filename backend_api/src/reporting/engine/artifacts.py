"""
File-storage boundary for report artifacts.

Rendering (PDF etc.) belongs to the storage provider. The compiler only hands over
a finished report summary after commit and receives a URL to attach.
"""

import json
from pathlib import Path
from typing import Any, Dict, Protocol


class ArtifactStore(Protocol):
    def store(self, report_id: int, summary: Dict[str, Any]) -> str:
        """Persist the artifact for a complete report and return its URL."""
        ...


class LocalArtifactStore:
    """Writes each report summary as JSON under a local directory."""

    def __init__(self, base_dir):
        self.base_dir = Path(base_dir)

    def store(self, report_id: int, summary: Dict[str, Any]) -> str:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self.base_dir / f"report-{report_id}.json"
        path.write_text(json.dumps(summary, indent=2, sort_keys=True, default=str), encoding="utf-8")
        return path.resolve().as_uri()
