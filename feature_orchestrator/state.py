"""State management: features.json, issues.json and progress.txt."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import StateCorruptionError
from .models import Feature, Issue, ProgressEntry


class StateManager:
    """Persists feature records, the issue table and the progress log with atomic writes."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.features_path = state_dir / "features.json"
        self.issues_path = state_dir / "issues.json"
        self.progress_path = state_dir / "progress.txt"

    # --- Features ---

    def list_features(self) -> list[Feature]:
        raw = self._read_json(self.features_path, default=[])
        try:
            return [Feature.model_validate(item) for item in raw]
        except ValidationError as e:
            raise StateCorruptionError(f"Invalid feature record in {self.features_path}: {e}") from e

    def load_feature(self, name: str) -> Feature | None:
        for feature in self.list_features():
            if feature.name == name:
                return feature
        return None

    def save_feature(self, feature: Feature) -> None:
        """Insert or replace the record for ``feature.name``."""
        features = [f for f in self.list_features() if f.name != feature.name]
        features.append(feature)
        self._write_json(self.features_path, [f.model_dump(mode="json") for f in features])

    # --- Issues ---

    def load_issues(self) -> list[Issue]:
        raw = self._read_json(self.issues_path, default=[])
        try:
            return [Issue.model_validate(item) for item in raw]
        except ValidationError as e:
            raise StateCorruptionError(f"Invalid issue record in {self.issues_path}: {e}") from e

    def save_issues(self, issues: list[Issue]) -> None:
        data = [i.model_dump(mode="json") for i in sorted(issues, key=lambda i: i.number)]
        self._write_json(self.issues_path, data)

    # --- Progress log ---

    def append_progress(self, entry: ProgressEntry) -> None:
        """Append one summary block to the progress log."""
        self.progress_path.parent.mkdir(parents=True, exist_ok=True)
        target = entry.feature
        if entry.issue_number is not None:
            target += f" #{entry.issue_number}"
        with open(self.progress_path, "a") as f:
            header = (
                f"\n=== {target}: {entry.title} "
                f"-- {entry.status} -- "
                f"{entry.timestamp.strftime('%Y-%m-%d %H:%M')} ==="
            )
            f.write(f"{header}\n")
            f.write(f"{entry.summary}\n")
            if entry.commit_hash:
                f.write(f"- Commit: {entry.commit_hash}\n")
            if entry.error:
                f.write(f"- Error: {entry.error}\n")
            f.write("\n")

    # --- Files ---

    @staticmethod
    def _read_json(path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            with open(path) as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StateCorruptionError(f"Cannot parse {path}: {e}") from e

    @staticmethod
    def _write_json(path: Path, data: Any) -> None:
        """Atomically write JSON (write to tmp, then rename)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        tmp_path.replace(path)
