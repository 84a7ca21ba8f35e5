"""Utilities for saving export snapshots handed to document renderers."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel


def save_snapshot_to_file(file_path: Path, snapshot: BaseModel) -> Path:
    """Persist a snapshot to disk as indented JSON and return the resolved path."""
    file_path = Path(file_path).resolve()
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(snapshot.model_dump_json(indent=2) + "\n", encoding="utf-8")
    return file_path


def snapshot_file_name(kind: str, identifier: str) -> str:
    """Stable download name, e.g. ``attempt-<id>.json``."""
    if not identifier:
        raise ValueError("Snapshot identifier cannot be empty.")
    return f"{kind}-{identifier}.json"
