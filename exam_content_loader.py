"""Utilities for loading exam definitions from disk."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List

EXAM_CONTENT_DIR = Path(os.getenv("EXAM_CONTENT_DIR") or (Path(__file__).resolve().parent / "exams"))
EXAM_INDEX_NAME = "index.json"


def _safe_load_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, ValueError) as exc:
        print(f"[exam_content] failed to load '{path}': {exc}")
        return None


def _sorted_entries(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    def _sort_key(entry: Dict[str, Any]):
        try:
            order_val = int(entry.get("order"))
        except (TypeError, ValueError):
            order_val = float("inf")
        return (order_val, str(entry.get("file") or "").lower())

    return sorted([dict(e) for e in entries if isinstance(e, dict)], key=_sort_key)


def load_exam_definitions(content_dir: Path = None) -> List[Dict[str, Any]]:
    """
    Read <content_dir>/index.json and every exam file it lists.

    index.json: {"exams": [{"file": "safety-basics.json", "order": 1, "course_id": "..."}]}
    Each exam file: {"id", "title", "course_id", "duration_minutes", "status", "questions": [...]}
    Index entries fill in course_id/order when the exam file leaves them out.
    """
    base = Path(content_dir) if content_dir else EXAM_CONTENT_DIR
    index_data = _safe_load_json(base / EXAM_INDEX_NAME)
    if not isinstance(index_data, dict):
        return []

    exams: List[Dict[str, Any]] = []
    for entry in _sorted_entries(index_data.get("exams") or []):
        file_name = entry.get("file")
        if not file_name:
            continue
        data = _safe_load_json(base / str(file_name))
        if not isinstance(data, dict):
            continue
        if "course_id" not in data and entry.get("course_id") is not None:
            data["course_id"] = str(entry["course_id"])
        if "order" not in data and entry.get("order") is not None:
            data["order"] = entry["order"]
        if not data.get("id"):
            data["id"] = Path(str(file_name)).stem
        exams.append(data)
    return exams


@lru_cache(maxsize=1)
def load_default_exam_definitions() -> List[Dict[str, Any]]:
    return load_exam_definitions(EXAM_CONTENT_DIR)


__all__ = ["load_exam_definitions", "load_default_exam_definitions"]
