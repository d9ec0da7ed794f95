"""
cache.py

On-disk key/value cache holding in-progress transcript review working sets,
so an interrupted review can be picked up again by reopening the transcript.
One JSON file per key; the last writer wins.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from portal.config import config

logger = logging.getLogger(__name__)


def cache_key(student_id: str, note_id: str) -> str:
    return f"transcript_tasks_{student_id}_{note_id}"


class ProposalCache:
    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = Path(cache_dir or config["cache_dir"])

    def _path(self, student_id: str, note_id: str) -> Path:
        # Keys become filenames; anything outside a safe set is replaced.
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", cache_key(student_id, note_id))
        return self.cache_dir / f"{safe}.json"

    def exists(self, student_id: str, note_id: str) -> bool:
        return self._path(student_id, note_id).exists()

    def load(self, student_id: str, note_id: str) -> Optional[List[Dict[str, Any]]]:
        path = self._path(student_id, note_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("[Cache] unreadable entry %s: %s", path.name, exc)
            return None
        if not isinstance(data, list):
            logger.warning("[Cache] entry %s is not a list, ignoring", path.name)
            return None
        return data

    def save(self, student_id: str, note_id: str, items: List[Dict[str, Any]]) -> None:
        path = self._path(student_id, note_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(items, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, path)
        logger.debug("[Cache] saved %d proposals to %s", len(items), path.name)

    def clear(self, student_id: str, note_id: str) -> None:
        path = self._path(student_id, note_id)
        try:
            path.unlink()
            logger.debug("[Cache] cleared %s", path.name)
        except FileNotFoundError:
            pass
