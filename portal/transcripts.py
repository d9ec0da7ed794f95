"""
transcripts.py

Capturing meeting transcripts as notes of type 'transcript'.
"""

import logging
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from portal.errors import ValidationError
from portal.files import extract_text

logger = logging.getLogger(__name__)


def capture_transcript(store, student_id: str, title: str, body: str,
                       counsellor_id: Optional[str] = None) -> Dict[str, Any]:
    if not student_id:
        raise ValidationError("A student is required")
    if not title or not title.strip():
        raise ValidationError("Transcript title is required")
    if not body or not body.strip():
        raise ValidationError("Transcript text is required")

    note = store.create_note(
        student_id=student_id,
        type="transcript",
        title=title.strip(),
        content=body.strip(),
        updated_by=counsellor_id,
    )
    logger.info("[Transcripts] saved %s (%d characters)", note["id"], len(note["content"]))
    return note


def capture_transcript_file(store, student_id: str, filename: str, data: bytes,
                            title: Optional[str] = None,
                            counsellor_id: Optional[str] = None) -> Dict[str, Any]:
    """Capture a transcript from an uploaded PDF, DOCX or text document."""
    suffix = Path(filename).suffix or ".txt"
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / f"upload{suffix}"
        path.write_bytes(data)
        body = extract_text(str(path))
    return capture_transcript(store, student_id, title or Path(filename).stem, body, counsellor_id)


def is_processed(note: Dict[str, Any]) -> bool:
    return (note.get("title") or "").startswith("Transcript (")


def list_transcripts(store, student_id: str) -> List[Dict[str, Any]]:
    """Transcript notes, newest first, each flagged `processed` once committed."""
    return [dict(note, processed=is_processed(note)) for note in store.list_notes(student_id, type="transcript")]
