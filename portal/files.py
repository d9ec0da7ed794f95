"""
files.py

Object storage for note attachments and uploaded files, plus text
extraction for transcript documents (PDF/DOCX/plain text).
"""

import logging
import random
import re
import string
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pdfplumber
from docx import Document

from portal.config import config
from portal.errors import RemoteStoreError, ValidationError

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}


def sanitize_filename(name: str) -> str:
    base = Path(name or "").name
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return cleaned or "file"


def object_key(student_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    """`{studentId}/{timestamp}_{randomId}_{sanitizedFilename}`"""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    random_id = "".join(random.choices(_ID_ALPHABET, k=11))
    return f"{student_id}/{stamp}_{random_id}_{sanitize_filename(filename)}"


def guess_mime_type(file_path: str) -> str:
    suffix = Path(file_path).suffix.lower()
    if suffix == ".pdf":
        return "application/pdf"
    if suffix == ".docx":
        return "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    if suffix in IMAGE_SUFFIXES:
        return f"image/{suffix.lstrip('.').replace('jpg', 'jpeg')}"
    if suffix in {".txt", ".md", ".csv", ".tsv", ".vtt", ".srt"}:
        return "text/plain"
    return "application/octet-stream"


class ObjectStore:
    """A single bucket kept on the local filesystem, served under `public_base_url`."""

    def __init__(self, root: Optional[str] = None, bucket: Optional[str] = None,
                 public_base_url: Optional[str] = None):
        self.root = Path(root or config["storage_dir"])
        self.bucket = bucket or config["storage_bucket"]
        self.public_base_url = (public_base_url or config["public_base_url"]).rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / self.bucket / key).resolve()
        bucket_root = (self.root / self.bucket).resolve()
        if bucket_root not in path.parents:
            raise ValidationError(f"Invalid object key: {key}")
        return path

    def upload(self, student_id: str, filename: str, data: bytes) -> Tuple[str, str]:
        key = object_key(student_id, filename)
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise RemoteStoreError(f"Upload failed for {filename}: {exc}") from exc
        logger.info("[Storage] uploaded %s (%d bytes)", key, len(data))
        return key, self.public_url(key)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{self.bucket}/{key}"

    def key_from_url(self, url: str) -> Optional[str]:
        prefix = f"{self.public_base_url}/{self.bucket}/"
        if not url or not url.startswith(prefix):
            return None
        return url[len(prefix):]

    def local_path(self, key: str) -> Path:
        return self._path(key)

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            logger.warning("[Storage] %s already gone", key)
        except OSError as exc:
            raise RemoteStoreError(f"Failed to remove {key}: {exc}") from exc

    def remove_urls(self, urls: List[str]) -> int:
        removed = 0
        for url in urls:
            key = self.key_from_url(url)
            if key is None:
                logger.warning("[Storage] not a stored object, skipping: %s", url)
                continue
            self.remove(key)
            removed += 1
        return removed


def attach_file(store, objects: ObjectStore, student_id: str, filename: str, data: bytes,
                description: Optional[str] = None, phase_id: Optional[str] = None,
                task_id: Optional[str] = None, counsellor_id: Optional[str] = None) -> Dict[str, Any]:
    """Upload a file and record it in the files table."""
    if not data:
        raise ValidationError("File is empty")
    key, url = objects.upload(student_id, filename, data)
    try:
        return store.create_file(
            student_id=student_id,
            file_name=filename,
            file_url=url,
            file_type=guess_mime_type(filename),
            file_size=len(data),
            description=description,
            phase_id=phase_id,
            task_id=task_id,
            counsellor_id=counsellor_id,
        )
    except Exception:
        objects.remove(key)
        raise


def delete_file(store, objects: ObjectStore, file_id: str) -> None:
    row = store.get_file(file_id)
    if row is None:
        return
    objects.remove_urls([row["file_url"]])
    store.delete_file(file_id)


def attach_note_file(store, objects: ObjectStore, student_id: str, filename: str, data: bytes,
                     title: Optional[str] = None, counsellor_id: Optional[str] = None) -> Dict[str, Any]:
    """Upload an attachment as its own note of type 'image' or 'file'."""
    if not data:
        raise ValidationError("File is empty")
    key, url = objects.upload(student_id, filename, data)
    note_type = "image" if Path(filename).suffix.lower() in IMAGE_SUFFIXES else "file"
    try:
        return store.create_note(
            student_id=student_id,
            type=note_type,
            title=title or filename,
            file_url=url,
            updated_by=counsellor_id,
        )
    except Exception:
        objects.remove(key)
        raise


# -----------------------------
# Text extraction
# -----------------------------

def clean_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\u00a0", " ")
    # De-hyphenate line breaks: "exam-\nple" -> "example"
    text = re.sub(r"(\w)-\n(\w)", r"\1\2", text)
    # Remove page number-only lines
    text = re.sub(r"^\s*(Page\s+)?\d+(\s*/\s*\d+)?\s*$", "", text, flags=re.MULTILINE)
    # Collapse excessive blank lines
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _extract_pdf_text(pdf_path: Path) -> str:
    pages_text: List[str] = []
    with pdfplumber.open(str(pdf_path)) as pdf:
        for page in pdf.pages:
            pages_text.append(page.extract_text() or "")
    return "\n\n".join(pages_text).strip()


def _extract_docx_text(docx_path: Path) -> str:
    doc = Document(str(docx_path))
    return "\n".join(para.text for para in doc.paragraphs if para.text).strip()


def extract_text(file_path: str) -> str:
    """Read a transcript document and return its cleaned text."""
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    mime_type = guess_mime_type(str(path))

    if mime_type == "application/pdf" or "wordprocessingml" in mime_type:
        reader = _extract_pdf_text if mime_type == "application/pdf" else _extract_docx_text
        try:
            raw = reader(path)
        except Exception as exc:
            logger.error("[Files] could not read %s: %s", path.name, exc)
            raise ValidationError(f"Could not read {path.name}: the file looks damaged or is not a valid document") from exc
    elif mime_type.startswith("image/"):
        raise ValidationError("Images cannot be used as transcripts")
    else:
        try:
            raw = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError(f"Invalid UTF-8 in {path.name}") from exc
    return clean_text(raw)
