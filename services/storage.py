from __future__ import annotations

import logging
import mimetypes
import os
import re
from typing import Any, Optional

from sqlalchemy import event

from utils import ApiError, sanitize_filename


log = logging.getLogger("storage")

ALLOWED_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png", ".doc", ".docx"}
_STORAGE_KEY_RE = re.compile(r"[0-9a-f]{32}")


class LocalDocumentStore:
    """Blob store on local disk. Files are named `<storageKey>_<safe name>` under UPLOAD_DIR."""

    def __init__(self, upload_dir: str, *, max_bytes: int, public_base_url: str = ""):
        self.upload_dir = str(upload_dir or "./uploads")
        self.max_bytes = int(max_bytes)
        self.public_base_url = str(public_base_url or "").rstrip("/")

    def validate(self, file_bytes: bytes, filename: str) -> None:
        ext = os.path.splitext(str(filename or ""))[1].lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ApiError("BAD_REQUEST", f"Unsupported file type: {ext or 'none'}")
        size = len(file_bytes or b"")
        if size <= 0:
            raise ApiError("BAD_REQUEST", "Empty file")
        if size > self.max_bytes:
            raise ApiError("BAD_REQUEST", f"Max upload size is {self.max_bytes // (1024 * 1024)}MB", http_status=413)

    def upload(self, file_bytes: bytes, filename: str, *, mime_type: str = "", path_hint: str = "") -> dict[str, Any]:
        self.validate(file_bytes, filename)

        safe_name = sanitize_filename(filename)
        hint = sanitize_filename(path_hint) if path_hint else ""
        stored_name = f"{hint}_{safe_name}" if hint else safe_name
        storage_key = os.urandom(16).hex()

        try:
            os.makedirs(self.upload_dir, exist_ok=True)
            out_path = os.path.join(self.upload_dir, f"{storage_key}_{stored_name}")
            with open(out_path, "wb") as f:
                f.write(file_bytes)
        except OSError as e:
            log.exception("document upload failed name=%s", safe_name)
            raise ApiError("UNAVAILABLE", "Document storage unavailable") from e

        mime = str(mime_type or "").strip() or mimetypes.guess_type(safe_name)[0] or "application/octet-stream"
        return {
            "url": f"{self.public_base_url}/files/{storage_key}",
            "storageKey": storage_key,
            "filename": safe_name,
            "mimeType": mime,
            "size": len(file_bytes),
        }

    def resolve(self, storage_key: str) -> Optional[str]:
        key = str(storage_key or "").strip().lower()
        if not _STORAGE_KEY_RE.fullmatch(key):
            return None
        try:
            names = sorted(n for n in os.listdir(self.upload_dir) if n.startswith(f"{key}_"))
        except OSError:
            return None
        return os.path.join(self.upload_dir, names[0]) if names else None

    def delete(self, storage_key: str) -> bool:
        path = self.resolve(storage_key)
        if not path:
            return False
        try:
            os.remove(path)
        except OSError:
            log.exception("document delete failed key=%s", storage_key)
            return False
        return True


_UNCOMMITTED_KEY = "storage.uncommitted"


def delete_on_rollback(db, store: LocalDocumentStore, storage_key: str) -> None:
    """Tie an uploaded document to the session: a rollback of its transaction deletes the file."""
    db.info.setdefault(_UNCOMMITTED_KEY, []).append((store, storage_key))


def _keep_uploads(session) -> None:
    session.info.pop(_UNCOMMITTED_KEY, None)


def _on_soft_rollback(session, previous_transaction) -> None:
    if previous_transaction.parent is not None:
        return
    for store, storage_key in session.info.pop(_UNCOMMITTED_KEY, None) or []:
        if store.delete(storage_key):
            log.info("removed uncommitted document key=%s", storage_key)


def install_session_hooks(session_factory) -> None:
    if not event.contains(session_factory, "after_commit", _keep_uploads):
        event.listen(session_factory, "after_commit", _keep_uploads)
    if not event.contains(session_factory, "after_soft_rollback", _on_soft_rollback):
        event.listen(session_factory, "after_soft_rollback", _on_soft_rollback)
