"""File storage for uploaded batches and rejected-rows reports."""
import logging
import os
import shutil
from pathlib import Path
from typing import BinaryIO, Optional, TextIO

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from leadmarket.config import get_settings

logger = logging.getLogger(__name__)

REJECTED_ROWS_SALT = "rejected-rows"


class StorageError(OSError):
    """Storage transport failed (missing object, unreadable file, full disk)."""

    pass


class LocalStorage:
    """Object storage backed by a local directory; keys are relative paths."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or get_settings().storage_root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Storage key escapes root: {key}")
        return path

    def exists(self, key: str) -> bool:
        try:
            return self._resolve(key).is_file()
        except StorageError:
            return False

    def size(self, key: str) -> int:
        return self._resolve(key).stat().st_size

    def open_text(self, key: str) -> TextIO:
        """Open a stored file for streaming text reads."""
        path = self._resolve(key)
        try:
            return open(path, "r", encoding="utf-8-sig", newline="")
        except OSError as e:
            raise StorageError(f"Cannot read {key}: {e}") from e

    def save_stream(self, key: str, source: BinaryIO) -> int:
        """Copy a binary stream into storage; returns bytes written."""
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as buffer:
            shutil.copyfileobj(source, buffer, length=8192)
        return path.stat().st_size

    def write_text(self, key: str, content: str) -> None:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.replace(tmp_path, path)

    def read_text(self, key: str) -> str:
        with self.open_text(key) as f:
            return f.read()


def get_storage() -> LocalStorage:
    """Dependency for the configured storage backend."""
    return LocalStorage()


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().signing_secret, salt=REJECTED_ROWS_SALT)


def rejected_rows_key(batch_id: str) -> str:
    return f"rejections/{batch_id}.csv"


def sign_rejected_rows_url(batch_id: str) -> str:
    """Signed, expiring download link for a batch's rejected-rows CSV."""
    token = _serializer().dumps({"batch_id": batch_id})
    return f"/uploads/{batch_id}/rejected-rows?token={token}"


def verify_rejected_rows_token(batch_id: str, token: str) -> bool:
    """True when the token was issued for this batch and has not expired."""
    try:
        data = _serializer().loads(token, max_age=get_settings().signed_url_ttl_seconds)
    except SignatureExpired:
        logger.info(f"Expired rejected-rows link for batch {batch_id}")
        return False
    except BadSignature:
        return False
    return data.get("batch_id") == batch_id
