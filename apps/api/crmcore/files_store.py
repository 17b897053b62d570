from __future__ import annotations

import tempfile
import uuid
from pathlib import Path

from crmcore.core.config import get_settings


def _base_dir() -> Path:
    configured = get_settings().file_store_dir
    base = Path(configured) if configured else Path(tempfile.gettempdir()) / "crmcore_files"
    base.mkdir(parents=True, exist_ok=True)
    return base


def _path_for(file_id: uuid.UUID) -> Path:
    return _base_dir() / f"{file_id}.bin"


def put(content: bytes) -> uuid.UUID:
    file_id = uuid.uuid4()
    _path_for(file_id).write_bytes(content)
    return file_id


def get(file_id: uuid.UUID) -> bytes:
    path = _path_for(file_id)
    if not path.exists():
        raise FileNotFoundError(f"file_id not found: {file_id}")
    return path.read_bytes()


def delete(file_id: uuid.UUID) -> None:
    _path_for(file_id).unlink(missing_ok=True)
