"""
Filesystem object store for results, cached payloads and artifacts
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from .. import config


def result_key(job_id: str) -> str:
    return f"results/{job_id}.json"


def cache_key(fingerprint: str) -> str:
    return f"cache/{fingerprint}.json"


def content_key(job_id: str) -> str:
    return f"content/{job_id}.txt"


def screenshot_key(job_id: str, ext: str = "png") -> str:
    return f"screenshots/{job_id}.{ext}"


class ObjectStore:
    def __init__(self, root):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise ValueError(f"invalid object key: {key!r}")
        return self.root / key

    def put_bytes(self, key: str, data: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # write-then-rename so readers never see a partial object
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return key

    def put_text(self, key: str, text: str) -> str:
        return self.put_bytes(key, text.encode("utf-8"))

    def put_json(self, key: str, value: Any) -> str:
        return self.put_bytes(key, json.dumps(value, default=str).encode("utf-8"))

    def get_bytes(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get_bytes(key)
        return None if raw is None else json.loads(raw)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if path.exists():
            path.unlink()
            return True
        return False


def get_store() -> ObjectStore:
    return ObjectStore(config.STORAGE_DIR)
