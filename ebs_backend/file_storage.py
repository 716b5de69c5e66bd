import json
import os
from typing import Any, Dict, List

from ebs_backend.errors import RecordNotFoundError, ValidationError
from ebs_backend.storage import ObjectStore


class FileObjectStore(ObjectStore):
    """
    Local filesystem-backed record store.

    Records are stored as JSON documents directly under base_path:
        <base_path>/<key>

    Writes go to <key>.tmp first and are renamed into place, so a record is
    always either the previous or the new version.
    """

    def __init__(self, base_path: str):
        """
        Args:
            base_path: Directory holding the records. Created on first save.
        """
        self.base_path = base_path

    def _path(self, key: str) -> str:
        if not key or os.sep in key:
            raise ValidationError(f"Invalid record key {key!r}", error_code="INVALID_KEY")
        return os.path.join(self.base_path, key)

    def exists(self, key: str) -> bool:
        return os.path.exists(self._path(key))

    def load(self, key: str) -> Dict[str, Any]:
        path = self._path(key)
        if not os.path.exists(path):
            raise RecordNotFoundError(key)

        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def save(self, key: str, record: Dict[str, Any]) -> None:
        path = self._path(key)
        os.makedirs(self.base_path, exist_ok=True)

        temp_path = f"{path}.tmp"

        # Write atomically
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass

    def list_ids(self, prefix: str, suffix: str) -> List[str]:
        if not os.path.isdir(self.base_path):
            return []

        ids = []
        for name in os.listdir(self.base_path):
            if not (name.startswith(prefix) and name.endswith(suffix)):
                continue
            record_id = name[len(prefix):len(name) - len(suffix)]
            if record_id:
                ids.append(record_id)
        return sorted(ids)
