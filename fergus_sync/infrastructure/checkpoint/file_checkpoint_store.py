"""
Checkpoint en archivo JSON: {"lastSync": "<ISO 8601>"}.

La escritura es atomica (archivo temporal + os.replace) para que un corte a
mitad de escritura no deje el checkpoint corrupto.
"""
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from loguru import logger

from fergus_sync.domain.repositories.collaborators import ICheckpointStore
from fergus_sync.shared.utils.datetime_utils import parse_timestamp, to_iso_z


class FileCheckpointStore(ICheckpointStore):
    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)

    @classmethod
    def for_entity(cls, directory: Union[str, Path], entity: str) -> "FileCheckpointStore":
        """Un archivo por entidad: <dir>/last_sync_<entity>.json"""
        return cls(Path(directory) / f"last_sync_{entity}.json")

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> Optional[datetime]:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Checkpoint ilegible en {self._path}: {e}. Se trata como inexistente")
            return None

        value = parse_timestamp(data.get("lastSync")) if isinstance(data, dict) else None
        if value is None:
            logger.warning(f"Checkpoint sin 'lastSync' valido en {self._path}")
        return value

    def set(self, timestamp: datetime) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps({"lastSync": to_iso_z(timestamp)}), encoding="utf-8")
        os.replace(tmp_path, self._path)
