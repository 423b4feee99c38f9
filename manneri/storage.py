"""検出器の状態の永続化（ローカルJSONまたはGCS）

保存形式は {version, timestamp, data} のエンベロープ。
バージョンが一致しないデータは読み込み時に破棄する。
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .models import STORAGE_VERSION, StorageData, now_ms

logger = logging.getLogger(__name__)

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
GCS_BUCKET = os.getenv("GCS_BUCKET")
GCS_PREFIX = os.getenv("GCS_PREFIX", "")

DATA_BASE_DIR = os.getenv("DATA_DIR", "data")

DEFAULT_STORAGE_KEY = "manneri_data"


class PersistenceProvider(ABC):
    """永続化プロバイダのインターフェース"""

    @abstractmethod
    def save(self, data: StorageData) -> bool:
        ...

    @abstractmethod
    def load(self) -> Optional[StorageData]:
        ...

    @abstractmethod
    def clear(self) -> bool:
        ...

    def cleanup(self, max_age_ms: int) -> int:
        """max_age_msより古いデータを削除し、削除件数を返す"""
        return 0

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def get_storage_info(self) -> Dict[str, Any]:
        ...


def wrap_envelope(data: StorageData, version: str = STORAGE_VERSION) -> str:
    envelope = {
        "version": version,
        "timestamp": now_ms(),
        "data": data.model_dump(mode="json"),
    }
    return json.dumps(envelope, ensure_ascii=False, indent=2)


def prune_storage_data(data: StorageData, max_age_ms: int, now: Optional[int] = None):
    """
    古いパターンと介入記録を取り除く

    Returns:
        (削除後のデータ, 削除件数)
    """
    now = now_ms() if now is None else now
    cutoff = now - max_age_ms

    patterns = [p for p in data.patterns if p.last_seen > cutoff]
    interventions = [t for t in data.interventions if t > cutoff]
    removed = (len(data.patterns) - len(patterns)) + (len(data.interventions) - len(interventions))

    cleaned = data.model_copy(update={
        "patterns": patterns,
        "interventions": interventions,
        "last_cleanup": now,
    })
    return cleaned, removed


class JSONBlobProvider(PersistenceProvider):
    """1つのJSONブロブにエンベロープを読み書きするプロバイダの共通処理"""

    def __init__(self, storage_key: str = DEFAULT_STORAGE_KEY, version: str = STORAGE_VERSION):
        self.storage_key = storage_key
        self.version = version

    @property
    @abstractmethod
    def location(self) -> str:
        ...

    @abstractmethod
    def _read(self) -> Optional[str]:
        ...

    @abstractmethod
    def _write(self, text: str):
        ...

    @abstractmethod
    def _delete(self) -> bool:
        ...

    def save(self, data: StorageData) -> bool:
        if not self.is_available():
            logger.warning(f"{type(self).__name__}: storage not available, skip save")
            return False
        self._write(wrap_envelope(data, self.version))
        logger.debug(f"Saved manneri data to {self.location}")
        return True

    def load(self) -> Optional[StorageData]:
        if not self.is_available():
            logger.warning(f"{type(self).__name__}: storage not available, skip load")
            return None

        text = self._read()
        if text is None:
            return None

        try:
            envelope = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupted manneri data at {self.location}: {e}")
            return None

        if not isinstance(envelope, dict) or envelope.get("version") != self.version:
            logger.warning(
                f"Stored data version mismatch at {self.location} "
                f"(expected {self.version}), discarding"
            )
            self._delete()
            return None

        try:
            return StorageData.model_validate(envelope.get("data", {}))
        except ValidationError as e:
            logger.warning(f"Invalid manneri data at {self.location}: {e}")
            return None

    def clear(self) -> bool:
        if not self.is_available():
            logger.warning(f"{type(self).__name__}: storage not available, skip clear")
            return False
        self._delete()
        return True

    def cleanup(self, max_age_ms: int) -> int:
        if not self.is_available():
            logger.warning(f"{type(self).__name__}: storage not available, skip cleanup")
            return 0

        data = self.load()
        if data is None:
            return 0

        cleaned, removed = prune_storage_data(data, max_age_ms)
        if removed > 0:
            self._write(wrap_envelope(cleaned, self.version))
            logger.info(f"Removed {removed} old items from {self.location}")
        return removed

    def get_storage_info(self) -> Dict[str, Any]:
        available = self.is_available()
        return {
            "key": self.storage_key,
            "version": self.version,
            "location": self.location,
            "available": available,
            "has_data": available and self._read() is not None,
        }


# -------- Local backend --------
class LocalFilePersistenceProvider(JSONBlobProvider):
    def __init__(
        self,
        storage_key: str = DEFAULT_STORAGE_KEY,
        base_dir: Optional[str] = None,
        version: str = STORAGE_VERSION
    ):
        super().__init__(storage_key, version)
        self.base_dir = base_dir or DATA_BASE_DIR

    @property
    def location(self) -> str:
        return os.path.join(self.base_dir, f"{self.storage_key}.json")

    def _ensure_dir(self, path: str):
        Path(path).mkdir(parents=True, exist_ok=True)

    def is_available(self) -> bool:
        try:
            self._ensure_dir(self.base_dir)
        except OSError as e:
            logger.warning(f"Data directory {self.base_dir} is not usable: {e}")
            return False
        return os.access(self.base_dir, os.W_OK)

    def _read(self) -> Optional[str]:
        if not os.path.exists(self.location):
            return None
        with open(self.location, 'r', encoding='utf-8') as f:
            return f.read()

    def _write(self, text: str):
        self._ensure_dir(self.base_dir)
        with open(self.location, 'w', encoding='utf-8') as f:
            f.write(text)

    def _delete(self) -> bool:
        if os.path.exists(self.location):
            os.remove(self.location)
            return True
        return False


# -------- GCS backend --------
class GCSPersistenceProvider(JSONBlobProvider):
    def __init__(
        self,
        storage_key: str = DEFAULT_STORAGE_KEY,
        bucket: Optional[str] = None,
        prefix: Optional[str] = None,
        version: str = STORAGE_VERSION
    ):
        super().__init__(storage_key, version)
        self.bucket_name = bucket or GCS_BUCKET
        self.prefix = (GCS_PREFIX if prefix is None else prefix).rstrip('/')
        self.client = None
        self.bucket = None

        if not self.bucket_name:
            logger.warning("GCS_BUCKET is not set, GCS persistence disabled")
            return
        try:
            from google.cloud import storage  # lazy import
        except ImportError:
            logger.warning("google-cloud-storage is not installed, GCS persistence disabled")
            return

        self.client = storage.Client()
        self.bucket = self.client.bucket(self.bucket_name)

    @property
    def location(self) -> str:
        parts = [p for p in [self.prefix, "manneri", f"{self.storage_key}.json"] if p]
        return "/".join(parts)

    def _blob(self):
        return self.bucket.blob(self.location)

    def is_available(self) -> bool:
        return self.bucket is not None

    def _read(self) -> Optional[str]:
        blob = self._blob()
        if not blob.exists():
            return None
        return blob.download_as_text()

    def _write(self, text: str):
        self._blob().upload_from_string(text, content_type="application/json")

    def _delete(self) -> bool:
        blob = self._blob()
        if blob.exists():
            blob.delete()
            return True
        return False


def get_persistence_provider(storage_key: str = DEFAULT_STORAGE_KEY) -> PersistenceProvider:
    """STORAGE_BACKEND に応じたプロバイダを作成"""
    if STORAGE_BACKEND == "gcs":
        logger.info(f"Using GCS persistence (bucket: {GCS_BUCKET})")
        return GCSPersistenceProvider(storage_key)
    logger.info(f"Using local persistence (dir: {DATA_BASE_DIR})")
    return LocalFilePersistenceProvider(storage_key)
