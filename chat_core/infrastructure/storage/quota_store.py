import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional
from uuid import uuid4

from chat_core.chat.quota import UsageQuota
from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError


class JsonQuotaStorage:
    """把匿名配额保存为单个 JSON 文件。"""

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path or Path(settings.storage_root) / "anonymous_usage.json").resolve()

    def load(self) -> Optional[UsageQuota]:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return UsageQuota(
                count=int(data["count"]),
                limit=int(data["limit"]),
                reset_at=datetime.fromisoformat(data["reset_at"]),
            )
        except (OSError, ValueError, KeyError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def save(self, quota: UsageQuota) -> None:
        obj = {
            "count": quota.count,
            "limit": quota.limit,
            "reset_at": quota.reset_at.isoformat(),
        }
        tmp_path = self._path.with_name(f"{self._path.name}.{uuid4().hex}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(obj), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
