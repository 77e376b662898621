"""匿名用户的每日消息配额。

计数保存在可注入的 QuotaStorage 中，每天在固定整点（本地时间）重置。
只对匿名身份生效，已登录用户的额度由服务端负责。
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from chat_core.config.settings import settings
from chat_core.infrastructure.logging.logger import logger


Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


def next_reset(now: datetime, hour: int) -> datetime:
    """返回 now 之后的下一个 hour:00。"""

    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


@dataclass(frozen=True)
class UsageQuota:
    count: int
    limit: int
    reset_at: datetime


class QuotaStorage(Protocol):
    def load(self) -> Optional[UsageQuota]:
        ...

    def save(self, quota: UsageQuota) -> None:
        ...


class MemoryQuotaStorage:
    """进程内存储，进程退出即丢失。"""

    def __init__(self, initial: Optional[UsageQuota] = None):
        self.quota = initial

    def load(self) -> Optional[UsageQuota]:
        return self.quota

    def save(self, quota: UsageQuota) -> None:
        self.quota = quota


class UsageQuotaTracker:
    """匿名配额计数器。

    - can_send: 只做与上限的比较；已过重置时间时按 0 计算，但不修改状态。
    - record_send: 计数 +1；若已过重置时间，先归零并推进 reset_at。
    - stats: 返回当前视图（过期时为归零后的视图）。
    """

    def __init__(
        self,
        storage: Optional[QuotaStorage] = None,
        limit: Optional[int] = None,
        reset_hour: Optional[int] = None,
        clock: Optional[Clock] = None,
    ):
        self._storage = storage or MemoryQuotaStorage()
        self._limit = settings.anonymous_daily_limit if limit is None else limit
        self._reset_hour = settings.anonymous_reset_hour if reset_hour is None else reset_hour
        self._clock = clock or local_now
        self._quota = self._load()

    def can_send(self, authenticated: bool = False) -> bool:
        if authenticated:
            return True
        quota = self.stats()
        return quota.count < quota.limit

    def record_send(self) -> None:
        now = self._clock()
        quota = self._quota
        if now >= quota.reset_at:
            quota = UsageQuota(count=0, limit=self._limit, reset_at=next_reset(now, self._reset_hour))
            logger.info("Anonymous quota reset", extra={"extra": {"reset_at": quota.reset_at.isoformat()}})
        self._quota = replace(quota, count=quota.count + 1)
        self._save()

    def stats(self) -> UsageQuota:
        now = self._clock()
        if now >= self._quota.reset_at:
            return UsageQuota(count=0, limit=self._limit, reset_at=next_reset(now, self._reset_hour))
        return self._quota

    def remaining(self) -> int:
        quota = self.stats()
        return max(0, quota.limit - quota.count)

    def reset_time_label(self) -> str:
        return self.stats().reset_at.strftime("%H:%M")

    def _load(self) -> UsageQuota:
        stored: Optional[UsageQuota] = None
        try:
            stored = self._storage.load()
        except Exception as e:
            logger.warning("Failed to load anonymous usage", extra={"extra": {"error": str(e)}})
        if stored is None:
            return UsageQuota(count=0, limit=self._limit, reset_at=next_reset(self._clock(), self._reset_hour))
        # 上限以当前配置为准
        return replace(stored, limit=self._limit)

    def _save(self) -> None:
        try:
            self._storage.save(self._quota)
        except Exception as e:
            logger.warning("Failed to save anonymous usage", extra={"extra": {"error": str(e)}})


def exhausted_message(quota: UsageQuota) -> str:
    """配额用尽时展示给用户的 assistant 文本。"""

    return (
        f"You've reached the daily limit of {quota.limit} free messages. "
        f"Your limit resets at {quota.reset_at.strftime('%H:%M')}. "
        "Sign in to keep chatting without limits."
    )
