# selfservice/utils/cache.py
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl: Optional[float]

    def is_expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.stored_at >= self.ttl


class TimedCache:
    """
    세션 토큰, 데이터스토어 ID처럼 만료 시간이 있는 값을 보관하는 캐시입니다.

    전역 변수 대신 이 객체를 명시적으로 주입받아 사용합니다.
    get_or_refresh는 값이 없거나 만료되었을 때만 loader를 호출하며,
    같은 키에 대한 동시 갱신은 키별 잠금으로 직렬화되고, 다른 키의 갱신은 서로 기다리지 않습니다.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._key_locks: Dict[str, threading.RLock] = {}

    def _entry_value(self, key: str) -> Tuple[bool, Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return False, None
            return True, entry.value

    def _key_lock(self, key: str) -> threading.RLock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.RLock())

    def get(self, key: str) -> Optional[Any]:
        return self._entry_value(key)[1]

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock(), ttl=ttl)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def get_or_refresh(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        found, value = self._entry_value(key)
        if found:
            return value
        # loader는 네트워크 요청일 수 있으므로 공용 잠금이 아닌 키별 잠금 안에서 호출
        with self._key_lock(key):
            found, value = self._entry_value(key)
            if found:
                return value
            value = loader()
            self.set(key, value, ttl)
            return value
