# sandbox_vm/utils/keyed_lock.py
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """
    키(VM id, 사용자 id 등)별로 필요할 때 생성되는 asyncio.Lock 모음.

    같은 키에 대한 작업은 순서대로 실행되고, 서로 다른 키는 완전히 병렬로 진행됩니다.
    아무도 기다리지 않는 키의 잠금은 자동으로 정리됩니다.
    한 이벤트 루프 안에서만 사용해야 합니다.
    """

    def __init__(self):
        self._entries: Dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
