import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


class FakeRedis:
    """List and sorted-set commands the queue uses, held in process memory."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.offline = False
        self.closed = False

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True

    async def lpush(self, key, value):
        if self.offline:
            raise RedisConnectionError("connection refused")
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def lmove(self, src, dst, wherefrom, whereto):
        source = self.lists.get(src, [])
        if not source:
            return None
        value = source.pop() if wherefrom == "RIGHT" else source.pop(0)
        target = self.lists.setdefault(dst, [])
        if whereto == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def blmove(self, src, dst, timeout, wherefrom, whereto):
        return await self.lmove(src, dst, wherefrom, whereto)

    async def lrem(self, key, count, value):
        if self.offline:
            raise RedisConnectionError("connection refused")
        items = self.lists.get(key, [])
        if value in items:
            items.remove(value)
            return 1
        return 0

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrangebyscore(self, key, low, high):
        members = self.zsets.get(key, {})
        ordered = sorted(members.items(), key=lambda kv: kv[1])
        return [member for member, score in ordered if low <= score <= high]

    async def zrem(self, key, member):
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
