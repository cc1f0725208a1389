import json
from typing import Optional

from redis import Redis

from orderflow.core.config import settings
from orderflow.inventory.holds.port import HoldStore

# DECRBY and the delete must not interleave with a concurrent INCRBY.
_DECR_OR_DELETE = """
local v = redis.call('DECRBY', KEYS[1], ARGV[1])
if v <= 0 then redis.call('DEL', KEYS[1]) end
return v
"""


class RedisHoldStore(HoldStore):
    def __init__(self, client: Redis | None = None):
        self.r = client or Redis.from_url(settings.REDIS_URL, decode_responses=True)
        self._decr = self.r.register_script(_DECR_OR_DELETE)

    def incr(self, key, amount, ttl_seconds):
        pipe = self.r.pipeline()
        pipe.incrby(key, amount)
        pipe.expire(key, ttl_seconds)
        value, _ = pipe.execute()
        return int(value)

    def decr(self, key, amount):
        return int(self._decr(keys=[key], args=[amount]))

    def get_int(self, key):
        raw = self.r.get(key)
        return max(0, int(raw)) if raw is not None else 0

    def set_json(self, key, value, ttl_seconds):
        self.r.set(key, json.dumps(value), ex=ttl_seconds)

    def get_json(self, key) -> Optional[dict]:
        raw = self.r.get(key)
        return json.loads(raw) if raw is not None else None

    def pop_json(self, key) -> Optional[dict]:
        raw = self.r.getdel(key)
        return json.loads(raw) if raw is not None else None

    def expire(self, key, ttl_seconds):
        return bool(self.r.expire(key, ttl_seconds))
