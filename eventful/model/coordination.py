# coordination.py
from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_redeem(token: str) -> str: return f"redeem:{token}"
def k_redeemed(token: str) -> str: return f"redeemed:{token}"
def k_webhook(evt: str) -> str: return f"webhook:{evt}"


# GET + DEL in one server-side step: only one caller ever sees the value.
# The winner leaves a `redeemed:` tombstone that outlives the token by
# ARGV[1] seconds, so the token can never be issued again.
CONSUME_SCRIPT = """
local data = redis.call('GET', KEYS[1])
if not data then return nil end
local pttl = redis.call('PTTL', KEYS[1])
redis.call('DEL', KEYS[1])
if pttl > 0 then
  redis.call('SET', KEYS[2], '1', 'PX', pttl + tonumber(ARGV[1]) * 1000)
else
  redis.call('SET', KEYS[2], '1')
end
return data
"""

# SET unless the token was already consumed
ISSUE_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then return 0 end
redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[2]))
return 1
"""


class CoordinationStore:
    """Ephemeral key-value state with TTLs (redemption tokens, dedup
    markers). Values are strings; the client must use
    decode_responses=True."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r
        self._consume = r.register_script(CONSUME_SCRIPT)
        self._issue = r.register_script(ISSUE_SCRIPT)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.r.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.r.get(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.r.exists(key))

    async def delete(self, key: str) -> None:
        await self.r.delete(key)

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        # NX gate: True only for the caller that created the key
        ok = await self.r.set(key, "1", nx=True, ex=max(1, int(ttl_seconds)))
        return bool(ok)

    # ---- redemption tokens
    async def issue_token(self, token: str, value: str,
                          ttl_seconds: int) -> bool:
        """False if the token was consumed before; nothing is written then."""
        ok = await self._issue(
            keys=[k_redeem(token), k_redeemed(token)],
            args=[value, max(1, int(ttl_seconds))],
        )
        return bool(int(ok))

    async def consume_token(self, token: str,
                            hold_seconds: int) -> Optional[str]:
        return await self._consume(
            keys=[k_redeem(token), k_redeemed(token)],
            args=[max(0, int(hold_seconds))],
        )

    async def is_consumed(self, token: str) -> bool:
        return await self.exists(k_redeemed(token))
