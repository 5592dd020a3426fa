"""
Shared client instances — Redis.

redis.from_url() does not connect until the first command, so importing this
module is always safe (even when Redis is absent during tests).
"""
import redis

from leadcrm.config import REDIS_URL

# ── Redis ─────────────────────────────────────────────────────────────────────
redis_client = redis.from_url(REDIS_URL, decode_responses=True)
