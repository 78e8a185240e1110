import logging
from datetime import datetime, timezone

import redis

from .models import GateVerdict

logger = logging.getLogger("security_gate.run")

KEY_TTL_SECONDS = 86400


class RunLogger:
    """
    Logs gate run events and state changes.

    Everything goes through the standard logging module. When a Redis client
    is supplied the events are also mirrored to Redis, so that the API and
    CI dashboards can follow a run in progress. Redis is only a mirror: a
    failed write is logged and the run carries on.
    """
    def __init__(self, run_id: str, redis_client=None, ttl: int = KEY_TTL_SECONDS):
        self.run_id = run_id
        self.redis_client = redis_client
        self.ttl = ttl

    def _key(self, suffix: str) -> str:
        return f"gate:{self.run_id}:{suffix}"

    def _mirror(self, command: str, key: str, *args):
        try:
            getattr(self.redis_client, command)(key, *args)
            self.redis_client.expire(key, self.ttl)
        except (redis.RedisError, OSError) as e:
            logger.warning("[%s] Redis mirror unavailable (%s %s): %s", self.run_id, command, key, e)

    def log(self, tag: str, message: str, level: int = logging.INFO):
        """
        Record one event line for this run.
        """
        logger.log(level, "[%s] [%s] %s", self.run_id, tag, message)
        if self.redis_client is None:
            return

        timestamp = datetime.now(timezone.utc).isoformat()
        self._mirror("rpush", self._key("logs"), f"[{timestamp}] [{tag}] {message}")

    def update_state(self, state: str):
        """
        Update the controller state (idle, collecting, ..., done).
        """
        if self.redis_client is not None:
            self._mirror("set", self._key("state"), state)
        self.log("CONTROLLER", f"State changed to: {state}")

    def save_verdict(self, verdict: GateVerdict):
        """
        Persist the final verdict as JSON.
        """
        if self.redis_client is not None:
            self._mirror("set", self._key("verdict"), verdict.model_dump_json(by_alias=True))
        self.log("POLICY", f"Verdict: {verdict.outcome.value}")
