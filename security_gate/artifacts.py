"""
Artifact stores: "write blob, get reference" for the rendered reports.
"""
import logging
import re
from pathlib import Path
from typing import Protocol, Union

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def check_name(value: str, what: str) -> str:
    # Run ids and artifact names end up in file paths and Redis keys
    if not _SAFE_NAME.match(value or ""):
        raise ValueError(f"Invalid {what} {value!r}: use letters, digits, '.', '_' or '-'")
    return value


class ArtifactStore(Protocol):
    def put(self, run_id: str, name: str, data: bytes) -> str:
        ...


class FileArtifactStore:
    """Writes artifacts to <root>/<run_id>/<name>."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def put(self, run_id: str, name: str, data: bytes) -> str:
        directory = self.root / check_name(run_id, "run id")
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / check_name(name, "artifact name")
        path.write_bytes(data)
        logger.info("Wrote artifact %s (%d bytes)", path, len(data))
        return str(path)


class RedisArtifactStore:
    """Stores artifacts under gate:<run_id>:artifact:<name> with an expiry."""

    def __init__(self, redis_client, ttl: int = 86400):
        self.redis_client = redis_client
        self.ttl = ttl

    def put(self, run_id: str, name: str, data: bytes) -> str:
        key = f"gate:{check_name(run_id, 'run id')}:artifact:{check_name(name, 'artifact name')}"
        self.redis_client.set(key, data)
        self.redis_client.expire(key, self.ttl)
        logger.info("Stored artifact %s (%d bytes)", key, len(data))
        return key
