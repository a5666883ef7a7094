import logging
from typing import Iterator, List, Optional

import redis

from status_errors import DataError, TransportError
from status_models import Application

KEY_PREFIX = "application:status:"


class RedisApplicationRegistry:
    """Applications to poll, stored as JSON strings under ``<prefix><application_id>``."""

    def __init__(self, client: redis.Redis, *, key_prefix: str = KEY_PREFIX) -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = KEY_PREFIX) -> "RedisApplicationRegistry":
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=10, socket_connect_timeout=10)
        return cls(client, key_prefix=key_prefix)

    def key_for(self, application_id: str) -> str:
        return f"{self.key_prefix}{application_id}"

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            raise TransportError(f"Redis unavailable: {exc}") from exc

    # Read side used by the scheduler.
    def scan_all(self, prefix: Optional[str] = None) -> Iterator[str]:
        pattern = f"{prefix if prefix is not None else self.key_prefix}*"
        try:
            for key in self.client.scan_iter(match=pattern):
                yield key.decode("utf-8") if isinstance(key, bytes) else key
        except redis.RedisError as exc:
            raise TransportError(f"Registry scan failed: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            raise TransportError(f"Registry read failed for {key}: {exc}") from exc
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return raw

    # Write side used by the HTTP surface.
    def create(self, app: Application) -> None:
        try:
            self.client.set(self.key_for(app.application_id), app.to_json())
        except redis.RedisError as exc:
            raise TransportError(f"Registry write failed for {app.application_id}: {exc}") from exc
        logging.info("Registered application %s at %s", app.application_id, app.location)

    def fetch(self, application_id: str) -> Optional[str]:
        return self.get(self.key_for(application_id))

    def delete(self, application_id: str) -> bool:
        try:
            removed = self.client.delete(self.key_for(application_id))
        except redis.RedisError as exc:
            raise TransportError(f"Registry delete failed for {application_id}: {exc}") from exc
        if removed:
            logging.info("Removed application %s from the registry", application_id)
        return bool(removed)

    def list_all(self) -> List[Application]:
        applications = []
        for key in self.scan_all():
            raw = self.get(key)
            if raw is None:
                continue
            try:
                applications.append(Application.from_record(raw))
            except DataError as exc:
                logging.warning("Ignoring malformed registry record %s: %s", key, exc)
        return applications
