"""Task queue kept in Redis, spoken to over a minimal RESP client."""

from __future__ import annotations

import re
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO

from splai.observability.metrics import DEFAULT_REGISTRY, Registry
from splai.state.types import QueueClaim, TaskRef, decode_task_ref, encode_task_ref

__all__ = ["RedisError", "RedisQueue", "RedisQueueConfig", "encode_resp", "read_resp"]

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DEFAULT_VISIBILITY = timedelta(seconds=15)
_INTEGER = re.compile(r"[+-]?[0-9]+")


class RedisError(Exception):
    """Redis replied with an error, or the exchange with it failed."""


@dataclass
class RedisQueueConfig:
    """Where the queue lives; zero values take defaults."""

    addr: str = ""
    password: str = ""
    db: int = 0
    key: str = ""
    timeout: float = 0.0
    dead_letter_max: int = 0


def encode_resp(*args: str) -> bytes:
    """Encode a command as a RESP array of bulk strings."""
    parts = [f"*{len(args)}\r\n".encode()]
    for arg in args:
        data = str(arg).encode(_ENCODING, _ERRORS)
        parts.append(f"${len(data)}\r\n".encode())
        parts.append(data + b"\r\n")
    return b"".join(parts)


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise RedisError(f"invalid redis integer {text!r}")
    return int(text)


def read_resp(stream: BinaryIO) -> Any:
    """Read one reply: a str, a list of str, or None for a nil reply."""
    prefix = stream.read(1)
    if not prefix:
        raise RedisError("connection closed")
    line = stream.readline()
    if not line.endswith(b"\n"):
        raise RedisError("connection closed")
    raw = line[:-1]
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    text = raw.decode(_ENCODING, _ERRORS)

    if prefix in (b"+", b":"):
        return text
    if prefix == b"-":
        raise RedisError(f"redis error: {text}")
    if prefix == b"$":
        size = _parse_int(text)
        if size == -1:
            return None
        if size < 0:
            raise RedisError(f"invalid bulk length {size}")
        data = stream.read(size + 2)
        if len(data) < size + 2:
            raise RedisError("connection closed")
        return data[:size].decode(_ENCODING, _ERRORS)
    if prefix == b"*":
        count = _parse_int(text)
        if count == -1:
            return None
        if count < 0:
            raise RedisError(f"invalid array length {count}")
        items: list[str] = []
        for _ in range(count):
            value = read_resp(stream)
            if value is None:
                items.append("")
            elif isinstance(value, str):
                items.append(value)
            else:
                raise RedisError("unexpected redis array element")
        return items
    raise RedisError(f"unsupported redis response prefix {prefix!r}")


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise RedisError("unexpected redis array response type")
    return value


def _integer(value: Any) -> int:
    if value is None:
        return 0
    if not isinstance(value, str):
        raise RedisError("unexpected redis integer response type")
    return _parse_int(value)


def _unix_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


class _Connection:
    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._reader = sock.makefile("rb")

    def command(self, *args: str) -> Any:
        try:
            self._sock.sendall(encode_resp(*args))
            return read_resp(self._reader)
        except OSError as err:
            raise RedisError(f"redis i/o failed: {err}") from err

    def close(self) -> None:
        with suppress(OSError):
            self._reader.close()
        with suppress(OSError):
            self._sock.close()


class RedisQueue:
    """FIFO queue with claims, visibility timeouts and dead letters in Redis."""

    def __init__(self, config: RedisQueueConfig, registry: Registry | None = None):
        self._config = RedisQueueConfig(
            addr=config.addr,
            password=config.password,
            db=config.db,
            key=config.key or "splai:tasks",
            timeout=config.timeout if config.timeout > 0 else 3.0,
            dead_letter_max=config.dead_letter_max if config.dead_letter_max > 0 else 5,
        )
        self._registry = registry if registry is not None else DEFAULT_REGISTRY

    @property
    def _pending_key(self) -> str:
        return self._config.key + ":pending"

    @property
    def _claims_key(self) -> str:
        return self._config.key + ":claims"

    @property
    def _visibility_key(self) -> str:
        return self._config.key + ":visibility"

    @property
    def _nack_key(self) -> str:
        return self._config.key + ":nack"

    @property
    def _dead_key(self) -> str:
        return self._config.key + ":dead"

    def _labels(self, **extra: str) -> dict[str, str]:
        return {"queue_backend": "redis", **extra}

    @contextmanager
    def _connect(self) -> Iterator[_Connection]:
        host, sep, port_text = self._config.addr.rpartition(":")
        if not sep:
            raise RedisError(f"invalid redis address {self._config.addr!r}")
        host = host.strip("[]")
        try:
            port = int(port_text)
        except ValueError as err:
            raise RedisError(f"invalid redis address {self._config.addr!r}") from err
        try:
            sock = socket.create_connection((host, port), timeout=self._config.timeout)
        except OSError as err:
            raise RedisError(f"redis connect failed: {err}") from err
        conn = _Connection(sock)
        try:
            if self._config.password:
                conn.command("AUTH", self._config.password)
            if self._config.db > 0:
                conn.command("SELECT", str(self._config.db))
            yield conn
        finally:
            conn.close()

    def _claim_payload(self, conn: _Connection, receipt: str) -> str:
        value = conn.command("HGET", self._claims_key, receipt)
        if value is None:
            return ""
        if not isinstance(value, str):
            raise RedisError("unexpected redis payload type")
        return value

    def _forget_claim(self, conn: _Connection, receipt: str) -> None:
        conn.command("HDEL", self._claims_key, receipt)
        conn.command("ZREM", self._visibility_key, receipt)

    def _refresh_dead_gauge(self, conn: _Connection) -> None:
        count = _integer(conn.command("LLEN", self._dead_key))
        self._registry.set_gauge("dead_letter_count", self._labels(), float(count))

    def enqueue(self, ref: TaskRef) -> None:
        self.enqueue_many([ref])

    def enqueue_many(self, refs) -> None:
        payloads = [encode_task_ref(r) for r in refs]
        if not payloads:
            return
        with self._connect() as conn:
            conn.command("LPUSH", self._pending_key, *payloads)

    def claim(
        self,
        max_items: int = 1,
        consumer: str = "",
        visibility_timeout: timedelta | None = None,
    ) -> list[QueueClaim]:
        """Pop up to ``max_items`` references; malformed entries are dead-lettered."""
        if max_items <= 0:
            max_items = 1
        if visibility_timeout is None or visibility_timeout <= timedelta(0):
            visibility_timeout = _DEFAULT_VISIBILITY
        now = datetime.now(timezone.utc)
        visible_at = now + visibility_timeout
        out: list[QueueClaim] = []
        with self._connect() as conn:
            for index in range(max_items):
                raw = conn.command("RPOP", self._pending_key)
                if raw is None:
                    break
                if not isinstance(raw, str):
                    raise RedisError("unexpected redis response type")
                try:
                    ref = decode_task_ref(raw)
                except ValueError:
                    with suppress(RedisError):
                        conn.command("LPUSH", self._dead_key, raw)
                    continue
                receipt = f"{consumer}:{time.time_ns()}:{index}"
                conn.command("HSET", self._claims_key, receipt, raw)
                conn.command(
                    "ZADD", self._visibility_key, str(_unix_millis(visible_at)), receipt
                )
                out.append(
                    QueueClaim(
                        ref=ref,
                        receipt=receipt,
                        claimed_by=consumer,
                        claimed_at=now,
                        visible_at=visible_at,
                    )
                )
        self._registry.inc_counter(
            "queue_claimed_total", self._labels(worker_id=consumer), float(len(out))
        )
        return out

    def ack(self, claims) -> None:
        """Drop claims and reset their failure counts."""
        claims = list(claims)
        if not claims:
            return
        with self._connect() as conn:
            for c in claims:
                payload = self._claim_payload(conn, c.receipt)
                self._forget_claim(conn, c.receipt)
                if payload:
                    conn.command("HDEL", self._nack_key, payload)
        for c in claims:
            self._registry.inc_counter(
                "queue_acked_total", self._labels(worker_id=c.claimed_by), 1
            )

    def nack(self, claims, reason: str) -> None:
        """Return claims to pending; repeated ``error`` nacks go to dead letters."""
        claims = list(claims)
        if not claims:
            return
        with self._connect() as conn:
            for c in claims:
                payload = self._claim_payload(conn, c.receipt)
                if not payload:
                    continue
                to_dead = False
                if reason == "error":
                    count = _integer(conn.command("HINCRBY", self._nack_key, payload, "1"))
                    to_dead = count >= self._config.dead_letter_max
                if to_dead:
                    conn.command("LPUSH", self._dead_key, payload)
                    conn.command("HDEL", self._nack_key, payload)
                else:
                    conn.command("LPUSH", self._pending_key, payload)
                self._forget_claim(conn, c.receipt)
            for c in claims:
                self._registry.inc_counter(
                    "queue_nacked_total",
                    self._labels(worker_id=c.claimed_by, reason=reason),
                    1,
                )
            self._refresh_dead_gauge(conn)

    def requeue_expired(self, now: datetime | None = None, max_items: int = 0) -> int:
        """Return claims visible again by ``now``; ``max_items`` <= 0 means 100."""
        if now is None:
            now = datetime.now(timezone.utc)
        if max_items <= 0:
            max_items = 100
        with self._connect() as conn:
            receipts = _string_list(
                conn.command(
                    "ZRANGEBYSCORE",
                    self._visibility_key,
                    "-inf",
                    str(_unix_millis(now)),
                    "LIMIT",
                    "0",
                    str(max_items),
                )
            )
            for receipt in receipts:
                payload = self._claim_payload(conn, receipt)
                if payload:
                    conn.command("LPUSH", self._pending_key, payload)
                self._forget_claim(conn, receipt)
        if receipts:
            self._registry.inc_counter(
                "queue_expired_requeued_total", self._labels(), float(len(receipts))
            )
        return len(receipts)

    def list_dead_letters(self, limit: int = 0) -> list[TaskRef]:
        """Return up to ``limit`` dead letters, newest first; ``limit`` <= 0 means 50."""
        if limit <= 0:
            limit = 50
        with self._connect() as conn:
            items = _string_list(conn.command("LRANGE", self._dead_key, "0", str(limit - 1)))
        out = []
        for raw in items:
            try:
                out.append(decode_task_ref(raw))
            except ValueError:
                continue
        return out

    def requeue_dead_letters(self, refs) -> int:
        """Move each given dead letter back to pending; give the number moved."""
        refs = list(refs)
        if not refs:
            return 0
        requeued = 0
        with self._connect() as conn:
            for ref in refs:
                raw = encode_task_ref(ref)
                if _integer(conn.command("LREM", self._dead_key, "1", raw)) == 0:
                    continue
                conn.command("LPUSH", self._pending_key, raw)
                conn.command("HDEL", self._nack_key, raw)
                requeued += 1
            if requeued:
                self._registry.inc_counter(
                    "dead_letter_requeued_total", self._labels(), float(requeued)
                )
            self._refresh_dead_gauge(conn)
        return requeued