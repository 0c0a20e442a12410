"""Offload hashing to a bounded worker pool with explicit error results."""

from __future__ import annotations

from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional

from quire.config import HashingConfig
from quire.errors import HashingError, ImageDecodeError
from quire.hasher import (
    ImageHashes,
    compute_average_hash,
    compute_content_hash,
    compute_difference_hash,
    hash_image,
)
from utils.logging import get_logger


LOGGER = get_logger(__name__, extra={"component": "hash_worker"})

_HANDLERS: Dict[str, Callable[[bytes], Any]] = {
    "content": compute_content_hash,
    "dhash": compute_difference_hash,
    "ahash": compute_average_hash,
    "image": hash_image,
}

REQUEST_KINDS = frozenset(_HANDLERS)


@dataclass(frozen=True)
class HashRequest:
    """One unit of hashing work; ``payload`` is an immutable copy of the encoded image."""

    kind: str
    payload: bytes

    def __post_init__(self) -> None:
        if self.kind not in REQUEST_KINDS:
            raise ValueError(f"Unsupported hash request kind: {self.kind!r}")
        object.__setattr__(self, "payload", bytes(self.payload))


@dataclass(frozen=True)
class HashResponse:
    """Worker result: either ``value`` or an ``error`` message, never both."""

    kind: str
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _handle_request(request: HashRequest) -> HashResponse:
    """Run one request inside a worker; decode failures come back as error responses."""

    try:
        value = _HANDLERS[request.kind](request.payload)
    except ImageDecodeError as exc:
        return HashResponse(kind=request.kind, error=str(exc))
    return HashResponse(kind=request.kind, value=value)


class HashingService:
    """Submit hashing requests to a thread or process pool.

    The pool is created on first use. ``submit`` returns a future resolving to
    a :class:`HashResponse`; the blocking helpers unwrap it and raise
    :class:`HashingError` for error responses.
    """

    def __init__(self, config: HashingConfig | None = None) -> None:
        self._config = config or HashingConfig()
        self._executor: Executor | None = None
        self._lock = Lock()

    def _get_executor(self) -> Executor:
        if self._executor is not None:
            return self._executor
        with self._lock:
            if self._executor is None:
                workers = max(1, int(self._config.max_workers))
                if self._config.executor == "thread":
                    self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quire-hash")
                else:
                    self._executor = ProcessPoolExecutor(max_workers=workers)
                LOGGER.info("hash_pool_started", extra={"executor": self._config.executor, "max_workers": workers})
            return self._executor

    def submit(self, kind: str, data: bytes) -> Future[HashResponse]:
        return self._get_executor().submit(_handle_request, HashRequest(kind=kind, payload=data))

    @staticmethod
    def unwrap(response: HashResponse) -> Any:
        if response.error is not None:
            LOGGER.warning("hash_request_failed", extra={"kind": response.kind, "error": response.error})
            raise HashingError(response.kind, response.error)
        return response.value

    def _run(self, kind: str, data: bytes) -> Any:
        return self.unwrap(self.submit(kind, data).result())

    def content_hash(self, data: bytes) -> str:
        return self._run("content", data)

    def difference_hash(self, data: bytes) -> str:
        return self._run("dhash", data)

    def average_hash(self, data: bytes) -> str:
        return self._run("ahash", data)

    def hash_image(self, data: bytes) -> ImageHashes:
        return self._run("image", data)

    def close(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def __enter__(self) -> "HashingService":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["HashRequest", "HashResponse", "HashingService", "REQUEST_KINDS"]
