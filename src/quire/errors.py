"""Exception types raised by the derivation, hashing and project layers."""

from __future__ import annotations


class QuireError(Exception):
    """Base class for all errors raised by quire."""


class ImageDecodeError(QuireError):
    """Raised when image bytes cannot be decoded into pixels."""


class HashingError(QuireError):
    """Raised when a hashing request comes back from the worker pool as an error result."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(f"{kind} failed: {message}")
        self.kind = kind
        self.message = message


class DerivationError(QuireError):
    """Base class for artefact derivation failures."""

    def __init__(self, content_hash: str, message: str) -> None:
        super().__init__(f"{message} ({content_hash})")
        self.content_hash = content_hash


class WorkingImageMissingError(DerivationError):
    """The working artefact is absent; the image must be re-ingested."""

    def __init__(self, content_hash: str) -> None:
        super().__init__(content_hash, "working image missing")


class PreparedImageMissingError(DerivationError):
    """The prepared artefact is still absent after a rebuild attempt."""

    def __init__(self, content_hash: str) -> None:
        super().__init__(content_hash, "prepared image missing")


class StaleDerivationError(DerivationError):
    """A derivation finished after a newer preparation superseded it; its result was discarded."""

    def __init__(self, content_hash: str, generation: int, current: int) -> None:
        super().__init__(content_hash, f"stale derivation discarded (generation {generation} < {current})")
        self.generation = generation
        self.current = current


class UnknownImageError(QuireError, KeyError):
    """Raised when an operation references an image id that is not in the project."""


class UnknownGroupError(QuireError, KeyError):
    """Raised when an operation references a group id that is not in the project."""


__all__ = [
    "QuireError",
    "ImageDecodeError",
    "HashingError",
    "DerivationError",
    "WorkingImageMissingError",
    "PreparedImageMissingError",
    "StaleDerivationError",
    "UnknownImageError",
    "UnknownGroupError",
]
