"""Exception hierarchy shared by the bridge and render agents."""
from __future__ import annotations


class SwatchError(Exception):
    """Base exception for all swatch errors."""


class ConfigError(SwatchError):
    """Invalid or missing configuration. Fatal at startup."""


class CatalogError(SwatchError):
    """The catalog API returned an HTTP error, ok=false, or was unreachable."""

    def __init__(self, action: str, message: str) -> None:
        super().__init__(f"agent-api {action}: {message}")
        self.action = action


class FingerprintError(SwatchError):
    """A file could not be read for fingerprinting."""


class StorageError(SwatchError):
    """An object-storage upload failed."""


class PreviewError(SwatchError):
    """Every rendering strategy for a file failed.

    reason is the structured outcome reported to the catalog
    (e.g. 'no_pdf_compat'); attempts lists (strategy, error) pairs.
    """

    def __init__(self, reason: str, attempts: list[tuple[str, str]] | None = None) -> None:
        self.reason = reason
        self.attempts = attempts or []
        detail = "; ".join(f"{name}: {err}" for name, err in self.attempts)
        super().__init__(f"{reason} ({detail})" if detail else reason)
