from __future__ import annotations

from dataclasses import dataclass


@dataclass
class NarrativeError(Exception):
    message: str
    context: str | None = None

    def __str__(self) -> str:  # pragma: no cover - formatting
        ctx = f"\n  >> {self.context}" if self.context else ""
        return f"{self.message}{ctx}"


@dataclass
class ScriptLoadError(NarrativeError):
    """A script asset is missing or malformed; only starting that script fails."""
    script_id: str | None = None

    def __str__(self) -> str:  # pragma: no cover - formatting
        sid = f" [{self.script_id}]" if self.script_id else ""
        ctx = f"\n  >> {self.context}" if self.context else ""
        return f"{self.message}{sid}{ctx}"


@dataclass
class GenerationError(NarrativeError):
    """Act or branch generation failed; recoverable with a retry."""
    retryable: bool = True


@dataclass
class RollbackError(NarrativeError):
    """History jump refused; raised before any state is touched."""
    index: int | None = None
