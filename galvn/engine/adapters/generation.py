from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Union

from ...story.model import BatchSceneData, Sentiment


BatchLike = Union[BatchSceneData, Mapping[str, Any]]


def as_batch(data: BatchLike) -> BatchSceneData:
    """Accept either a parsed batch or the raw JSON dict a backend produced."""
    if isinstance(data, BatchSceneData):
        return data
    return BatchSceneData.from_dict(dict(data))


class GenerationBackend(ABC):
    """Story generation boundary.

    Implementations wrap a concrete text model. Failures surface as exceptions
    from the coroutine; the session turns them into ``GenerationError``.
    """

    @abstractmethod
    async def generate_initial_batch(self, context: Dict[str, str]) -> BatchSceneData:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def generate_branch(self, choice_text: str, sentiment: Sentiment) -> BatchSceneData:  # pragma: no cover - interface
        raise NotImplementedError

    async def generate_plot_outline(self, prompt: str) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def reset(self) -> None:
        """Forget any conversation state (called on return to title)."""


class VoiceBackend(ABC):
    """Speech synthesis boundary. Purely advisory."""

    @abstractmethod
    async def synthesize_speech(self, text: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError


class NullVoiceBackend(VoiceBackend):
    async def synthesize_speech(self, text: str) -> Optional[bytes]:
        return None


class StaticGenerationBackend(GenerationBackend):
    """Serves pre-built batches; used for offline play and tests.

    ``branches`` maps choice text to the batch played after that choice.
    Every call is recorded in ``calls`` as ``(kind, key)``.
    """

    def __init__(
        self,
        initial: Optional[BatchLike] = None,
        branches: Optional[Mapping[str, BatchLike]] = None,
        outline: str = "",
    ) -> None:
        self._initial = as_batch(initial) if initial is not None else None
        self._branches = {k: as_batch(v) for k, v in (branches or {}).items()}
        self._outline = outline
        self.calls: List[tuple] = []

    async def generate_initial_batch(self, context: Dict[str, str]) -> BatchSceneData:
        self.calls.append(("initial", context.get("scriptId", "")))
        if self._initial is None:
            raise LookupError("no initial batch configured")
        return self._initial

    async def generate_branch(self, choice_text: str, sentiment: Sentiment) -> BatchSceneData:
        self.calls.append(("branch", choice_text))
        try:
            return self._branches[choice_text]
        except KeyError:
            raise LookupError(f"no branch for choice {choice_text!r}") from None

    async def generate_plot_outline(self, prompt: str) -> str:
        self.calls.append(("outline", prompt))
        return self._outline
