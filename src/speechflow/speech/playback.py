"""
Audio playback seam.

Playback devices are out of scope for the library; callers plug in an
``AudioPlayer``. Implementations must stop promptly when the token
fires, which ``run_cancellable`` takes care of for anything awaitable.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Tuple

from speechflow.speech.tasks import CancellationToken


class AudioPlayer(ABC):

    @abstractmethod
    async def play(self, payload: bytes, fmt: str, token: CancellationToken) -> None:
        """
        Play ``payload`` to completion.

        Raises:
            CancellationError: If ``token`` fires before playback ends.
        """


class NullAudioPlayer(AudioPlayer):
    """Headless player: records what it was asked to play and returns."""

    def __init__(self):
        self.played: List[Tuple[bytes, str]] = []

    async def play(self, payload: bytes, fmt: str, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        self.played.append((payload, fmt))
