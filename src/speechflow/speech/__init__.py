"""
Speech operation orchestration.

    - coordinator.py: admission control and stale-request sweeps
    - tasks.py: CancellationToken and run_cancellable
    - retry.py: exponential backoff
    - cache.py: synthesized speech cache
    - gateway.py: remote speech endpoints (httpx)
    - catalog.py: cached voice model list
    - playback.py: AudioPlayer seam
"""
from speechflow.speech.cache import CacheEntry, CacheStats, ResponseCache
from speechflow.speech.catalog import VoiceCatalog
from speechflow.speech.coordinator import Admission, PendingOperation, RequestCoordinator, RequestStatus
from speechflow.speech.gateway import HttpSpeechGateway, ServiceHealth, SpeechGateway, TranscriptResult
from speechflow.speech.playback import AudioPlayer, NullAudioPlayer
from speechflow.speech.retry import RetryOrchestrator, with_retry
from speechflow.speech.tasks import CancellationToken, run_cancellable

__all__ = [
    "Admission",
    "AudioPlayer",
    "CacheEntry",
    "CacheStats",
    "CancellationToken",
    "HttpSpeechGateway",
    "NullAudioPlayer",
    "PendingOperation",
    "RequestCoordinator",
    "RequestStatus",
    "ResponseCache",
    "RetryOrchestrator",
    "ServiceHealth",
    "SpeechGateway",
    "TranscriptResult",
    "VoiceCatalog",
    "run_cancellable",
    "with_retry",
]
