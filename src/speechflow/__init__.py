"""
speechflow: client-side orchestration for speech services.

Sits between an application and its speech-to-text / text-to-speech
providers and keeps their use bounded and affordable:

    - Admission control with cancellation tokens and stale-request sweeps
    - Exponential-backoff retry with error classification
    - WAV encoding, sample-accurate trimming and pre-upload compression
    - Quota-aware persistent key/value store with reclamation
    - Content-addressed cache of synthesized speech (recency/frequency eviction)
    - Usage ledger with daily cost aggregation and limit warnings

Example Usage:
    >>> import asyncio
    >>> from speechflow.context import SpeechContext
    >>> from speechflow.core.config import Settings
    >>>
    >>> async def main():
    ...     async with SpeechContext.from_settings(Settings(raw={})) as ctx:
    ...         audio = await ctx.service.synthesize("Hello there", model_id="aura-asteria-en")
    ...         print(ctx.ledger.check_limits().warnings)
    >>>
    >>> asyncio.run(main())
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
