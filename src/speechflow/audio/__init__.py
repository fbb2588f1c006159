"""
Audio handling for speechflow.

    - transcoder.py: decode, trim, compress (soundfile + numpy)
    - wav.py: canonical 16-bit PCM WAV encoding
"""
from speechflow.audio.transcoder import (
    AudioTranscoder,
    CompressionResult,
    CompressionSettings,
    CompressionStats,
    SampleBuffer,
)
from speechflow.audio.wav import encode_wav

__all__ = [
    "AudioTranscoder",
    "CompressionResult",
    "CompressionSettings",
    "CompressionStats",
    "SampleBuffer",
    "encode_wav",
]
