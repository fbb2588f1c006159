"""
Canonical PCM WAV encoding.

Layout (all fields little-endian):

    offset  size  field
    0       4     "RIFF"
    4       4     36 + data_len
    8       4     "WAVE"
    12      4     "fmt "
    16      4     16 (fmt chunk size)
    20      2     1 (PCM)
    22      2     channels
    24      4     sample_rate
    28      4     byte_rate = sample_rate * channels * 2
    32      2     block_align = channels * 2
    34      2     16 (bits per sample)
    36      4     "data"
    40      4     data_len = frames * channels * 2
    44      ...   interleaved int16 samples

Float samples are clamped to [-1, 1]; negatives scale by 0x8000 and
positives by 0x7FFF, truncated toward zero.
"""
from __future__ import annotations

import struct

import numpy as np

WAV_HEADER_SIZE = 44
BITS_PER_SAMPLE = 16


def wav_header(channels: int, sample_rate: int, data_len: int) -> bytes:
    block_align = channels * BITS_PER_SAMPLE // 8
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_len,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        data_len,
    )


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to int16 with asymmetric scaling."""
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype(np.int16)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """
    Encode ``samples`` shaped (channels, frames) as a 16-bit PCM WAV file.

    The result is exactly ``44 + frames * channels * 2`` bytes long.
    """
    data = np.atleast_2d(samples)
    channels = data.shape[0]
    pcm = float_to_pcm16(data).T.reshape(-1).astype("<i2")
    body = pcm.tobytes()
    return wav_header(channels, int(sample_rate), len(body)) + body
