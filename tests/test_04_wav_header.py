"""Tests for canonical PCM WAV encoding."""
import struct

import numpy as np

from speechflow.audio.wav import WAV_HEADER_SIZE, encode_wav, float_to_pcm16, wav_header


def test_wav_bytes_header():
    sr = 24000
    t = np.linspace(0, 0.1, int(sr * 0.1), endpoint=False, dtype=np.float32)
    wav = (0.1 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)

    b = encode_wav(wav[np.newaxis, :], sr)

    assert b[:4] == b"RIFF"
    assert b[8:12] == b"WAVE"
    assert b[12:16] == b"fmt "
    assert b[36:40] == b"data"
    assert len(b) == WAV_HEADER_SIZE + len(t) * 2


def test_stereo_layout():
    """2 channels x 3 frames -> 56 bytes, interleaved L/R."""
    samples = np.array([[0.0, 0.5, 1.0], [0.0, -0.5, -1.0]], dtype=np.float32)

    b = encode_wav(samples, 16000)

    assert len(b) == 56
    riff_size, = struct.unpack("<I", b[4:8])
    assert riff_size == 36 + 12
    channels, sample_rate, byte_rate, block_align, bits = struct.unpack("<HIIHH", b[22:36])
    assert channels == 2
    assert sample_rate == 16000
    assert byte_rate == 16000 * 4
    assert block_align == 4
    assert bits == 16

    pcm = struct.unpack("<6h", b[44:])
    assert pcm == (0, 0, 16383, -16384, 32767, -32768)


def test_clamping():
    out = float_to_pcm16(np.array([2.0, -3.0, 1.0, -1.0]))
    assert out.tolist() == [32767, -32768, 32767, -32768]


def test_header_only():
    h = wav_header(1, 8000, 0)
    assert len(h) == WAV_HEADER_SIZE
    assert struct.unpack("<I", h[40:44])[0] == 0
