#!/usr/bin/env python3
"""Tests for PCM <-> base64 conversion of live audio.

Run: python3 test_audio_codec.py
"""

import base64
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


def _b64_int16(values):
    return base64.b64encode(np.array(values, dtype='<i2').tobytes()).decode()


# ======================================================================
# Outbound
# ======================================================================

@test("encode_outbound scales floats to int16 little-endian")
def test_encode_scaling():
    from audio_codec import encode_outbound
    encoded = encode_outbound(np.array([0.0, 0.5, -0.5], dtype=np.float32))
    raw = np.frombuffer(base64.b64decode(encoded), dtype='<i2')
    assert raw.tolist() == [0, 16384, -16384], raw.tolist()


@test("encode_outbound clips full-scale input instead of wrapping")
def test_encode_clips():
    from audio_codec import encode_outbound
    encoded = encode_outbound(np.array([1.0, -1.0, 2.5, -3.0], dtype=np.float32))
    raw = np.frombuffer(base64.b64decode(encoded), dtype='<i2')
    assert raw.tolist() == [32767, -32768, 32767, -32768], raw.tolist()


@test("encode_outbound of an empty frame is an empty string")
def test_encode_empty():
    from audio_codec import encode_outbound
    assert encode_outbound(np.array([], dtype=np.float32)) == ""


@test("media_blob carries the capture rate in the mime type")
def test_media_blob():
    from audio_codec import media_blob
    blob = media_blob(np.zeros(4, dtype=np.float32))
    assert blob["mimeType"] == "audio/pcm;rate=16000"
    assert len(base64.b64decode(blob["data"])) == 8


# ======================================================================
# Inbound
# ======================================================================

@test("decode_inbound returns (frames, channels) float32 in [-1, 1)")
def test_decode_basic():
    from audio_codec import decode_inbound
    chunk = decode_inbound(_b64_int16([0, 16384, -32768, 32767]), seq=7)
    assert chunk.samples.dtype == np.float32
    assert chunk.samples.shape == (4, 1)
    assert chunk.samples[1, 0] == 0.5
    assert chunk.samples[2, 0] == -1.0
    assert chunk.samples[3, 0] < 1.0
    assert chunk.seq == 7
    assert chunk.sample_rate == 24000


@test("decode_inbound duration follows sample rate")
def test_decode_duration():
    from audio_codec import decode_inbound
    chunk = decode_inbound(_b64_int16([0] * 12000), sample_rate=24000)
    assert chunk.frames == 12000
    assert abs(chunk.duration - 0.5) < 1e-9


@test("decode_inbound accepts bytes as well as str")
def test_decode_bytes():
    from audio_codec import decode_inbound
    chunk = decode_inbound(_b64_int16([1, 2]).encode())
    assert chunk.frames == 2


@test("decode_inbound drops a trailing partial frame for stereo")
def test_decode_stereo_partial():
    from audio_codec import decode_inbound
    chunk = decode_inbound(_b64_int16([1, 2, 3, 4, 5]), channels=2)
    assert chunk.samples.shape == (2, 2)


@test("decode_inbound rejects an odd byte count")
def test_decode_odd_bytes():
    from audio_codec import DecodeFault, decode_inbound
    payload = base64.b64encode(b"\x01\x02\x03").decode()
    try:
        decode_inbound(payload)
    except DecodeFault:
        return
    raise AssertionError("expected DecodeFault")


@test("decode_inbound rejects invalid base64")
def test_decode_bad_base64():
    from audio_codec import DecodeFault, decode_inbound
    try:
        decode_inbound("not base64 at all!!")
    except DecodeFault:
        return
    raise AssertionError("expected DecodeFault")


@test("DecodeFault is a ValueError")
def test_decode_fault_type():
    from audio_codec import DecodeFault
    assert issubclass(DecodeFault, ValueError)


@test("parse_pcm_rate reads the rate or falls back")
def test_parse_pcm_rate():
    from audio_codec import parse_pcm_rate
    assert parse_pcm_rate("audio/pcm;rate=16000") == 16000
    assert parse_pcm_rate("audio/pcm") == 24000
    assert parse_pcm_rate(None, default=8000) == 8000


@test("parse_pcm_rate ignores a zero rate")
def test_parse_pcm_rate_zero():
    from audio_codec import parse_pcm_rate
    assert parse_pcm_rate("audio/pcm;rate=0") == 24000
    assert parse_pcm_rate("audio/pcm;rate=0", default=16000) == 16000


@test("decode_inbound rejects a non-positive sample rate")
def test_decode_zero_rate():
    from audio_codec import DecodeFault, decode_inbound
    try:
        decode_inbound(_b64_int16([1, 2]), sample_rate=0)
    except DecodeFault:
        return
    raise AssertionError("expected DecodeFault")


if __name__ == "__main__":
    print("=" * 60)
    print("Audio Codec Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
