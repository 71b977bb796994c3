"""
Mu-law helpers for voice activity detection on 8 kHz telephone audio.
"""

SAMPLE_RATE = 8000


def _ulaw_to_linear(byte: int) -> int:
    u = ~byte & 0xFF
    sign = u & 0x80
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F
    sample = (((mantissa << 3) + 0x84) << exponent) - 0x84
    return -sample if sign else sample


ULAW_TO_LINEAR: tuple[int, ...] = tuple(_ulaw_to_linear(b) for b in range(256))


def frame_duration(frame: bytes) -> float:
    """Seconds of audio in a mu-law frame (one byte per sample)."""
    return len(frame) / SAMPLE_RATE


def frame_energy(frame: bytes) -> float:
    """Mean absolute 16-bit amplitude of a mu-law frame."""
    if not frame:
        return 0.0
    return sum(abs(ULAW_TO_LINEAR[b]) for b in frame) / len(frame)


def is_voiced(frame: bytes, threshold: int) -> bool:
    return frame_energy(frame) > threshold
