"""
Audio codec layer for the speech-practice agent.

Twilio Media Streams carry G.711 mu-law at 8kHz. Everything downstream
(VAD, Deepgram, pronunciation assessment) works on linear PCM 16-bit LE at
8kHz, and synthesized speech arrives as a 16kHz PCM WAV container.

Conversions:
- mu-law 8kHz  <-> PCM16 8kHz (sample-for-sample, numpy lookup)
- WAV container -> raw PCM (scans for the `data` sub-chunk marker)
- PCM16 16kHz  -> PCM16 8kHz (naive decimation, no anti-aliasing filter)

The decimation keeps every other sample. Speech energy above 4kHz folds back
into the narrow band; this is a known quality limitation of the playback path.
"""

import io
import wave

import numpy as np

from src.speechcoach.errors import FormatError

TWILIO_SAMPLE_RATE = 8000
TTS_SAMPLE_RATE = 16000
SAMPLE_WIDTH = 2  # 16-bit PCM

ULAW_BIAS = 0x84
ULAW_CLIP = 32635

WAV_DATA_MARKER = b"data"
WAV_SUBCHUNK_HEADER_SIZE = 8


def _build_decode_table() -> np.ndarray:
    u = (~np.arange(256, dtype=np.int32)) & 0xFF
    sign = u & 0x80
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F
    magnitude = (((mantissa << 3) + ULAW_BIAS) << exponent) - ULAW_BIAS
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)


# Segment number for a biased magnitude, indexed by (magnitude >> 7)
_EXPONENT_TABLE = np.floor(np.log2(np.maximum(np.arange(256), 1))).astype(np.int32)
_DECODE_TABLE = _build_decode_table()


def _as_samples(pcm_bytes: bytes) -> np.ndarray:
    """View PCM16 LE bytes as int16 samples. A trailing odd byte is ignored."""
    usable = len(pcm_bytes) - (len(pcm_bytes) % SAMPLE_WIDTH)
    return np.frombuffer(pcm_bytes[:usable], dtype="<i2")


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law 8kHz audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes at 8kHz

    Returns:
        Linear PCM 16-bit little-endian bytes at 8kHz (2 bytes per input byte)
    """
    if not ulaw_bytes:
        return b""

    codes = np.frombuffer(ulaw_bytes, dtype=np.uint8)
    return _DECODE_TABLE[codes].astype("<i2").tobytes()


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit little-endian bytes

    Returns:
        Mu-law encoded bytes (1 byte per input sample)
    """
    if not pcm_bytes:
        return b""

    samples = _as_samples(pcm_bytes).astype(np.int32)
    sign = np.where(samples < 0, 0x80, 0x00)
    magnitude = np.minimum(np.abs(samples), ULAW_CLIP) + ULAW_BIAS
    exponent = _EXPONENT_TABLE[magnitude >> 7]
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    encoded = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return encoded.astype(np.uint8).tobytes()


def extract_pcm_from_wav(wav_bytes: bytes) -> bytes:
    """
    Return the PCM payload of a WAV container.

    The `data` sub-chunk is located by scanning for its marker rather than by
    assuming a fixed 44-byte header, since synthesis services may emit extra
    chunks (LIST, fact) before it.

    Raises:
        FormatError: If no data sub-chunk marker is present
    """
    offset = wav_bytes.find(WAV_DATA_MARKER)
    if offset < 0:
        raise FormatError("WAV container has no data chunk")
    return wav_bytes[offset + WAV_SUBCHUNK_HEADER_SIZE:]


def downsample_by_half(pcm_bytes: bytes) -> bytes:
    """
    Halve the sample rate by keeping every other sample.

    N input samples always yield floor(N/2) output samples.
    """
    samples = _as_samples(pcm_bytes)
    return samples[::2][: len(samples) // 2].tobytes()


def pcm_rms(pcm_bytes: bytes) -> float:
    """Root-mean-square energy of a PCM16 chunk (0.0 for an empty chunk)."""
    samples = _as_samples(pcm_bytes)
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = False) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else SAMPLE_WIDTH
    num_samples = len(audio_bytes) // bytes_per_sample
    return num_samples / sample_rate * 1000


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def wav_to_twilio_ulaw(wav_bytes: bytes) -> bytes:
    """
    Render a 16kHz PCM16 WAV container as Twilio 8kHz mu-law.

    extract PCM -> decimate by two -> mu-law encode
    """
    pcm_16k = extract_pcm_from_wav(wav_bytes)
    pcm_8k = downsample_by_half(pcm_16k)
    return linear16_to_ulaw(pcm_8k)
