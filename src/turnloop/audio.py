"""
Audio utilities for the voice turn pipeline.

All audio crossing the pipeline is 16-bit little-endian mono PCM:
- inbound frames from the transport go to the VAD and the STT adapter as-is
- TTS adapters return raw PCM at the session sample rate; vendors with a
  fixed output rate are resampled with numpy before chunks leave the adapter
"""

import io
import wave
from typing import Generator

import numpy as np

DEFAULT_SAMPLE_RATE = 16000
SAMPLE_WIDTH = 2  # 16-bit PCM
FRAME_DURATION_MS = 20
INT16_FULL_SCALE = 32768.0


def frame_size_bytes(sample_rate: int = DEFAULT_SAMPLE_RATE, duration_ms: int = FRAME_DURATION_MS) -> int:
    """Number of PCM16 bytes in a frame of `duration_ms` at `sample_rate`."""
    return int(sample_rate * duration_ms / 1000) * SAMPLE_WIDTH


def is_valid_pcm16(frame: bytes) -> bool:
    """A PCM16 frame must be non-empty bytes with a whole number of samples."""
    return isinstance(frame, (bytes, bytearray)) and len(frame) > 0 and len(frame) % SAMPLE_WIDTH == 0


def pcm16_to_samples(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 bytes into normalized float32 samples in [-1, 1).

    Args:
        pcm_bytes: Linear PCM 16-bit little-endian bytes

    Returns:
        Numpy array of float32 samples
    """
    if not pcm_bytes:
        return np.zeros(0, dtype=np.float32)
    samples = np.frombuffer(pcm_bytes, dtype="<i2").astype(np.float32)
    return samples / INT16_FULL_SCALE


def rms_energy(pcm_bytes: bytes) -> float:
    """
    Root-mean-square energy of a PCM16 frame, normalized to [0, 1].

    Silence is 0.0; a full-scale square wave is 1.0.
    """
    samples = pcm16_to_samples(pcm_bytes)
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples))))


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE) -> float:
    """
    Calculate the duration of PCM16 audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0
    num_samples = len(audio_bytes) // SAMPLE_WIDTH
    return num_samples / sample_rate * 1000


def chunk_audio(audio_bytes: bytes, chunk_size: int) -> Generator[bytes, None, None]:
    """
    Chunk audio into frames of at most `chunk_size` bytes.

    The last chunk is not padded; callers stream it as-is.
    """
    for i in range(0, len(audio_bytes), chunk_size):
        yield audio_bytes[i:i + chunk_size]


def create_silence(duration_ms: int, sample_rate: int = DEFAULT_SAMPLE_RATE) -> bytes:
    """Create PCM16 silence of the given duration."""
    num_samples = int(sample_rate * duration_ms / 1000)
    return b"\x00\x00" * num_samples


def create_tone(
    duration_ms: int,
    *,
    frequency_hz: float = 220.0,
    amplitude: float = 0.5,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> bytes:
    """Create a PCM16 sine tone (used for synthetic speech-like input)."""
    num_samples = int(sample_rate * duration_ms / 1000)
    t = np.arange(num_samples, dtype=np.float32) / sample_rate
    samples = np.sin(2 * np.pi * frequency_hz * t) * amplitude * 32767
    return samples.astype("<i2").tobytes()


def resample_pcm16(pcm_bytes: bytes, from_rate: int, to_rate: int) -> bytes:
    """
    Resample PCM16 audio with linear interpolation.

    Args:
        pcm_bytes: PCM16 mono audio at `from_rate`
        from_rate: Source sample rate in Hz
        to_rate: Target sample rate in Hz

    Returns:
        PCM16 mono audio at `to_rate`
    """
    if from_rate == to_rate or not pcm_bytes:
        return pcm_bytes

    samples = np.frombuffer(pcm_bytes, dtype="<i2").astype(np.float32)
    target_len = max(1, int(round(len(samples) * to_rate / from_rate)))
    src_positions = np.arange(len(samples), dtype=np.float64)
    dst_positions = np.linspace(0, len(samples) - 1, num=target_len)
    resampled = np.interp(dst_positions, src_positions, samples)
    return np.clip(resampled, -32768, 32767).astype("<i2").tobytes()


class PCMStreamConverter:
    """
    Convert a streamed PCM16 response to the session sample rate.

    Vendor streams arrive in arbitrary byte chunks: an odd trailing byte is
    carried into the next chunk, and the interpolation position and last
    sample are kept between chunks so the output has no seams at chunk
    boundaries.
    """

    def __init__(self, from_rate: int, to_rate: int):
        self.from_rate = from_rate
        self.to_rate = to_rate
        self._step = from_rate / to_rate
        self._remainder = b""
        self._tail = np.zeros(0, dtype=np.float64)
        # Position of the next output sample, relative to the start of `_tail`.
        self._position = 0.0

    def feed(self, data: bytes) -> bytes:
        """Convert one chunk; returns whatever whole output samples are ready."""
        data = self._remainder + data
        usable = len(data) - (len(data) % SAMPLE_WIDTH)
        self._remainder = data[usable:]
        if not usable:
            return b""
        if self.from_rate == self.to_rate:
            return data[:usable]

        samples = np.frombuffer(data[:usable], dtype="<i2").astype(np.float64)
        signal = np.concatenate([self._tail, samples])
        last = len(signal) - 1
        if last < 1:
            self._tail = signal
            return b""

        positions = np.arange(self._position, last, self._step)
        self._tail = signal[-1:]
        if positions.size == 0:
            self._position -= last
            return b""

        self._position = positions[-1] + self._step - last
        resampled = np.interp(positions, np.arange(len(signal), dtype=np.float64), signal)
        return np.clip(np.round(resampled), -32768, 32767).astype("<i2").tobytes()


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())

    if sample_width != SAMPLE_WIDTH:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        stereo = np.frombuffer(frames, dtype="<i2").reshape(-1, 2).astype(np.int32)
        mono = (stereo.sum(axis=1) // 2).astype("<i2")
        return int(sample_rate), mono.tobytes()

    raise ValueError(f"Unsupported WAV channel count: {channels}")
