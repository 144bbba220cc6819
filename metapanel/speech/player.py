"""Decode synthesized audio and play it with live RMS amplitude."""

import asyncio
import io
import logging

import numpy as np
import soundfile as sf

from metapanel.speech.base import AmplitudeCallback, SpeechError

logger = logging.getLogger(__name__)

BLOCK_SEC = 0.02  # 20 ms chunks
AMPLITUDE_GAIN = 3.0


def block_amplitude(block: np.ndarray) -> float:
    """RMS of a float32 block, scaled and clipped to [0, 1]."""
    if block.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(block))))
    return max(0.0, min(1.0, rms * AMPLITUDE_GAIN))


def decode(audio: bytes) -> tuple[np.ndarray, int]:
    data, samplerate = sf.read(io.BytesIO(audio), dtype="float32", always_2d=True)
    return data, samplerate


class AudioPlayer:
    """Plays encoded audio bytes on the default output device."""

    def __init__(self, device: int | str | None = None) -> None:
        self._device = device

    def _play_blocking(self, audio: bytes, report: AmplitudeCallback) -> None:
        import sounddevice as sd

        try:
            data, samplerate = decode(audio)
        except RuntimeError as exc:
            raise SpeechError("player", f"Could not decode audio: {exc}") from exc

        block = max(1, int(samplerate * BLOCK_SEC))
        try:
            with sd.OutputStream(
                samplerate=samplerate,
                channels=data.shape[1],
                dtype="float32",
                device=self._device,
            ) as stream:
                for idx in range(0, len(data), block):
                    chunk = data[idx: idx + block]
                    stream.write(chunk)
                    report(block_amplitude(chunk))
        except sd.PortAudioError as exc:
            raise SpeechError("player", f"Playback failed: {exc}") from exc

    async def play(self, audio: bytes, on_amplitude: AmplitudeCallback) -> None:
        """Play audio in a worker thread; samples are delivered on the loop."""
        loop = asyncio.get_running_loop()

        def report(amp: float) -> None:
            loop.call_soon_threadsafe(on_amplitude, amp)

        logger.debug("Playing %d bytes of audio", len(audio))
        await loop.run_in_executor(None, self._play_blocking, audio, report)
