"""
drumcoach - Audio Capture
Owns the microphone stream (sounddevice / PortAudio) and hands out
fixed-size mono AudioFrames through a small bounded queue.
"""

import functools
import queue
import threading
import time
from typing import Callable, Optional

import numpy as np
import sounddevice as sd

from config import AudioConfig
from drum_types import AudioFrame
from errors import DeviceError, MicrophonePermissionError
from logging_utils import log_event, log_throttled

# PortAudio host errors that mean the OS refused microphone access
_PERMISSION_HINTS = ('permission', 'denied', 'not permitted', 'not authorized', 'unauthorized')


def _map_open_error(error: Exception) -> Exception:
    text = str(error).lower()
    if any(hint in text for hint in _PERMISSION_HINTS):
        return MicrophonePermissionError(f"microphone access denied: {error}")
    return DeviceError(f"could not open audio input: {error}")


def list_input_devices() -> list[dict]:
    """Input-capable devices as {index, name, channels, default_samplerate}."""
    try:
        all_devices = sd.query_devices()
    except sd.PortAudioError as e:
        raise DeviceError(f"could not query audio devices: {e}") from e
    devices = []
    for i, d in enumerate(all_devices):
        if d['max_input_channels'] <= 0:
            continue
        devices.append({
            'index': i,
            'name': d['name'],
            'channels': d['max_input_channels'],
            'default_samplerate': d['default_samplerate'],
        })
    return devices


class AudioCapture:
    """
    Callback-driven microphone capture.

    The PortAudio callback runs on its own thread: it only mixes to mono,
    updates `level` and pushes into a bounded queue. When the consumer falls
    behind the oldest frame is dropped, since a stale hit is worse than a
    missed one.
    """

    def __init__(self, config: AudioConfig | None = None, clock: Callable[[], float] = time.time):
        self.config = config or AudioConfig()
        self._clock = clock
        self._stream = None
        self._lock = threading.Lock()
        self._queue: queue.Queue[AudioFrame] = queue.Queue(maxsize=max(1, self.config.queue_size))
        self._level = 0.0
        self._closing = False
        self._lost_reason: Optional[str] = None
        # Bumped per open(); callbacks from any other stream are ignored
        self._generation = 0
        self._active_generation: Optional[int] = None
        self.sample_rate = int(self.config.sample_rate)
        self.device_name = ''
        self.dropped_frames = 0
        self.status_events = 0

    # ===== LIFECYCLE =====

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def level(self) -> float:
        """RMS of the latest frame scaled to 0-1 for a level meter; 0 when closed."""
        return self._level if self._stream is not None else 0.0

    def _resolve_device(self) -> dict:
        try:
            info = sd.query_devices(self.config.device_index, 'input')
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceError(f"no audio input device available: {e}") from e
        if int(info.get('max_input_channels', 0)) < 1:
            raise DeviceError(f"device '{info.get('name', '?')}' has no input channels")
        return info

    def open(self) -> 'AudioCapture':
        """Open and start the input stream.

        Raises MicrophonePermissionError when access is refused or the open
        does not finish within `permission_timeout_s`, DeviceError when there
        is no usable input device.
        """
        if self._stream is not None:
            return self

        info = self._resolve_device()
        self.device_name = str(info.get('name', ''))
        self.sample_rate = int(self.config.sample_rate or info.get('default_samplerate', 44100))
        channels = max(1, min(int(self.config.channels), int(info.get('max_input_channels', 1))))

        self._closing = False
        self._lost_reason = None
        self.dropped_frames = 0
        self._drain()
        self._generation += 1
        generation = self._generation

        result: dict = {}
        abandoned = threading.Event()
        done = threading.Event()

        def _open_stream():
            stream = None
            try:
                stream = sd.InputStream(
                    device=self.config.device_index,
                    channels=channels,
                    samplerate=self.sample_rate,
                    blocksize=self.config.frame_size,
                    dtype='float32',
                    callback=functools.partial(self._audio_callback, generation),
                    finished_callback=functools.partial(self._on_stream_finished, generation),
                )
                stream.start()
                result['stream'] = stream
            except (sd.PortAudioError, ValueError, OSError) as e:
                result['error'] = e
                if stream is not None:
                    stream.close()
            finally:
                with self._lock:
                    done.set()
                    late = abandoned.is_set() and 'stream' in result
                if late:
                    # Open finished after the caller gave up; release it here
                    result['stream'].close()

        opener = threading.Thread(target=_open_stream, name='drumcoach-open', daemon=True)
        opener.start()
        timeout = max(0.1, float(self.config.permission_timeout_s))
        if not done.wait(timeout):
            with self._lock:
                finished = done.is_set()
                if not finished:
                    abandoned.set()
            if not finished:
                log_event("ERROR", "AudioCapture", "Microphone open timed out", timeout_s=timeout)
                raise MicrophonePermissionError(
                    f"timed out after {timeout:.1f}s waiting for microphone access")

        if 'error' in result:
            mapped = _map_open_error(result['error'])
            log_event("ERROR", "AudioCapture", "Failed to open input", error=result['error'])
            raise mapped from result['error']

        with self._lock:
            self._stream = result['stream']
            self._active_generation = generation
        log_event("INFO", "AudioCapture", "Input capture started",
                  device=self.device_name, sample_rate=self.sample_rate,
                  channels=channels, frame_size=self.config.frame_size)
        return self

    def close(self) -> None:
        """Stop and release the stream. Safe to call repeatedly."""
        with self._lock:
            stream, self._stream = self._stream, None
            self._closing = True
        self._level = 0.0
        self._drain()
        if stream is None:
            return
        try:
            stream.stop()
        except sd.PortAudioError as e:
            log_event("WARN", "AudioCapture", "Error stopping stream", error=e)
        finally:
            stream.close()
        log_event("INFO", "AudioCapture", "Stopped",
                  dropped_frames=self.dropped_frames, status_events=self.status_events)

    def __enter__(self) -> 'AudioCapture':
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ===== FRAMES =====

    def read(self, timeout: Optional[float] = None) -> Optional[AudioFrame]:
        """Next frame, or None when none arrived within `timeout`.

        Raises DeviceError once the device has been lost.
        """
        if self._lost_reason:
            raise DeviceError(self._lost_reason)
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            if self._lost_reason:
                raise DeviceError(self._lost_reason)
            return None

    @property
    def hop_seconds(self) -> float:
        return self.config.frame_size / float(self.sample_rate or 1)

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _push(self, frame: AudioFrame) -> None:
        try:
            self._queue.put_nowait(frame)
            return
        except queue.Full:
            pass
        try:
            self._queue.get_nowait()
        except queue.Empty:
            pass
        self.dropped_frames += 1
        try:
            self._queue.put_nowait(frame)
        except queue.Full:
            self.dropped_frames += 1

    def _audio_callback(self, generation, indata, frames, time_info, status):
        """PortAudio callback - mix to mono, update level, enqueue"""
        if status:
            self.status_events += 1
            log_throttled("capture.status", 5.0, "WARN", "AudioCapture", "Stream status", status=status)
        if self._closing or generation != self._active_generation:
            return

        data = np.asarray(indata, dtype=np.float32)
        if data.ndim > 1 and data.shape[1] > 1:
            mono = np.mean(data, axis=1)
        else:
            mono = data.reshape(-1)
        # PortAudio reuses its buffer after the callback returns
        mono = np.array(mono, dtype=np.float32, copy=True)

        rms = float(np.sqrt(np.mean(mono ** 2))) if len(mono) else 0.0
        self._level = min(1.0, rms * self.config.level_scale)
        self._push(AudioFrame(mono, self._clock() * 1000.0, self.sample_rate))

    def _on_stream_finished(self, generation):
        if self._closing or generation != self._active_generation:
            return
        self._lost_reason = "audio input stream stopped unexpectedly (device lost?)"
        log_event("ERROR", "AudioCapture", "Input stream finished unexpectedly", device=self.device_name)
