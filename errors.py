"""Error taxonomy for capture and classifier start-up failures."""


class DrumCoachError(Exception):
    """Base class for errors surfaced on the listener's error channel."""


class MicrophonePermissionError(DrumCoachError, PermissionError):
    """Microphone access was denied or did not complete in time."""


class DeviceError(DrumCoachError):
    """No usable input device, or the device was lost mid-session."""


class ModelLoadError(DrumCoachError):
    """A classifier strategy failed to initialize."""
