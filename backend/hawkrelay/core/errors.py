class SignalingError(Exception):
    """Base class for everything the signaling subsystem raises."""


class ProtocolError(SignalingError):
    """A message that is not valid JSON, has an unknown action or misses a field."""

    code = 'bad_message'


class RegistryConflict(SignalingError):
    """A join the registry refused. `code` is sent back on the wire."""

    def __init__(self, code, message, camera_id=None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.camera_id = camera_id


class NegotiationError(SignalingError):
    """SDP or ICE could not be applied; the owning peer session closes."""


class CaptureError(SignalingError):
    """The local capture source could not be opened or read."""


class DetectionServiceError(SignalingError):
    pass


class CameraRegistryError(SignalingError):
    pass
