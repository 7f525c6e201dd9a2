class ProctorError(Exception):
    """Base class for proctoring pipeline errors"""


class AnalyzerNotReady(ProctorError):
    """Raised when a frame reaches an analyzer whose model is not loaded"""


class ModelInitializationError(ProctorError):
    """Model or runtime backend failed to load; fatal for the analyzer"""


class FrameProcessingError(ProctorError):
    """Decode or inference failure for a single frame"""


class CapabilityError(ProctorError):
    """A runtime feature required for frame capture is missing"""


class DeliveryError(ProctorError):
    """Events or uploads could not be delivered to storage"""


class SessionNotFound(ProctorError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
