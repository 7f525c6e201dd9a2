"""Messages exchanged between the frame scheduler and the analyzer workers.

Inbound (host -> worker): INIT, FRAME, RESET.
Outbound (worker -> host): READY, STATE, EVENT, RESULTS, ERROR.
"""

from pydantic import BaseModel, ConfigDict
from typing import Any, List, Literal, Union

from .detection_models import FocusEventPayload, FocusStatePayload, ObjectDetectionResult


class InitMessage(BaseModel):
    type: Literal["INIT"] = "INIT"


class FrameMessage(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: Literal["FRAME"] = "FRAME"
    frame: Any  # np.ndarray, BGR
    timestamp: int

    def release(self):
        """Drop the reference to the pixel buffer"""
        self.frame = None


class ResetMessage(BaseModel):
    type: Literal["RESET"] = "RESET"


InboundMessage = Union[InitMessage, FrameMessage, ResetMessage]


class ReadyMessage(BaseModel):
    type: Literal["READY"] = "READY"


class StateMessage(BaseModel):
    type: Literal["STATE"] = "STATE"
    payload: FocusStatePayload


class EventMessage(BaseModel):
    type: Literal["EVENT"] = "EVENT"
    payload: FocusEventPayload


class ResultsPayload(BaseModel):
    timestamp: int
    detections: List[ObjectDetectionResult] = []


class ResultsMessage(BaseModel):
    type: Literal["RESULTS"] = "RESULTS"
    payload: ResultsPayload


class ErrorPayload(BaseModel):
    message: str
    fatal: bool = False


class ErrorMessage(BaseModel):
    type: Literal["ERROR"] = "ERROR"
    payload: ErrorPayload

    @classmethod
    def from_exception(cls, error: BaseException, fatal: bool = False,
                       fallback: str = "analyzer failure") -> "ErrorMessage":
        message = str(error) or fallback
        return cls(payload=ErrorPayload(message=message, fatal=fatal))


OutboundMessage = Union[ReadyMessage, StateMessage, EventMessage, ResultsMessage, ErrorMessage]


def to_wire(message: OutboundMessage) -> str:
    """Serialize an outbound message for the WebSocket client"""
    return message.model_dump_json(by_alias=True, exclude_none=True)
