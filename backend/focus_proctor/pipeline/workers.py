"""Isolated analyzer workers.

Each worker owns one analyzer instance and runs it in its own asyncio task.
At most one frame is queued or in flight per worker: try_submit() refuses
(and the caller drops) any frame offered while the previous one is still
being analyzed, so analysis never backs up behind the camera.
"""

import asyncio
import inspect
import logging
from typing import Callable, List, Optional

import numpy as np

from ..detection.gaze_detector import GazeDetector
from ..detection.object_detector import ObjectDetector
from ..models.messages import (
    ErrorMessage,
    EventMessage,
    FrameMessage,
    InboundMessage,
    InitMessage,
    OutboundMessage,
    ReadyMessage,
    ResetMessage,
    ResultsMessage,
    ResultsPayload,
    StateMessage,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[OutboundMessage], object]


class AnalyzerWorker:
    """Base worker: message loop, single in-flight slot, error reporting"""

    name = "analyzer"
    stop_timeout = 10.0

    def __init__(self, analyzer, on_message: MessageHandler):
        self.analyzer = analyzer
        self.on_message = on_message
        self.ready = False
        self.failed = False
        self._in_flight = False
        self._inbox: "asyncio.Queue[InboundMessage]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._processing: Optional[asyncio.Future] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Spawn the worker task and request model initialisation"""
        if self.running:
            return
        self.ready = False
        self.failed = False
        self._in_flight = False
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-worker")
        self._inbox.put_nowait(InitMessage())

    def try_submit(self, frame: np.ndarray, timestamp: int) -> bool:
        """Offer a frame; returns False when the worker cannot take it right now"""
        if not self.running or not self.ready or self._in_flight:
            return False
        self._in_flight = True
        self._inbox.put_nowait(FrameMessage(frame=frame, timestamp=timestamp))
        return True

    def reset(self):
        """Clear the analyzer's algorithmic state (model stays loaded)"""
        if self.running:
            self._inbox.put_nowait(ResetMessage())
        else:
            self.analyzer.reset()

    async def stop(self):
        """Terminate the worker, discarding any queued frame"""
        task = self._task
        processing = self._processing
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # Inference running in a thread cannot be cancelled; the analyzer must outlive it
        if processing is not None:
            done, _ = await asyncio.wait({processing}, timeout=self.stop_timeout)
            if not done:
                logger.warning(f"{self.name} worker stopped with inference still running")
                processing.cancel()
            elif not processing.cancelled() and processing.exception() is not None:
                logger.debug(f"Discarded in-flight {self.name} result: {processing.exception()}")
        self._processing = None

        while not self._inbox.empty():
            message = self._inbox.get_nowait()
            if isinstance(message, FrameMessage):
                message.release()

        self._in_flight = False
        self.ready = False
        self.analyzer.close()
        logger.info(f"🛑 {self.name} worker stopped")

    async def _run(self):
        while True:
            message = await self._inbox.get()
            if isinstance(message, InitMessage):
                await self._handle_init()
            elif isinstance(message, FrameMessage):
                await self._handle_frame(message)
            elif isinstance(message, ResetMessage):
                self.analyzer.reset()
            else:
                raise TypeError(f"Unknown worker message: {message!r}")

    async def _handle_init(self):
        try:
            await self.analyzer.initialize()
        except Exception as e:
            self.failed = True
            logger.error(f"❌ {self.name} worker failed to initialise: {e}")
            await self._emit(ErrorMessage.from_exception(e, fatal=True, fallback=f"Failed to load {self.name} models"))
            return

        self.ready = True
        logger.info(f"✅ {self.name} worker ready")
        await self._emit(ReadyMessage())

    async def _handle_frame(self, message: FrameMessage):
        self._processing = asyncio.ensure_future(self.process(message.frame, message.timestamp))
        try:
            outputs = await asyncio.shield(self._processing)
        except Exception as e:
            logger.warning(f"{self.name} worker dropped frame {message.timestamp}: {e}")
            await self._emit(ErrorMessage.from_exception(e, fallback=f"{self.name} worker failure"))
            return
        finally:
            message.release()
            self._in_flight = False

        for output in outputs:
            await self._emit(output)

    async def process(self, frame: np.ndarray, timestamp: int) -> List[OutboundMessage]:
        raise NotImplementedError

    async def _emit(self, message: OutboundMessage):
        try:
            result = self.on_message(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error handling {message.type} from {self.name} worker: {e}")


class FocusWorker(AnalyzerWorker):
    """Face-pose analysis: one STATE per frame plus any EVENTs"""

    name = "focus"

    def __init__(self, analyzer: GazeDetector, on_message: MessageHandler):
        super().__init__(analyzer, on_message)

    async def process(self, frame: np.ndarray, timestamp: int) -> List[OutboundMessage]:
        analysis = await self.analyzer.process_frame(frame, timestamp)
        outputs: List[OutboundMessage] = [EventMessage(payload=event) for event in analysis.events]
        outputs.append(StateMessage(payload=analysis.state))
        return outputs


class ObjectWorker(AnalyzerWorker):
    """Object detection: one RESULTS per successful inference"""

    name = "object"

    def __init__(self, analyzer: ObjectDetector, on_message: MessageHandler):
        super().__init__(analyzer, on_message)

    async def process(self, frame: np.ndarray, timestamp: int) -> List[OutboundMessage]:
        detections = await self.analyzer.detect(frame)
        return [ResultsMessage(payload=ResultsPayload(timestamp=timestamp, detections=detections))]
