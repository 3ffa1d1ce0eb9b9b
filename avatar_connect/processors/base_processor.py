import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

from avatar_connect.core.config import ProcessorConf
from avatar_connect.core.dispatcher import Signal
from avatar_connect.core.event_log import Datum

if TYPE_CHECKING:
    from avatar_connect.core.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

# The Abstract Base Class that standardizes configuration checks, lifecycle and background work for all processors.

class ProcessorConfigError(ValueError):
    """A processor record is missing a required field or points at something unusable."""

class BaseProcessor(ABC):
    """
    Abstract Base Class for all Processors.
    A processor reacts to Datums pushed on its source channel and may push
    new Datums back through the Dispatcher.
    """

    FEATURE: str = ""

    def __init__(self, conf: ProcessorConf, dispatcher: "Dispatcher"):
        self.conf = conf
        self.dispatcher = dispatcher
        self.log = dispatcher.log
        self.name = f"{self.FEATURE}:{conf.id}" if conf.id else self.FEATURE
        self.enabled = conf.is_enabled
        self._running = False
        self._tasks: List[asyncio.Task] = []

        self.require("channel_from")
        self.validate()

    # --- Configuration ---

    def require(self, *fields: str):
        """Raises ProcessorConfigError for the first missing field."""
        for field in fields:
            if getattr(self.conf, field) is None:
                raise ProcessorConfigError(f"[{self.name}] '{field}' is not set: {self.conf.label}")

    def validate(self):
        """Feature-specific checks. Raise ProcessorConfigError when unusable."""

    @property
    def channel_from(self) -> str:
        return self.conf.channel_from

    @property
    def channel_to(self) -> Optional[str]:
        return self.conf.channel_to

    @property
    def groups(self) -> List[str]:
        return self.conf.group

    def matches(self, channel: str) -> bool:
        return self.conf.channel_from == channel

    # --- Processing ---

    @abstractmethod
    async def process(self, datum_id: int) -> Signal:
        """
        Handles the Datum with `datum_id`. Implementations re-read the Event
        Log by id so in-place edits made earlier in the chain are visible.
        """

    def lookup(self, datum_id: int) -> Optional[Datum]:
        datum = self.log.find_by_id(datum_id)
        if datum is None:
            logger.warning(
                f"⚠️ [{self.name}] Datum #{datum_id} is no longer in the log. "
                f"Consider raising STATE_DATA_CAPACITY."
            )
        return datum

    # --- Lifecycle ---

    async def start(self):
        """Lifecycle hook: Start the processor."""
        logger.info(f"🎬 [{self.name}] Starting processor...")
        self._running = True
        await self.setup()
        logger.info(f"✅ [{self.name}] Started ({self.channel_from} -> {self.channel_to}).")

    async def stop(self):
        """
        Lifecycle hook: Stop the processor.
        Background work already in flight is left to finish on its own.
        """
        logger.info(f"🛑 [{self.name}] Stopping processor...")
        self._running = False
        if self._tasks:
            logger.info(f"[{self.name}] {len(self._tasks)} background task(s) still running.")
        await self.cleanup()
        logger.info(f"👋 [{self.name}] Stopped.")

    async def setup(self):
        """Initialize resources (clients, files) here."""
        pass

    async def cleanup(self):
        """Release resources here."""
        pass

    def run_in_background(self, coroutine) -> asyncio.Task:
        """Helper to fire-and-forget async tasks within the processor scope."""
        task = asyncio.create_task(self._guard(coroutine))
        self._tasks.append(task)
        task.add_done_callback(self._tasks.remove)
        return task

    async def _guard(self, coroutine):
        try:
            await coroutine
        except Exception as e:
            logger.error(f"❌ [{self.name}] Background task failed: {e}", exc_info=True)

    async def join(self):
        """Waits until no background task of this processor is pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def emit(self, channel: str, content: str, flags=()) -> Datum:
        """Pushes a finalized Datum back through the Dispatcher."""
        return await self.dispatcher.push(channel, content, is_final=True, flags=flags)
