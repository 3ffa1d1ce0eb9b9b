import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Union

from avatar_connect.core.event_log import Datum, EventLog

if TYPE_CHECKING:
    from avatar_connect.processors.base_processor import BaseProcessor

logger = logging.getLogger(__name__)

class Signal(Enum):
    """Fan-out control returned by a processor for one Datum."""
    CONTINUE = "continue"
    STOP = "stop"

# The in-process Event Bus. Appends to the log, then fans the new Datum out to the processors.
# It implements the Observer Pattern with an ordered, short-circuitable chain.

class Dispatcher:
    """
    Owns the Event Log and the ordered processor list.

    Fan-out for one Datum is strictly sequential in registration order.
    Processors that need slow external calls detach them as background tasks,
    so Datums they push later are ordered only by their log ids.
    """

    def __init__(self, log: EventLog, state_data_path: Optional[Union[str, Path]] = None,
                 auto_save: bool = False, pretty: bool = False):
        self.log = log
        self.state_data_path = Path(state_data_path) if state_data_path else None
        self.auto_save = auto_save
        self.pretty = pretty
        self._processors: List["BaseProcessor"] = []
        self._stopping: Optional[asyncio.Event] = None

    # --- Registry ---

    @property
    def processors(self) -> List["BaseProcessor"]:
        return list(self._processors)

    def register(self, processor: "BaseProcessor"):
        self._processors.append(processor)
        logger.debug(f"🧩 Registered processor [{processor.name}] on [{processor.channel_from}]")

    def set_group_enabled(self, group: str, enabled: bool) -> int:
        """Flips the runtime flag of every processor tagged with `group`. Returns the count."""
        count = 0
        for processor in self._processors:
            if group in processor.groups:
                processor.enabled = enabled
                count += 1
        state = "enabled" if enabled else "disabled"
        logger.info(f"🔀 Group '{group}': {count} processor(s) {state}.")
        return count

    # --- Ingress ---

    async def push(self, channel: str, content: str, is_final: bool = False,
                   flags: Iterable[str] = ()) -> Datum:
        """The sole write entry point for producers and processors."""
        datum = self.log.create(channel, content, flags).with_flag_if(Datum.FLAG_IS_FINAL, is_final)
        return await self.push_datum(datum)

    async def push_datum(self, datum: Datum) -> Datum:
        async with self.log.lock:
            self.log.append_datum(datum)
        logger.debug(f"📥 [{datum.channel}] #{datum.id} final={datum.is_final}: {datum.content!r}")

        await self._fan_out(datum.id, datum.channel)

        if self.auto_save:
            self._auto_save()
        return datum

    async def _fan_out(self, datum_id: int, channel: str):
        for processor in self._processors:
            if not processor.enabled or not processor.matches(channel):
                continue
            try:
                signal = await processor.process(datum_id)
            except Exception as e:
                logger.error(f"❌ [{processor.name}] Failed on datum #{datum_id}: {e}", exc_info=True)
                continue

            if signal is Signal.STOP:
                logger.debug(f"⛔ [{processor.name}] Stopped the chain for datum #{datum_id}.")
                break

    # --- Persistence ---

    def save(self) -> bool:
        """Persists the log to the configured path. Returns False when no path is set."""
        if self.state_data_path is None:
            logger.warning("⚠️ STATE_DATA_PATH is not set. Nothing was saved.")
            return False
        self.log.save(self.state_data_path, pretty=self.pretty)
        return True

    async def load(self) -> bool:
        """Replaces the live log with the snapshot at the configured path."""
        if self.state_data_path is None:
            logger.warning("⚠️ STATE_DATA_PATH is not set. Nothing was loaded.")
            return False
        async with self.log.lock:
            return self.log.load(self.state_data_path)

    def _auto_save(self):
        try:
            self.save()
        except (OSError, ValueError) as e:
            logger.error(f"❌ Auto-save failed: {e}")

    # --- Shutdown ---

    @property
    def stopping(self) -> asyncio.Event:
        if self._stopping is None:
            self._stopping = asyncio.Event()
        return self._stopping

    def request_shutdown(self):
        logger.info("⚠️ Shutdown requested.")
        self.stopping.set()
