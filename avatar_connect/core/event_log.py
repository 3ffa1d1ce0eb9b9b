import asyncio
import json
import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import ClassVar, Deque, Iterable, List, Optional, Set, Union

from pydantic import BaseModel, Field, field_serializer

from avatar_connect.core.ids import IdGenerator

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 256

# The single source of truth. Every producer and processor talks through this ring.

class Datum(BaseModel):
    """
    One record on a channel.
    `id` is fixed at construction; `content` may only be rewritten in place
    by a same-channel modify processor.
    """

    FLAG_IS_FINAL: ClassVar[str] = "is_final"

    id: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    channel: str
    content: str
    flags: Set[str] = Field(default_factory=set)

    @field_serializer("flags")
    def _sorted_flags(self, flags: Set[str]) -> List[str]:
        return sorted(flags)

    @property
    def is_final(self) -> bool:
        return self.FLAG_IS_FINAL in self.flags

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags

    def with_flag(self, flag: str) -> "Datum":
        self.flags.add(flag)
        return self

    def with_flag_if(self, flag: str, condition: bool) -> "Datum":
        if condition:
            self.flags.add(flag)
        return self


class EventLog:
    """
    Append-only bounded log of Datums.

    GUARANTEES:
    1. Ids strictly increase in insertion order.
    2. At most `capacity` entries are kept; the oldest are evicted silently.
    3. Writers never block; there is no backpressure.
    4. Lookups scan from the tail so the most recent entry wins.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, ids: Optional[IdGenerator] = None):
        if capacity < 1:
            raise ValueError(f"Event log capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.ids = ids or IdGenerator()
        self._entries: Deque[Datum] = deque()
        # Exclusive section for lookup-plus-transform writers.
        # Lock order: log lock before any processor rate-limiter lock.
        self.lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))

    @property
    def last_id(self) -> int:
        return self._entries[-1].id if self._entries else 0

    # --- Writes ---

    def create(self, channel: str, content: str, flags: Iterable[str] = ()) -> Datum:
        """Builds a Datum with the next id. Does not insert it."""
        return Datum(id=self.ids.next(), channel=channel, content=content, flags=set(flags))

    def append_datum(self, datum: Datum) -> Datum:
        self._entries.append(datum)
        while len(self._entries) > self.capacity:
            evicted = self._entries.popleft()
            logger.debug(f"🗑️ Evicted datum #{evicted.id} [{evicted.channel}] (capacity {self.capacity})")
        return datum

    def append(self, channel: str, content: str, flags: Iterable[str] = ()) -> int:
        """Allocates an id, stamps the time, inserts at the tail. Returns the id."""
        return self.append_datum(self.create(channel, content, flags)).id

    # --- Reads ---

    def find_by_id(self, datum_id: int) -> Optional[Datum]:
        for datum in reversed(self._entries):
            if datum.id == datum_id:
                return datum
        return None

    def index_of(self, datum_id: int) -> Optional[int]:
        """Absolute position of the most recent entry carrying `datum_id`."""
        for rev_index, datum in enumerate(reversed(self._entries)):
            if datum.id == datum_id:
                return len(self._entries) - rev_index - 1
        return None

    def __getitem__(self, index: int) -> Datum:
        return self._entries[index]

    def window(self, trigger_id: int, channels: Iterable[str], limit: int,
               require_final: bool = True) -> List[Datum]:
        """
        Conversation context ending at `trigger_id` (inclusive).
        Walks backward, keeps entries on `channels`, returns up to `limit`
        of them in chronological order. Empty if the trigger was evicted.
        """
        channels = set(channels)
        picked: List[Datum] = []
        found = False
        for datum in reversed(self._entries):
            if not found:
                if datum.id != trigger_id:
                    continue
                found = True
            if len(picked) >= limit:
                break
            if require_final and not datum.is_final:
                continue
            if datum.channel in channels:
                picked.append(datum)
        picked.reverse()
        return picked

    def query(self, channel: str, after_id: Optional[int] = None,
              after_timestamp: Optional[datetime] = None,
              count: Optional[int] = None) -> List[Datum]:
        """
        Egress read for transports.
        Returns Datums on `channel` newer than the given cursor(s), at most the
        `count` most recent of them, in chronological order.
        """
        result = [d for d in self._entries if d.channel == channel]
        if after_id is not None:
            result = [d for d in result if d.id > after_id]
        if after_timestamp is not None:
            if after_timestamp.tzinfo is None:
                after_timestamp = after_timestamp.replace(tzinfo=timezone.utc)
            result = [d for d in result if d.created_at > after_timestamp]
        if count is not None:
            result = result[-count:] if count > 0 else []
        return result

    # --- Persistence ---

    def dumps(self, pretty: bool = False) -> str:
        payload = {
            "capacity": self.capacity,
            "data": [d.model_dump(mode="json") for d in self._entries],
        }
        return json.dumps(payload, ensure_ascii=False, indent=1 if pretty else None)

    def loads(self, text: str):
        """
        Replaces the entries with a snapshot and moves the id generator past
        the largest restored id. Entries beyond capacity are dropped from the head.
        """
        payload = json.loads(text)
        entries = [Datum.model_validate(item) for item in payload.get("data", [])]
        self._entries = deque(entries)
        while len(self._entries) > self.capacity:
            self._entries.popleft()

        max_id = max((d.id for d in entries), default=0)
        if max_id > self.ids.last:
            self.ids.reset(max_id)
        logger.info(f"♻️ Restored {len(self._entries)} datum(s); next id is {self.ids.last + 1}")

    def save(self, path: Union[str, Path], pretty: bool = False):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(self.dumps(pretty), encoding="utf-8")
        tmp_path.replace(path)
        logger.debug(f"💾 Saved {len(self._entries)} datum(s) to {path}")

    def load(self, path: Union[str, Path]) -> bool:
        """Returns False (and leaves the log untouched) when the file is missing."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"⚠️ State data file {path} does not exist. Starting with an empty log.")
            return False
        self.loads(path.read_text(encoding="utf-8"))
        return True
