from types import SimpleNamespace
from typing import List
from unittest.mock import AsyncMock

import pytest

from avatar_connect.core.config import ProcessorConf
from avatar_connect.core.dispatcher import Dispatcher, Signal
from avatar_connect.core.event_log import EventLog
from avatar_connect.processors.base_processor import BaseProcessor


class RecordingProcessor(BaseProcessor):
    """Records every id it is handed and answers with a fixed signal."""

    FEATURE = "recording"

    def __init__(self, conf, dispatcher, signal: Signal = Signal.CONTINUE, fail: bool = False):
        super().__init__(conf, dispatcher)
        self.signal = signal
        self.fail = fail
        self.seen: List[int] = []
        self.contents: List[str] = []

    async def process(self, datum_id: int) -> Signal:
        self.seen.append(datum_id)
        datum = self.log.find_by_id(datum_id)
        self.contents.append(datum.content if datum else None)
        if self.fail:
            raise RuntimeError("boom")
        return self.signal


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_completion(content):
    """Mimics the shape of an openai ChatCompletion."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def make_chat_client(reply="Hi there!"):
    create = AsyncMock(return_value=make_completion(reply))
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def conf(**fields) -> ProcessorConf:
    return ProcessorConf(**fields)


@pytest.fixture
def log():
    return EventLog(capacity=16)


@pytest.fixture
def dispatcher(log):
    return Dispatcher(log)


def recorder(dispatcher, channel="user", **kwargs) -> RecordingProcessor:
    processor = RecordingProcessor(conf(id=f"rec{len(dispatcher.processors)}", channel_from=channel), dispatcher, **kwargs)
    dispatcher.register(processor)
    return processor


def contents_on(log, channel):
    return [d.content for d in log if d.channel == channel]
