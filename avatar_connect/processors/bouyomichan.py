import asyncio
import logging
from pathlib import Path
from typing import List

from avatar_connect.core.dispatcher import Signal
from avatar_connect.processors.base_processor import BaseProcessor, ProcessorConfigError

logger = logging.getLogger(__name__)

# The "Voice". Hands finalized text to BouyomiChan through its RemoteTalk executable.

class BouyomichanProcessor(BaseProcessor):
    """Spawns `RemoteTalk /T <text> <speed> <tone> <volume> <voice> [address port]` per finalized Datum."""

    FEATURE = "bouyomichan"

    def validate(self):
        self.require("remote_talk_path")
        if not Path(self.conf.remote_talk_path).exists():
            raise ProcessorConfigError(f"[{self.name}] remote_talk_path does not exist: {self.conf.remote_talk_path}")

    def build_args(self, content: str) -> List[str]:
        conf = self.conf
        args = [
            "/T",
            content,
            str(conf.speed if conf.speed is not None else -1),
            str(conf.tone if conf.tone is not None else -1),
            str(conf.volume if conf.volume is not None else -1),
            str(conf.voice if conf.voice is not None else 0),
        ]
        if conf.address and conf.port is not None:
            args += [conf.address, str(conf.port)]
        return args

    async def process(self, datum_id: int) -> Signal:
        datum = self.lookup(datum_id)
        if datum is None or not datum.is_final:
            return Signal.CONTINUE

        self.run_in_background(self.talk(self.build_args(datum.content)))
        return Signal.CONTINUE

    async def talk(self, args: List[str]):
        logger.debug(f"🔊 [{self.name}] {self.conf.remote_talk_path} {args}")
        try:
            proc = await asyncio.create_subprocess_exec(self.conf.remote_talk_path, *args)
        except OSError as e:
            logger.error(f"❌ [{self.name}] Could not start RemoteTalk: {e}")
            return
        returncode = await proc.wait()
        if returncode != 0:
            logger.warning(f"⚠️ [{self.name}] RemoteTalk exited with {returncode}")
