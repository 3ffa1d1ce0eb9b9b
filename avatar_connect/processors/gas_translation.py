import logging
from urllib.parse import quote

import aiohttp

from avatar_connect.core.dispatcher import Signal
from avatar_connect.processors.base_processor import BaseProcessor

logger = logging.getLogger(__name__)

# The "Interpreter". Translates a channel through a Google Apps Script web app.

GAS_URL_TEMPLATE = (
    "https://script.google.com/macros/s/{script_id}/exec"
    "?trans_sourcelang={translate_from}&target={translate_to}&text="
)

class GasTranslationProcessor(BaseProcessor):
    """
    Sends finalized text to a deployed Apps Script translator and pushes the
    response body on channel_to. Partial input is translated too when
    `process_incomplete_input` is set.
    """

    FEATURE = "gas-translation"

    def __init__(self, conf, dispatcher):
        super().__init__(conf, dispatcher)
        self.url_base = GAS_URL_TEMPLATE.format(
            script_id=conf.script_id,
            translate_from=conf.translate_from,
            translate_to=conf.translate_to,
        )
        self.timeout = aiohttp.ClientTimeout(total=30)

    def validate(self):
        self.require("channel_to", "script_id", "translate_from", "translate_to")
        logger.info(
            f"🌐 [{self.name}] {self.channel_from} -> {self.channel_to} "
            f"({self.conf.translate_from} -> {self.conf.translate_to})"
        )

    async def process(self, datum_id: int) -> Signal:
        datum = self.lookup(datum_id)
        if datum is None:
            return Signal.CONTINUE
        if not datum.is_final and not self.conf.process_incomplete_input:
            return Signal.CONTINUE

        self.run_in_background(self.translate_and_emit(datum_id, datum.content))
        return Signal.CONTINUE

    async def translate(self, text: str) -> str:
        url = self.url_base + quote(text, safe="")
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.text()

    async def translate_and_emit(self, datum_id: int, text: str):
        try:
            translated = await self.translate(text)
        except aiohttp.ClientError as e:
            logger.error(f"❌ [{self.name}] Translation of #{datum_id} failed: {e}")
            return

        logger.debug(f"🌐 [{self.name}] #{datum_id}: {text!r} -> {translated!r}")
        flag = f"{self.FEATURE}({self.channel_from}:{datum_id},{self.conf.translate_from}/{self.conf.translate_to})"
        await self.emit(self.channel_to, translated, flags=[flag])
