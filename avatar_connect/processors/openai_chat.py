import asyncio
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from avatar_connect.core.config import ProcessorConf, settings
from avatar_connect.core.dispatcher import Signal
from avatar_connect.core.event_log import Datum
from avatar_connect.processors.base_processor import BaseProcessor, ProcessorConfigError
from avatar_connect.processors.fine_tuning import append_corpus

logger = logging.getLogger(__name__)

# The "Mouth". Decides whether a finalized utterance deserves a reply, then asks the chat model for one.

ENV_OPENAI_API_KEY = "VAC_OPENAI_API_KEY"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MEMORY_CAPACITY = 4
DEFAULT_REMOVE_CHARS = "\n\r\t"

QUOTA_KEYWORDS = ("billing", "quota", "limit", "exceeded")
USAGE_URL = "https://platform.openai.com/account/usage"

def resolve_api_key(conf: ProcessorConf) -> Optional[str]:
    """The environment wins over the config file."""
    if settings.OPENAI_API_KEY:
        return settings.OPENAI_API_KEY
    if conf.api_key:
        logger.warning(
            f"⚠️ [{conf.label}] api_key is set directly in the config file. Take care when sharing it, "
            f"or set {ENV_OPENAI_API_KEY} instead."
        )
    return conf.api_key

def make_request_template(conf: ProcessorConf) -> Dict[str, Any]:
    """Model, sampling parameters and the optional system instruction. Unset values are omitted."""
    template: Dict[str, Any] = {"model": conf.model or DEFAULT_MODEL}
    for field in ("max_tokens", "temperature", "top_p", "n", "presence_penalty", "frequency_penalty", "user"):
        value = getattr(conf, field)
        if value is not None:
            template[field] = value

    messages = []
    if conf.custom_instructions:
        messages.append({"role": "system", "content": conf.custom_instructions})
    template["messages"] = messages
    return template

def _compile(pattern: Optional[str], label: str, field: str):
    if pattern is None:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ProcessorConfigError(f"[{label}] {field} is not a valid pattern: {e}") from e

class OpenAIChatProcessor(BaseProcessor):
    """
    Conversational AI consumer.

    Gating runs inside the dispatch chain, in this order:
    1. Only finalized input is considered.
    2. Context: the last `memory_capacity` finalized Datums on channel_from or
       channel_to, ending at the trigger.
    3. Ignore gate: `ignore_regex_pattern` matching the trimmed trigger drops it.
    4. Throttle gate: with `min_interval_in_secs` set, a trigger that does not
       match `force_activate_regex_pattern` is dropped when the previous
       activation was too recent.

    The completion call and everything after it run as a background task, so
    the chain never waits on the network.
    """

    FEATURE = "openai-chat"

    def __init__(self, conf: ProcessorConf, dispatcher, client: Optional[AsyncOpenAI] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(conf, dispatcher)

        if client is None:
            api_key = resolve_api_key(conf)
            if not api_key:
                raise ProcessorConfigError(
                    f"[{self.name}] OpenAI API key is not set. Set {ENV_OPENAI_API_KEY} or api_key in the config file."
                )
            client = AsyncOpenAI(api_key=api_key)
        self.client = client

        self.request_template = make_request_template(conf)
        self.memory_capacity = conf.memory_capacity or DEFAULT_MEMORY_CAPACITY
        self.remove_chars = DEFAULT_REMOVE_CHARS if conf.remove_chars is None else conf.remove_chars
        self.ignore_regex = _compile(conf.ignore_regex_pattern, self.name, "ignore_regex_pattern")
        self.force_activate_regex = _compile(conf.force_activate_regex_pattern, self.name, "force_activate_regex_pattern")
        self.min_interval = conf.min_interval_in_secs
        self.fine_tuning = conf.fine_tuning_conf()

        self.clock = clock
        self.last_activated: Optional[float] = None
        # Taken after (never while waiting for) the log lock.
        self._throttle_lock = asyncio.Lock()

    def validate(self):
        self.require("channel_to")

    # --- Gating ---

    def is_ignored(self, content: str) -> bool:
        return self.ignore_regex is not None and self.ignore_regex.search(content) is not None

    def is_forced(self, content: str) -> bool:
        return self.force_activate_regex is not None and self.force_activate_regex.search(content) is not None

    async def pass_throttle(self, content: str) -> bool:
        """
        Returns True and records the activation time when a reply is allowed now.
        The interval only gates input when a force pattern is configured and misses.
        """
        if self.min_interval is None or self.force_activate_regex is None or self.is_forced(content):
            return True

        async with self._throttle_lock:
            now = self.clock()
            if self.last_activated is not None and now - self.last_activated < self.min_interval:
                logger.debug(f"⏳ [{self.name}] {now - self.last_activated:.1f}s since last reply. Skipping.")
                return False
            self.last_activated = now
            return True

    def to_messages(self, sources: List[Datum]) -> List[Dict[str, str]]:
        messages = []
        for datum in sources:
            if datum.channel == self.channel_from:
                role = "user"
            elif datum.channel == self.channel_to:
                role = "assistant"
            else:
                role = "system"
            messages.append({"role": role, "content": datum.content})
        return messages

    async def process(self, datum_id: int) -> Signal:
        datum = self.lookup(datum_id)
        if datum is None:
            return Signal.CONTINUE
        if not datum.is_final:
            logger.debug(f"[{self.name}] #{datum_id} is not final. Skipping.")
            return Signal.CONTINUE

        sources = self.log.window(datum_id, [self.channel_from, self.channel_to], self.memory_capacity)
        trigger = datum.content.strip()

        if self.is_ignored(trigger):
            logger.debug(f"🙈 [{self.name}] Ignored #{datum_id}: {trigger!r}")
            return Signal.CONTINUE

        if not await self.pass_throttle(trigger):
            return Signal.CONTINUE

        request = dict(self.request_template)
        request["messages"] = self.request_template["messages"] + self.to_messages(sources)

        self.run_in_background(self.reply(datum_id, request, datum.content))
        return Signal.CONTINUE

    # --- Reply ---

    async def reply(self, datum_id: int, request: Dict[str, Any], user_content: str):
        # The request carries no key, but it can carry private conversation. Keep it at debug.
        logger.debug(f"🧠 [{self.name}] Requesting a completion for #{datum_id} ({len(request['messages'])} message(s))")
        try:
            response = await self.client.chat.completions.create(**request)
        except OpenAIError as e:
            logger.error(f"❌ [{self.name}] Completion request failed: {e}")
            if any(keyword in str(e).lower() for keyword in QUOTA_KEYWORDS):
                logger.error(
                    f"💳 [{self.name}] The failure mentions billing or quota. Check your plan and usage: {USAGE_URL}"
                )
            return

        if not response.choices:
            logger.warning(f"⚠️ [{self.name}] The model answered with no choices.")
            return
        content = response.choices[0].message.content
        if content is None:
            logger.warning(f"⚠️ [{self.name}] The model answered with an empty message.")
            return

        for c in self.remove_chars:
            content = content.replace(c, "")

        if self.fine_tuning is not None:
            try:
                await asyncio.to_thread(
                    append_corpus, self.fine_tuning.train_path, user_content, content, self.conf.custom_instructions
                )
            except OSError as e:
                logger.error(f"❌ [{self.name}] Could not append to {self.fine_tuning.train_path}: {e}")

        logger.info(f"💬 [{self.name}] Reply to #{datum_id}: {content}")
        await self.emit(self.channel_to, content, flags=[f"{self.FEATURE}({self.channel_from}:{datum_id})"])
