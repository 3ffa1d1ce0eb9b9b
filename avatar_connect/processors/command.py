import logging
from typing import Dict, List, Optional, Tuple

from avatar_connect.core.config import CommandSet
from avatar_connect.core.dispatcher import Signal
from avatar_connect.processors.base_processor import BaseProcessor

logger = logging.getLogger(__name__)

# The "Operator Console". Consumes slash-commands before they reach chat or TTS, and expands macro sets.

COMMAND_SIGIL = "/"
MAX_SET_DEPTH = 16

DEFAULT_MESSAGES: Dict[str, str] = {
    "disable": "Disabled processors in group {A}.",
    "enable": "Enabled processors in group {A}.",
    "reload": "Reloaded settings of processors in group {A}.",
    "set": "Running set {A}.",
    "set:error": "Set {A} failed.",
    "_": "Unknown or malformed command: {A}",
}

class CommandSetError(LookupError):
    """A set name is unknown, or expanding it would loop."""

def parse_command(content: str) -> Optional[Tuple[str, List[str]]]:
    """
    Splits '/name arg1 arg2' into ('name', ['arg1', 'arg2']).
    Returns None when the content does not start with the sigil.
    """
    if not content.startswith(COMMAND_SIGIL):
        return None
    parts = content.lstrip(COMMAND_SIGIL).split(" ")
    return parts[0], parts[1:]

class CommandProcessor(BaseProcessor):
    """
    Intercepts finalized slash-commands on its source channel.

    Built-ins:
    - /quit              stop the runtime
    - /enable <group>    enable processors tagged with <group>
    - /disable <group>   disable processors tagged with <group>
    - /reload [group]    acknowledged only
    - /set <name>        expand the named CommandSet

    Command-shaped input always stops the chain. Other input stops it too,
    unless `through_if_not_command` lets it pass to later processors.
    """

    FEATURE = "command"

    def __init__(self, conf, dispatcher):
        super().__init__(conf, dispatcher)
        self.sets: Dict[str, CommandSet] = {s.name: s for s in conf.set}
        self.templates: Dict[str, str] = {}
        for entry in conf.response_mod:
            if len(entry) >= 2:
                self.templates.setdefault(entry[0], entry[1])
            else:
                logger.warning(f"⚠️ [{self.name}] Ignoring malformed response_mod entry: {entry}")
        self.if_not_command = Signal.CONTINUE if conf.through_if_not_command else Signal.STOP

    def validate(self):
        if self.conf.channel_to is None:
            logger.info(f"[{self.name}] channel_to is not set; command responses will only be logged.")
        if self.conf.through_if_not_command:
            logger.info(f"[{self.name}] Non-command input passes through to later processors.")

    async def process(self, datum_id: int) -> Signal:
        datum = self.lookup(datum_id)
        if datum is None or not datum.is_final:
            return self.if_not_command

        parsed = parse_command(datum.content)
        if parsed is None:
            logger.debug(f"[{self.name}] Not a command: {datum.content!r}")
            return self.if_not_command

        command, args = parsed
        arg = args[0] if args else ""
        logger.info(f"⌨️ [{self.name}] Command '{command}' args={args}")

        if command == "quit":
            logger.info(f"[{self.name}] /quit received. Shutting down.")
            self.dispatcher.request_shutdown()

        elif command in ("enable", "disable") and arg:
            self.dispatcher.set_group_enabled(arg, command == "enable")
            await self.respond(command, arg)

        elif command == "reload":
            await self.respond("reload", arg)

        elif command == "set" and arg:
            await self.respond("set", arg)
            try:
                await self.activate_set(arg)
            except CommandSetError as e:
                logger.error(f"❌ [{self.name}] Set '{arg}' failed: {e}")
                await self.respond("set:error", arg)

        else:
            logger.warning(f"⚠️ [{self.name}] Unknown or malformed command: {datum.content!r}")
            await self.respond("_", datum.content)

        return Signal.STOP

    async def respond(self, command: str, value: str = ""):
        """Emits the (possibly overridden) message for `command` on channel_to."""
        message = self.templates.get(command, DEFAULT_MESSAGES.get(command, DEFAULT_MESSAGES["_"]))
        message = message.replace("{A}", value)
        if self.channel_to is None:
            logger.info(f"[{self.name}] {message}")
            return
        await self.emit(self.channel_to, message)

    async def activate_set(self, set_name: str, path: Tuple[str, ...] = ()):
        """
        Expands `set_name`: every pre set, then its literal channel contents as
        finalized Datums, then every post set. Failures in nested sets are
        logged and do not stop the outer expansion.

        Raises CommandSetError when the set is unknown, already on the current
        expansion path, or nested deeper than MAX_SET_DEPTH.
        """
        command_set = self.sets.get(set_name)
        if command_set is None:
            raise CommandSetError(f"Set '{set_name}' is not defined")
        if set_name in path:
            raise CommandSetError(f"Set '{set_name}' loops: {' -> '.join(path + (set_name,))}")
        if len(path) >= MAX_SET_DEPTH:
            raise CommandSetError(f"Set '{set_name}' is nested deeper than {MAX_SET_DEPTH}")

        path = path + (set_name,)

        for pre in command_set.pre:
            try:
                await self.activate_set(pre, path)
            except CommandSetError as e:
                logger.error(f"❌ [{self.name}] pre set of '{set_name}' failed: {e}")

        for item in command_set.channel_contents:
            await self.emit(item.channel, item.content)

        for post in command_set.post:
            try:
                await self.activate_set(post, path)
            except CommandSetError as e:
                logger.error(f"❌ [{self.name}] post set of '{set_name}' failed: {e}")
