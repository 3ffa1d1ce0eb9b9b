import logging
import re
import string
from pathlib import Path
from typing import Dict, List, Tuple

from avatar_connect.core.dispatcher import Signal
from avatar_connect.processors.base_processor import BaseProcessor, ProcessorConfigError

logger = logging.getLogger(__name__)

# The "Rewriter". Dictionary and regex substitution on a channel, in place or onto another channel.

# `$1` / `${name}` style group references are accepted in regex files.
_GROUP_REF = re.compile(r"\$(?:\{(\w+)\}|(\d+))")

def _read_lines(path: str) -> List[str]:
    file = Path(path)
    if not file.is_absolute():
        file = Path.cwd() / file
    try:
        text = file.read_text(encoding="utf-8")
    except OSError as e:
        raise ProcessorConfigError(f"Cannot read {file}: {e}") from e
    return [line.strip() for line in text.splitlines() if line.strip()]

def load_dictionary(paths: List[str]) -> List[Tuple[str, str]]:
    """
    Reads `to from` pairs, one per line. Only the first two columns are used,
    so IME-style exports with trailing columns load as they are.
    """
    pairs = []
    for path in paths:
        for line in _read_lines(path):
            columns = line.split()
            if len(columns) < 2:
                logger.warning(f"⚠️ Skipping dictionary line without a 'from' column in {path}: {line!r}")
                continue
            pairs.append((columns[0], columns[1]))
    return pairs

def load_regexes(paths: List[str]) -> List[Tuple[str, re.Pattern]]:
    """Reads `replacement pattern` lines, split on the last space."""
    regexes = []
    for path in paths:
        for line in _read_lines(path):
            replacement, sep, pattern = line.rpartition(" ")
            if not sep:
                logger.warning(f"⚠️ Skipping regex line without a replacement in {path}: {line!r}")
                continue
            try:
                compiled = re.compile(pattern)
            except re.error as e:
                raise ProcessorConfigError(f"Bad pattern {pattern!r} in {path}: {e}") from e
            regexes.append((_GROUP_REF.sub(lambda m: f"\\g<{m.group(1) or m.group(2)}>", replacement), compiled))
            logger.debug(f"{pattern} -> {replacement}")
    return regexes

def phonetic_transform(content: str, phonetic: Dict[str, str]) -> str:
    """
    Pads ASCII punctuation with spaces, swaps every whitespace-separated token
    found in `phonetic`, then drops all spaces.
    """
    for c in set(content):
        if c in string.punctuation:
            content = content.replace(c, f" {c} ")
    for word in content.split():
        reading = phonetic.get(word)
        if reading is not None:
            content = content.replace(word, reading)
    return content.replace(" ", "")

class ModifyProcessor(BaseProcessor):
    """
    Applies, in order: the phonetic token dictionary, the literal dictionary
    and the regex replacements.

    When channel_from equals channel_to the Datum is rewritten in place while
    holding the log lock, so only processors registered after this one see the
    new content. Otherwise a new Datum with the same flags is pushed on
    channel_to after the lock is released.
    """

    FEATURE = "modify"

    def __init__(self, conf, dispatcher):
        super().__init__(conf, dispatcher)

        self.phonetic: Dict[str, str] = {
            source: reading for reading, source in load_dictionary(conf.phonetic_dictionary_files)
        }

        # (to, from)
        self.dictionary: List[Tuple[str, str]] = load_dictionary(conf.dictionary_files)
        if conf.sort_dictionary and conf.sort_dictionary.lower() == "length":
            self.dictionary.sort(key=lambda pair: len(pair[1]), reverse=True)

        self.regexes: List[Tuple[str, re.Pattern]] = load_regexes(conf.regex_files)

        logger.info(
            f"📖 [{self.name}] {len(self.phonetic)} phonetic, {len(self.dictionary)} literal, "
            f"{len(self.regexes)} regex rule(s)."
        )

    def validate(self):
        self.require("channel_to")

    @property
    def in_place(self) -> bool:
        return self.channel_from == self.channel_to

    def transform(self, content: str) -> str:
        if self.phonetic:
            content = phonetic_transform(content, self.phonetic)
        for to, source in self.dictionary:
            content = content.replace(source, to)
        for replacement, pattern in self.regexes:
            content = pattern.sub(replacement, content)
        return content

    async def process(self, datum_id: int) -> Signal:
        async with self.log.lock:
            index = self.log.index_of(datum_id)
            if index is None:
                logger.warning(f"⚠️ [{self.name}] Datum #{datum_id} is no longer in the log.")
                return Signal.CONTINUE

            datum = self.log[index]
            content = self.transform(datum.content)

            if self.in_place:
                logger.debug(f"✏️ [{self.name}] #{datum_id}: {datum.content!r} -> {content!r}")
                datum.content = content
                return Signal.CONTINUE

            flags = set(datum.flags)

        logger.debug(f"✏️ [{self.name}] #{datum_id} -> [{self.channel_to}]: {content!r}")
        self.run_in_background(self.dispatcher.push(self.channel_to, content, flags=flags))
        return Signal.CONTINUE
