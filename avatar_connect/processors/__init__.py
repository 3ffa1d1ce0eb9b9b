import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Type

from .base_processor import BaseProcessor, ProcessorConfigError
from .bouyomichan import BouyomichanProcessor
from .command import CommandProcessor, CommandSetError
from .gas_translation import GasTranslationProcessor
from .modify import ModifyProcessor
from .openai_chat import OpenAIChatProcessor

if TYPE_CHECKING:
    from avatar_connect.core.config import ProcessorConf
    from avatar_connect.core.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

FEATURES: Dict[str, Type[BaseProcessor]] = {
    cls.FEATURE: cls
    for cls in (
        CommandProcessor,
        ModifyProcessor,
        OpenAIChatProcessor,
        GasTranslationProcessor,
        BouyomichanProcessor,
    )
}

class UnknownFeatureError(ProcessorConfigError):
    pass

def get_processor(conf: "ProcessorConf", dispatcher: "Dispatcher", **kwargs: Any) -> BaseProcessor:
    """Builds one processor from its record, selected by the lower-cased `feature`."""
    feature = (conf.feature or "").lower()
    cls = FEATURES.get(feature)
    if cls is None:
        raise UnknownFeatureError(f"Unknown processor feature: {conf.feature!r} ({conf.label})")
    return cls(conf, dispatcher, **kwargs)

def build_processors(confs: List["ProcessorConf"], dispatcher: "Dispatcher", strict: bool = False,
                     options: Optional[Dict[str, Dict[str, Any]]] = None) -> List[BaseProcessor]:
    """
    Builds and registers a processor for every record, in record order.

    A record that cannot be built is skipped with a warning so the rest can
    still run. With `strict`, the first such error is raised instead.
    `options` maps a feature name to extra constructor keyword arguments.
    """
    options = options or {}
    processors = []
    for conf in confs:
        if not conf.feature:
            logger.debug(f"Record without a feature skipped: {conf.label}")
            continue
        try:
            processor = get_processor(conf, dispatcher, **options.get(conf.feature.lower(), {}))
        except ProcessorConfigError as e:
            if strict:
                raise
            logger.warning(f"⚠️ Processor skipped: {e}")
            continue

        dispatcher.register(processor)
        processors.append(processor)
        if not processor.enabled:
            logger.info(f"💤 [{processor.name}] Built disabled.")

    logger.info(f"🧩 {len(processors)} processor(s) ready.")
    return processors

__all__ = [
    "FEATURES",
    "BaseProcessor",
    "ProcessorConfigError",
    "UnknownFeatureError",
    "CommandSetError",
    "get_processor",
    "build_processors",
    "CommandProcessor",
    "ModifyProcessor",
    "OpenAIChatProcessor",
    "GasTranslationProcessor",
    "BouyomichanProcessor",
]

'''
Factory for the closed set of processor variants.
A record's `feature` tag selects the class; each class checks its own required fields.
'''
