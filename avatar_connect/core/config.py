import logging
import tomllib
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

class SystemConfig(BaseSettings):
    """
    Global configuration for the Avatar Connect runtime.

    Loads values from:
    1. Environment Variables (prefixed with VAC_)
    2. .env file in the working directory
    3. Default values defined here
    """

    # --- General ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = "avatar_connect.log"

    # Processor definitions ([[processors]] tables)
    CONF_PATH: Path = Path("avatar_connect.toml")

    # --- Event Log (State Data) ---
    STATE_DATA_PATH: Optional[Path] = None
    STATE_DATA_CAPACITY: int = 256
    STATE_DATA_AUTO_SAVE: bool = False
    STATE_DATA_PRETTY: bool = False

    # --- Web UI (Transport) ---
    WEB_UI_HOST: str = "127.0.0.1"
    WEB_UI_PORT: int = 57000

    # --- AI ---
    OPENAI_API_KEY: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="VAC_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

# Singleton Instance
settings = SystemConfig()


# --- Processor records ---

class ContentWithChannel(BaseModel):
    channel: str
    content: str = ""

class CommandSet(BaseModel):
    """A named macro: nested pre/post sets around literal channel injections."""
    name: str
    pre: List[str] = Field(default_factory=list)
    post: List[str] = Field(default_factory=list)
    channel_contents: List[ContentWithChannel] = Field(default_factory=list)

class FineTuningConf(BaseModel):
    """
    Fine-tuning options for an openai-chat processor.
    A bare path string in the config file is shorthand for `train_path` only.
    """
    train_path: str
    validation_path: Optional[str] = None
    model: Optional[str] = None
    suffix: Optional[str] = None

class ProcessorConf(BaseModel):
    """
    One [[processors]] record. `feature` selects the processor variant;
    the remaining fields are read only by the variants that need them.
    Immutable for the lifetime of the processor built from it.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Common
    id: Optional[str] = None
    feature: Optional[str] = None
    is_enabled: bool = True
    group: List[str] = Field(default_factory=list)
    channel_from: Optional[str] = None
    channel_to: Optional[str] = None

    # command
    through_if_not_command: Optional[bool] = None
    response_mod: List[List[str]] = Field(default_factory=list)
    set: List[CommandSet] = Field(default_factory=list)

    # modify
    phonetic_dictionary_files: List[str] = Field(default_factory=list)
    dictionary_files: List[str] = Field(default_factory=list)
    regex_files: List[str] = Field(default_factory=list)
    sort_dictionary: Optional[str] = None

    # openai-chat
    api_key: Optional[str] = None
    model: Optional[str] = None
    custom_instructions: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    n: Optional[int] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    user: Optional[str] = None
    memory_capacity: Optional[int] = None
    force_activate_regex_pattern: Optional[str] = None
    ignore_regex_pattern: Optional[str] = None
    min_interval_in_secs: Optional[float] = None
    remove_chars: Optional[str] = None
    fine_tuning: Optional[Union[str, FineTuningConf]] = None

    # gas-translation
    script_id: Optional[str] = None
    translate_from: Optional[str] = None
    translate_to: Optional[str] = None
    process_incomplete_input: Optional[bool] = None

    # bouyomichan
    remote_talk_path: Optional[str] = None
    address: Optional[str] = None
    port: Optional[int] = None
    voice: Optional[int] = None
    speed: Optional[int] = None
    tone: Optional[int] = None
    volume: Optional[int] = None

    @property
    def label(self) -> str:
        """Human-readable name used in logs."""
        return self.id or f"{self.feature}:{self.channel_from}->{self.channel_to}"

    def fine_tuning_conf(self) -> Optional[FineTuningConf]:
        if self.fine_tuning is None:
            return None
        if isinstance(self.fine_tuning, str):
            return FineTuningConf(train_path=self.fine_tuning)
        return self.fine_tuning


def parse_processor_confs(records: List[dict]) -> List[ProcessorConf]:
    """
    Validates raw records. An invalid record is logged and skipped so the
    remaining processors can still start.
    """
    confs = []
    for i, record in enumerate(records):
        try:
            confs.append(ProcessorConf.model_validate(record))
        except ValidationError as e:
            logger.warning(f"⚠️ Skipping processor record #{i + 1}: {e}")
    return confs

def load_processor_confs(path: Union[str, Path]) -> List[ProcessorConf]:
    """Reads the [[processors]] tables of a TOML file."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"⚠️ Processor config not found at {path}. Starting with no processors.")
        return []

    with open(path, "rb") as f:
        data = tomllib.load(f)

    confs = parse_processor_confs(data.get("processors", []))
    logger.info(f"📄 Loaded {len(confs)} processor record(s) from {path}")
    return confs
