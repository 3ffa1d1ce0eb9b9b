import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from openai import AsyncOpenAI, OpenAIError

from avatar_connect.core.config import ProcessorConf, load_processor_confs, settings
from avatar_connect.processors.base_processor import ProcessorConfigError
from avatar_connect.processors.fine_tuning import corpus_to_jsonl
from avatar_connect.processors.openai_chat import OpenAIChatProcessor, resolve_api_key

logger = logging.getLogger("FineTune")

# Operator tool. Uploads an openai-chat corpus and runs one fine-tuning job to completion.
# Usage: python -m avatar_connect.fine_tune [processor_id]

DEFAULT_BASE_MODEL = "gpt-3.5-turbo"
TERMINAL_STATUSES = {"succeeded", "failed", "cancelled"}
POLL_INTERVAL_SECS = 10.0
PLAYGROUND_URL = "https://platform.openai.com/playground"

def find_chat_conf(confs: List[ProcessorConf], processor_id: Optional[str] = None) -> ProcessorConf:
    """
    The openai-chat record with `processor_id`, or the first openai-chat record.
    Raises ProcessorConfigError when there is none, or it has no fine-tuning section.
    """
    for conf in confs:
        if (conf.feature or "").lower() != OpenAIChatProcessor.FEATURE:
            continue
        if processor_id is None or conf.id == processor_id:
            if conf.fine_tuning is None:
                raise ProcessorConfigError(f"[{conf.label}] has no fine_tuning section.")
            return conf
    target = f"with id '{processor_id}'" if processor_id else "in the config"
    raise ProcessorConfigError(f"No {OpenAIChatProcessor.FEATURE} processor {target}.")

async def _upload(client: AsyncOpenAI, path: str, system: Optional[str]) -> str:
    content = corpus_to_jsonl(path, system)
    name = Path(path).name
    if not name.lower().endswith(".jsonl"):
        name += ".jsonl"
    uploaded = await client.files.create(file=(name, content.encode("utf-8")), purpose="fine-tune")
    logger.info(f"📤 Uploaded {path} as {uploaded.id}")
    return uploaded.id

async def run_fine_tuning(confs: List[ProcessorConf], processor_id: Optional[str] = None,
                          client: Optional[AsyncOpenAI] = None,
                          poll_interval: float = POLL_INTERVAL_SECS):
    """
    One-shot fine-tuning. Every configuration problem is fatal here.
    Uploaded files are deleted whatever the outcome of the job.
    Returns the final job object.
    """
    conf = find_chat_conf(confs, processor_id)
    ft = conf.fine_tuning_conf()

    if client is None:
        api_key = resolve_api_key(conf)
        if not api_key:
            raise ProcessorConfigError(f"[{conf.label}] OpenAI API key is not set.")
        client = AsyncOpenAI(api_key=api_key)

    file_ids = [await _upload(client, ft.train_path, conf.custom_instructions)]
    try:
        validation_file = None
        if ft.validation_path:
            validation_file = await _upload(client, ft.validation_path, conf.custom_instructions)
            file_ids.append(validation_file)

        job_args = {"model": ft.model or DEFAULT_BASE_MODEL, "training_file": file_ids[0]}
        if validation_file:
            job_args["validation_file"] = validation_file
        if ft.suffix:
            job_args["suffix"] = ft.suffix

        job = await client.fine_tuning.jobs.create(**job_args)
        logger.info(f"🏋️ Fine-tuning job {job.id} created on {job_args['model']}.")

        while job.status not in TERMINAL_STATUSES:
            await asyncio.sleep(poll_interval)
            job = await client.fine_tuning.jobs.retrieve(job.id)
            logger.info(f"⏳ Job {job.id}: {job.status}")
    finally:
        for file_id in file_ids:
            try:
                await client.files.delete(file_id)
                logger.info(f"🗑️ Deleted uploaded file {file_id}")
            except OpenAIError as e:
                logger.error(f"❌ Could not delete uploaded file {file_id}: {e}")

    if job.status == "succeeded":
        logger.info(f"✅ Fine-tuned model {job.fine_tuned_model} is ready. Try it in the Playground: {PLAYGROUND_URL}")
    else:
        logger.error(f"❌ Job {job.id} ended as {job.status}.")
    return job

def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [FINE-TUNE] %(message)s"
    )
    processor_id = sys.argv[1] if len(sys.argv) > 1 else None
    confs = load_processor_confs(settings.CONF_PATH)
    try:
        job = asyncio.run(run_fine_tuning(confs, processor_id))
    except (ProcessorConfigError, ValueError, OSError) as e:
        logger.critical(f"🔥 {e}")
        sys.exit(1)
    sys.exit(0 if job.status == "succeeded" else 1)

if __name__ == "__main__":
    main()
