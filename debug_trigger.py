import asyncio
import logging
import sys

import aiohttp

from avatar_connect.core.config import settings

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [TRIGGER] %(message)s"
)
logger = logging.getLogger("DebugTrigger")

async def trigger_input(content: str, channel: str = "user", is_final: bool = True):
    """
    Injects a finalized input into a running runtime through POST /input,
    then reports the runtime status.
    """
    base_url = f"http://{settings.WEB_UI_HOST}:{settings.WEB_UI_PORT}"
    payload = {"channel": channel, "content": content, "is_final": is_final}

    async with aiohttp.ClientSession() as session:
        logger.info(f"📤 Injecting '{content}' into channel '{channel}'")
        async with session.post(f"{base_url}/input", json=payload) as resp:
            resp.raise_for_status()

        # Allow time for background replies
        await asyncio.sleep(2.0)

        async with session.get(f"{base_url}/status") as resp:
            status = await resp.json()
        logger.info(f"📊 Status: {status}")

    logger.info("✅ Injection complete.")

if __name__ == "__main__":
    if len(sys.argv) > 1:
        text = " ".join(sys.argv[1:])
    else:
        # Default test input
        text = "Hello, who are you?"

    asyncio.run(trigger_input(text))
