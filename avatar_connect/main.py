import asyncio
import logging
import signal
import sys
from typing import List, Optional

import uvicorn

from avatar_connect.core.config import SystemConfig, load_processor_confs, settings
from avatar_connect.core.dispatcher import Dispatcher
from avatar_connect.core.event_log import EventLog
from avatar_connect.processors import BaseProcessor, build_processors
from avatar_connect.server.app import create_app

logger = logging.getLogger("AvatarConnect")

# This is the Composition Root.
# It restores the Event Log, wires the Dispatcher and processors, serves the transport and keeps the runtime alive.

def configure_logging(config: SystemConfig = settings):
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.LOG_FILE:
        handlers.append(logging.FileHandler(config.LOG_FILE, encoding="utf-8"))
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )

class AvatarRuntime:
    """
    The Main Process.
    Owns the Event Log and Dispatcher, and manages the lifecycle of all processors.
    """

    def __init__(self, config: SystemConfig = settings):
        self.config = config
        self.log = EventLog(capacity=config.STATE_DATA_CAPACITY)
        self.dispatcher = Dispatcher(
            self.log,
            state_data_path=config.STATE_DATA_PATH,
            auto_save=config.STATE_DATA_AUTO_SAVE,
            pretty=config.STATE_DATA_PRETTY,
        )
        self.processors: List[BaseProcessor] = []
        self.server: Optional[uvicorn.Server] = None
        self._stopped = False

    async def bootstrap(self):
        """Restore state and build every processor."""
        logger.info("🤖 Bootstrapping Avatar Connect...")

        # 1. Restore the Event Log
        if self.config.STATE_DATA_PATH:
            self.log.load(self.config.STATE_DATA_PATH)

        # 2. Build processors (registration order is fan-out order)
        confs = load_processor_confs(self.config.CONF_PATH)
        self.processors = build_processors(confs, self.dispatcher)

        # 3. Transport
        app = create_app(self.dispatcher)
        self.server = uvicorn.Server(uvicorn.Config(
            app,
            host=self.config.WEB_UI_HOST,
            port=self.config.WEB_UI_PORT,
            log_level=self.config.LOG_LEVEL.lower(),
        ))

    async def start(self):
        """Start all processors concurrently."""
        logger.info("🚀 Starting all processors...")
        await asyncio.gather(*[p.start() for p in self.processors])
        logger.info(f"✨ System Online at http://{self.config.WEB_UI_HOST}:{self.config.WEB_UI_PORT}")

    async def run(self):
        """Serves until /quit, a signal, or the server exiting on its own."""
        serve_task = asyncio.create_task(self.server.serve())
        stop_task = asyncio.create_task(self.dispatcher.stopping.wait())
        await asyncio.wait([serve_task, stop_task], return_when=asyncio.FIRST_COMPLETED)

        self.server.should_exit = True
        await serve_task
        stop_task.cancel()

    async def shutdown(self):
        """Graceful shutdown sequence."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("🛑 Shutting down system...")

        # Stop processors in reverse order
        for processor in reversed(self.processors):
            try:
                await processor.stop()
            except Exception as e:
                logger.error(f"Error stopping {processor.name}: {e}")

        if self.config.STATE_DATA_PATH:
            try:
                self.dispatcher.save()
            except OSError as e:
                logger.error(f"❌ Final save failed: {e}")

        logger.info("💀 System Offline.")

def handle_signals(runtime: AvatarRuntime):
    """Register signal handlers for graceful exit (Ctrl+C)."""
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("⚠️ Signal received. Initiating shutdown...")
        runtime.dispatcher.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

async def main():
    runtime = AvatarRuntime()

    try:
        handle_signals(runtime)
        await runtime.bootstrap()
        await runtime.start()
        await runtime.run()
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.critical(f"🔥 Critical Failure: {e}", exc_info=True)
    finally:
        await runtime.shutdown()

def run():
    configure_logging()

    try:
        import uvloop
        uvloop.install()
        logger.info("🚀 Using uvloop for high-performance asyncio.")
    except ImportError:
        logger.warning("⚠️ uvloop not found. Using standard asyncio loop.")

    asyncio.run(main())

if __name__ == "__main__":
    run()
