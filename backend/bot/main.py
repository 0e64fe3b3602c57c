import asyncio
import contextlib
import logging
import signal
from typing import Awaitable, Callable, List, Optional

from common.config import DEFAULT_POLL_TIMEOUT_SECONDS, settings
from common.repository import build_repository
from common.telegram import Message, TelegramClient, Update
from bot.dispatcher import build_dispatcher

logger = logging.getLogger("bot")


class LongPoller:
    """
    Drives a message handler from Bot API long polling.

    One worker, strictly sequential: updates of a batch are handled in
    arrival order. The offset is advanced before an update is handled, so a
    failed update is not fetched again.
    """

    def __init__(
        self,
        client: TelegramClient,
        handle_message: Callable[[Message], Awaitable[None]],
        poll_timeout: int = DEFAULT_POLL_TIMEOUT_SECONDS,
        retry_interval: float = 2.0,
    ):
        self.client = client
        self.handle_message = handle_message
        self.poll_timeout = poll_timeout if poll_timeout > 0 else DEFAULT_POLL_TIMEOUT_SECONDS
        self.retry_interval = retry_interval
        self.offset = 0

    async def _fetch(self, stop: asyncio.Event) -> Optional[List[Update]]:
        """Fetch one batch; None means stop was requested while waiting."""
        fetch = asyncio.ensure_future(self.client.get_updates(self.offset, self.poll_timeout))
        stopped = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({fetch, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not fetch.done():
                fetch.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await fetch
        if stop.is_set():
            return None
        return fetch.result()

    async def _pause(self, stop: asyncio.Event) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=self.retry_interval)

    async def process_updates(self, updates: List[Update]) -> None:
        for update in updates:
            self.offset = update.update_id + 1
            message = update.message
            if message is None or not message.text:
                continue
            try:
                await self.handle_message(message)
            except Exception as e:
                logger.error(f"Failed to handle update {update.update_id}: {e}")

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("Long polling started")
        while not stop.is_set():
            try:
                updates = await self._fetch(stop)
            except Exception as e:
                logger.error(f"getUpdates failed: {e}; retrying in {self.retry_interval}s")
                await self._pause(stop)
                continue
            if updates is None:
                break
            await self.process_updates(updates)
        logger.info("Long polling stopped")


def build_poller(client: TelegramClient, repo) -> LongPoller:
    dispatcher = build_dispatcher(client, repo)
    return LongPoller(
        client,
        dispatcher.handle_message,
        poll_timeout=settings.TELEGRAM_POLL_TIMEOUT_SECONDS,
        retry_interval=settings.TELEGRAM_RETRY_INTERVAL_SECONDS,
    )


async def main() -> None:
    if not settings.telegram_enabled:
        logger.error("TELEGRAM_BOT_TOKEN not configured, nothing to do.")
        return
    repo = build_repository(settings)
    if settings.APP_ENV == "dev":
        await repo.init_schema()
    client = TelegramClient()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await build_poller(client, repo).run(stop)
    finally:
        await client.aclose()
        await repo.close()


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    asyncio.run(main())
