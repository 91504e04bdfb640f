"""Log every notification for two topics until interrupted.

Reads CLIENT_ID and CALLBACK_URL (and optionally SECRET) from the
environment or a .env file.
"""

import asyncio
import logging

from helixhook import HelixWebhook
from helixhook.logging_setup import init_logging


async def main() -> None:
    hook = HelixWebhook(secret="hello human Kappa")
    init_logging(hook.settings.LOG_LEVEL)

    @hook.on("*")
    def log_all(envelope):
        logging.info("%s %s %s %s", envelope.topic, envelope.options, envelope.endpoint, envelope.event)

    stopping = asyncio.Event()
    renewals: set[asyncio.Task] = set()

    def renewed(task: asyncio.Task) -> None:
        renewals.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.error("renewal failed: %s", task.exception())

    # renew the subscription when it expires
    @hook.on("unsubscribe")
    def renew(query):
        if stopping.is_set():
            return
        task = asyncio.get_running_loop().create_task(hook.subscribe(query["hub.topic"]))
        renewals.add(task)
        task.add_done_callback(renewed)

    async with hook:
        await hook.subscribe("users/follows", {"first": 1, "to_id": "12826"})
        await hook.subscribe("streams", {"user_id": "12826"})
        try:
            await asyncio.Event().wait()
        finally:
            stopping.set()
            await hook.unsubscribe("*")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
