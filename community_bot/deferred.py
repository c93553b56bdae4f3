##############################
# Purpose: Delayed work (message cleanup, ticket deletion) that stays tied to
#          the resource it acts on. Every task is registered under a key so
#          it can be cancelled when the resource disappears first.
##############################

import asyncio
import logging

import discord

log = logging.getLogger(__name__)


def message_key(message_id):
    return ("message", int(message_id))


def channel_key(channel_id):
    return ("channel", int(channel_id))


class DeferredTasks():
    def __init__(self):
        self._tasks = {}

    def schedule(self, key, delay, callback, *args):
        """Run ``await callback(*args)`` after ``delay`` seconds.

        Scheduling an already pending key replaces the earlier task.
        """
        self.cancel(key)
        task = asyncio.create_task(self._run(key, delay, callback, args))
        self._tasks[key] = task
        return task

    def cancel(self, key):
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self, key):
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def cancel_all(self):
        for key in list(self._tasks):
            self.cancel(key)

    def delete_message_later(self, message, delay):
        return self.schedule(message_key(message.id), delay, message.delete)

    async def _run(self, key, delay, callback, args):
        await asyncio.sleep(delay)
        # Once running, the callback can no longer be cancelled through the key
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback(*args)
        except discord.NotFound:
            log.debug("Deferred %s target is already gone", key)
        except discord.HTTPException as e:
            log.warning("Deferred %s failed: %s", key, e)
        except Exception:
            log.exception("Deferred %s raised", key)
