##############################
# Purpose: Handles persistent storage
#          A single JSON document holds feedback records, per-user
#          allowances and the ticket ownership index. Every mutation
#          reloads the file, changes it and writes it back in full while
#          holding the store lock, so handlers on the event loop never
#          interleave their read-modify-write cycles.
##############################

import asyncio
import json
import logging
import os.path
from datetime import datetime, timezone

log = logging.getLogger(__name__)

TICKET_OPEN = "open"
TICKET_CLOSING = "closing"

PLATFORMS = ("Mobile", "Desktop", "Web", "Unknown")


def default_state():
    return {
        "feedback": [],
        "allowances": {},
        "tickets": {},
        "ticket_counter": 0,
    }


def utcnow_iso():
    return datetime.now(timezone.utc).isoformat()


def feedback_record(user_id, username, rating, comment="", platform="Unknown",
                    message_id=None, channel_id=None, created_at=None):
    if platform not in PLATFORMS:
        platform = "Unknown"
    return {
        "userId": str(user_id),
        "username": username,
        "rating": rating,
        "comment": comment or "",
        "platform": platform,
        "createdAt": created_at or utcnow_iso(),
        "messageId": str(message_id) if message_id is not None else None,
        "channelId": str(channel_id) if channel_id is not None else None,
    }


class Store():
    def __init__(self, path):
        self.path = path
        self._lock = asyncio.Lock()

    def load(self):
        state = default_state()
        if not os.path.isfile(self.path):
            return state

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.warning("Could not read %s, starting from an empty store: %s",
                        self.path, e)
            return state

        if not isinstance(data, dict):
            log.warning("%s does not hold an object, ignoring it", self.path)
            return state

        if isinstance(data.get("feedback"), list):
            state["feedback"] = data["feedback"]
        if isinstance(data.get("allowances"), dict):
            state["allowances"] = data["allowances"]
        if isinstance(data.get("tickets"), dict):
            state["tickets"] = data["tickets"]
        if isinstance(data.get("ticket_counter"), int):
            state["ticket_counter"] = data["ticket_counter"]
        return state

    def save(self, state):
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)

    ###########################################################################
    ## Feedback
    ###########################################################################

    async def add_feedback(self, record):
        async with self._lock:
            state = self.load()
            state["feedback"].append(record)
            self.save(state)

    async def remove_feedback_by_message_id(self, message_id):
        message_id = str(message_id)
        async with self._lock:
            state = self.load()
            before = len(state["feedback"])
            state["feedback"] = [f for f in state["feedback"]
                                 if f.get("messageId") != message_id]
            removed = before - len(state["feedback"])
            if removed:
                self.save(state)
                log.info("Removed feedback linked to message %s", message_id)
            return removed

    async def feedback_logs(self):
        """Return all feedback records, newest first."""
        async with self._lock:
            return list(reversed(self.load()["feedback"]))

    ###########################################################################
    ## Allowances
    ###########################################################################

    async def set_allowance(self, user_id, amount):
        if amount < 1:
            raise ValueError("allowance must be at least 1, got %r" % amount)
        async with self._lock:
            state = self.load()
            state["allowances"][str(user_id)] = amount
            self.save(state)

    async def get_allowance(self, user_id):
        async with self._lock:
            return self.load()["allowances"].get(str(user_id), 0)

    async def decrement_allowance(self, user_id):
        async with self._lock:
            state = self.load()
            allowances = state["allowances"]
            key = str(user_id)
            remaining = allowances.get(key, 0)
            if remaining > 0:
                remaining -= 1
                allowances[key] = remaining
                self.save(state)
            return remaining

    ###########################################################################
    ## Tickets
    ###########################################################################

    async def next_ticket_number(self):
        async with self._lock:
            state = self.load()
            state["ticket_counter"] += 1
            self.save(state)
            return state["ticket_counter"]

    async def add_ticket(self, channel_id, owner_id, category_id, ticket_type,
                         number):
        async with self._lock:
            state = self.load()
            state["tickets"][str(channel_id)] = {
                "ownerId": str(owner_id),
                "categoryId": str(category_id),
                "type": ticket_type,
                "number": number,
                "status": TICKET_OPEN,
                "createdAt": utcnow_iso(),
            }
            self.save(state)

    async def get_ticket(self, channel_id):
        async with self._lock:
            return self.load()["tickets"].get(str(channel_id))

    async def find_open_ticket(self, owner_id, category_id):
        """Return the channel id of the owner's open ticket, or None."""
        owner_id, category_id = str(owner_id), str(category_id)
        async with self._lock:
            for channel_id, ticket in self.load()["tickets"].items():
                if ticket.get("ownerId") == owner_id \
                        and ticket.get("categoryId") == category_id \
                        and ticket.get("status") == TICKET_OPEN:
                    return int(channel_id)
        return None

    async def set_ticket_status(self, channel_id, status):
        async with self._lock:
            state = self.load()
            ticket = state["tickets"].get(str(channel_id))
            if ticket is None:
                return False
            ticket["status"] = status
            self.save(state)
            return True

    async def remove_ticket(self, channel_id):
        async with self._lock:
            state = self.load()
            if state["tickets"].pop(str(channel_id), None) is None:
                return False
            self.save(state)
            return True
