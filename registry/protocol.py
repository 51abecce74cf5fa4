"""
Poll protocol.

One poll call is a self-contained sequence:

1. authenticate the device (trust-on-first-use allowed);
2. mark the contact;
3. record every reported result;
4. claim the next batch of queued commands.

Claiming is the last write, so once commands are marked sent nothing else
in the call can fail and lose the batch.

Results are always recorded before dispatch, so a command reported in this
call is already terminal when the next batch is selected and can never be
handed out again. A storage failure aborts the call; whatever was already
recorded stays recorded, which is safe because recording is idempotent and
dispatch is simply retried on the next poll.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from registry.devices import DeviceRegistry
from registry.identity import AuthResult, DeviceIdentityStore
from registry.models import Command
from registry.queue import CommandQueue

logger = logging.getLogger("registry.protocol")


@dataclass
class PollOutcome:
    auth: AuthResult
    recorded: int = 0
    skipped: int = 0
    commands: List[Command] = field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "ok": True,
            "commands": [c.to_delivery() for c in self.commands],
            "recorded": self.recorded,
        }


class PollHandler:
    def __init__(self, identity: DeviceIdentityStore, devices: DeviceRegistry, queue: CommandQueue):
        self.identity = identity
        self.devices = devices
        self.queue = queue

    def poll(
        self,
        device_id: str,
        secret: Any,
        max_count: Any = None,
        results: Optional[Iterable[Any]] = None,
        ip: Optional[str] = None,
    ) -> PollOutcome:
        auth = self.identity.authenticate(device_id, secret)
        outcome = PollOutcome(auth=auth)
        self.devices.touch(device_id, ip)

        for entry in results or ():
            if not isinstance(entry, Mapping):
                outcome.skipped += 1
                continue
            cmd_id = entry.get("id")
            if not isinstance(cmd_id, str) or not cmd_id:
                logger.debug("Skipping result without id from %s", device_id)
                outcome.skipped += 1
                continue
            error = entry.get("error")
            if self.queue.record_result(
                cmd_id,
                device_id,
                entry.get("succeeded") is True,
                str(error) if error is not None else None,
            ):
                outcome.recorded += 1

        outcome.commands = self.queue.take_next_batch(device_id, max_count)
        return outcome
