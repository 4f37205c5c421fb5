import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import aiohttp

from messaging import (
    FAILED, ConfirmedMessage, OutgoingFile, PendingMessage, User,
    conversation_key, new_local_id,
)
from messaging.attachments import AttachmentTransfer, Rejected
from messaging.errors import ApiError, EmptyMessage, SendFailed, SendUnconfirmed
from store import ConversationStore

log = logging.getLogger(__name__)

DEFAULT_FAILURE = "Message could not be sent"


@dataclass
class Draft:
    receiver: User
    content: str
    files: list[OutgoingFile] = field(default_factory=list)


@dataclass
class SendOutcome:
    message: ConfirmedMessage
    rejected: list[Rejected] = field(default_factory=list)


class SendPipeline:
    """Optimistic sends: show a pending message at once, then reconcile or roll back.

    Sends to the same conversation are submitted one at a time, in call order.
    Sends to different conversations run concurrently.
    """

    def __init__(
        self, store: ConversationStore, transfer: AttachmentTransfer, current_user: User,
        on_sent: Callable[[], Awaitable[None]] | None = None,
    ):
        self.store = store
        self.transfer = transfer
        self.current_user = current_user
        self.on_sent = on_sent
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._outstanding: dict[tuple[str, str], int] = {}

    def prepare(self, receiver: User, content: str, files=()) -> tuple[PendingMessage, list[Rejected]]:
        """Validate and append the pending message. Runs before any await."""
        accepted, rejected = self.transfer.partition(files)
        if not (content or "").strip() and not accepted:
            raise EmptyMessage(rejected)

        pending = PendingMessage(
            local_id=new_local_id(),
            conversation_key=conversation_key(self.current_user.id, receiver.id),
            sender=self.current_user,
            receiver=receiver,
            content=content or "",
            attachments=[f.as_pending_attachment() for f in accepted],
        )
        self.store.append(pending)
        return pending, rejected

    async def send(self, receiver: User, content: str, files=()) -> SendOutcome:
        files = list(files)
        pending, rejected = self.prepare(receiver, content, files)
        accepted = [f for f in files if not any(r.file is f for r in rejected)]
        confirmed = await self._submit(pending, Draft(receiver, content, accepted))
        return SendOutcome(confirmed, rejected)

    async def retry(self, failure: SendFailed) -> SendOutcome:
        draft = failure.draft
        return await self.send(draft.receiver, draft.content, draft.files)

    async def _submit(self, pending: PendingMessage, draft: Draft) -> ConfirmedMessage:
        key = pending.conversation_key
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._outstanding[key] = self._outstanding.get(key, 0) + 1
        try:
            async with lock:
                log.info("[%s] Sending %s (%d attachments)", pending.receiver.id, pending.local_id, len(pending.attachments))
                try:
                    confirmed = await self.transfer.upload(pending)
                except SendUnconfirmed as e:
                    # Saved on the server; a retry would duplicate it.
                    log.error("[%s] Send %s could not be reconciled: %s", pending.receiver.id, pending.local_id, e.cause)
                    self.store.remove(pending.local_id)
                    raise
                except ApiError as e:
                    self._rollback(pending, draft, e.message or DEFAULT_FAILURE, e)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    self._rollback(pending, draft, DEFAULT_FAILURE, e)
                except OSError as e:
                    self._rollback(pending, draft, f"Could not read attachment: {e.strerror or e}", e)
                except Exception as e:
                    log.exception("[%s] Unexpected error sending %s", pending.receiver.id, pending.local_id)
                    self._rollback(pending, draft, DEFAULT_FAILURE, e)
                except asyncio.CancelledError:
                    self.store.remove(pending.local_id)
                    raise
                self.store.replace(pending.local_id, confirmed)
                log.info("[%s] Sent %s as %s", pending.receiver.id, pending.local_id, confirmed.server_id)
        finally:
            self._outstanding[key] -= 1
            if not self._outstanding[key]:
                del self._outstanding[key]
                self._locks.pop(key, None)

        if self.on_sent is not None:
            await self.on_sent()
        return confirmed

    def _rollback(self, pending: PendingMessage, draft: Draft, message: str, cause: BaseException):
        log.warning("[%s] Send %s failed: %s", pending.receiver.id, pending.local_id, cause)
        self.store.remove(pending.local_id)
        pending.delivery_state = FAILED
        raise SendFailed(message, pending, draft, cause) from cause
