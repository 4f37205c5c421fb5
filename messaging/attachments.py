import contextlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

import aiohttp

from api import Api
from messaging import Attachment, ConfirmedMessage, OutgoingFile, PendingMessage
from messaging.errors import SendUnconfirmed

log = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
ALLOWED_TYPES = ("application/pdf", "image/*")
MESSAGE_SUBJECT = "Mesaj"


@dataclass
class Accepted:
    file: OutgoingFile


@dataclass
class Rejected:
    file: OutgoingFile
    reason: str


def _type_allowed(mime_type: str, allowed: tuple[str, ...]) -> bool:
    mime_type = (mime_type or "").lower()
    for pattern in allowed:
        if pattern.endswith("/*"):
            if mime_type.startswith(pattern[:-1]):
                return True
        elif mime_type == pattern:
            return True
    return False


class AttachmentTransfer:
    def __init__(
        self, api: Api,
        max_bytes: int = MAX_ATTACHMENT_BYTES,
        allowed_types: tuple[str, ...] = ALLOWED_TYPES,
    ):
        self.api = api
        self.max_bytes = max_bytes
        self.allowed_types = tuple(allowed_types)

    def validate(self, file: OutgoingFile) -> Accepted | Rejected:
        """Type and size check. No I/O."""
        if not _type_allowed(file.mime_type, self.allowed_types):
            return Rejected(file, f"{file.name}: invalid file type. Only PDF and image files are allowed.")
        if file.size_bytes > self.max_bytes:
            limit_mb = self.max_bytes // (1024 * 1024)
            return Rejected(file, f"{file.name} is too large. Maximum size is {limit_mb}MB.")
        return Accepted(file)

    def partition(self, files) -> tuple[list[OutgoingFile], list[Rejected]]:
        """Split a selection into files to upload and per-file rejections, keeping order."""
        accepted, rejected = [], []
        for file in files:
            result = self.validate(file)
            if isinstance(result, Accepted):
                accepted.append(result.file)
            else:
                log.info("Rejected attachment %s: %s", file.name, result.reason)
                rejected.append(result)
        return accepted, rejected

    def build_form(self, message: PendingMessage, stack: contextlib.ExitStack) -> aiohttp.FormData:
        """Multipart body: message fields plus one 'attachments' part per file, in order."""
        form = aiohttp.FormData(default_to_multipart=True)
        form.add_field("receiver", message.receiver.id)
        form.add_field("subject", MESSAGE_SUBJECT)
        form.add_field("content", message.content)
        for attachment in message.attachments:
            payload = attachment.payload
            if isinstance(payload, Path):
                payload = stack.enter_context(payload.open("rb"))
            form.add_field(
                "attachments", payload,
                filename=attachment.original_name,
                content_type=attachment.mime_type,
            )
        return form

    async def upload(self, message: PendingMessage) -> ConfirmedMessage:
        """Submit a pending message and its files as one request.

        Returns the server's record, whose attachments carry server ids. Any failure
        propagates and the caller must assume nothing was persisted, except
        SendUnconfirmed, raised when a 2xx answer cannot be parsed.
        """
        with contextlib.ExitStack() as stack:
            form = self.build_form(message, stack)
            try:
                data = await self.api.send_message(form)
            except ValueError as e:  # 2xx with a body that is not JSON
                raise SendUnconfirmed(message, e) from e
        try:
            if not isinstance(data, dict):
                raise ValueError(f"Unexpected send response: {data!r}")
            return ConfirmedMessage.from_api(data, fallback=message)
        except (ValueError, TypeError, KeyError) as e:
            raise SendUnconfirmed(message, e) from e

    @contextlib.asynccontextmanager
    async def download(self, message_id: str, attachment_id: str):
        """Yield a temporary file holding the attachment. It is deleted on exit, error or not."""
        fd, name = tempfile.mkstemp(prefix="courier-")
        path = Path(name)
        try:
            with os.fdopen(fd, "wb") as fp:
                written = await self.api.download_attachment(message_id, attachment_id, fp)
            log.info("Downloaded attachment %s of %s (%d bytes)", attachment_id, message_id, written)
            yield path
        finally:
            path.unlink(missing_ok=True)

    async def save(self, message_id: str, attachment: Attachment, directory: str | Path) -> Path:
        """Download an attachment and store it under its original name in directory."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / Path(attachment.original_name or attachment.id).name
        async with self.download(message_id, attachment.id) as tmp:
            shutil.copyfile(tmp, target)
        return target
