import asyncio

import aiohttp
import pytest

from messaging import (
    FAILED, PENDING, SENT, ConfirmedMessage, OutgoingFile, PendingMessage, User, conversation_key,
)
from messaging.attachments import MAX_ATTACHMENT_BYTES, AttachmentTransfer
from messaging.errors import ApiError, EmptyMessage, SendFailed, SendUnconfirmed
from messaging.sender import SendPipeline
from store import ConversationStore
from fakes import ME, FakeBackend, serve, wait_for

U42 = User(id="U42", first_name="Mehmet", last_name="Kaya")
U7 = User(id="U7", first_name="Zeynep", last_name="Demir")
KEY = conversation_key(ME.id, U42.id)


class ScriptedTransfer(AttachmentTransfer):
    """Uploads wait on a per-call gate and answer with {id, createdAt} like the backend."""

    def __init__(self):
        super().__init__(api=None)
        self.gates: list[asyncio.Event] = []
        self.log: list[tuple[str, str]] = []
        self.errors: list[BaseException | None] = []

    async def upload(self, message: PendingMessage) -> ConfirmedMessage:
        gate = asyncio.Event()
        self.gates.append(gate)
        n = len(self.gates)
        self.log.append(("start", message.content))
        await gate.wait()
        self.log.append(("end", message.content))
        error = self.errors.pop(0) if self.errors else None
        if error is not None:
            raise error
        return ConfirmedMessage.from_api(
            {"id": f"m{n}", "createdAt": f"2026-02-18T10:00:0{n}.000Z"}, fallback=message,
        )


def test_text_message_is_pending_then_sent():
    store = ConversationStore()
    transfer = ScriptedTransfer()
    pipeline = SendPipeline(store, transfer, ME)

    async def run():
        task = asyncio.create_task(pipeline.send(U42, "Merhaba"))
        await wait_for(lambda: transfer.gates)

        shown = store.messages(KEY)
        assert len(shown) == 1
        assert isinstance(shown[0], PendingMessage)
        assert shown[0].delivery_state == PENDING
        assert shown[0].content == "Merhaba"
        assert shown[0].local_id.startswith("local-")
        assert shown[0].is_read is False

        transfer.gates[0].set()
        return await task

    outcome = asyncio.run(run())

    shown = store.messages(KEY)
    assert len(shown) == 1
    assert isinstance(shown[0], ConfirmedMessage)
    assert shown[0].server_id == "m1"
    assert shown[0].delivery_state == SENT
    assert shown[0].content == "Merhaba"
    assert shown[0].created_at.isoformat() == "2026-02-18T10:00:01+00:00"
    assert outcome.message is shown[0]


def test_failed_send_rolls_back_and_keeps_draft():
    store = ConversationStore()
    transfer = ScriptedTransfer()
    transfer.errors.append(aiohttp.ClientConnectionError("connection reset"))
    pipeline = SendPipeline(store, transfer, ME)
    photo = OutgoingFile.from_bytes("photo.png", "image/png", b"png")

    async def run():
        task = asyncio.create_task(pipeline.send(U42, "Toplanti notlari", [photo]))
        await wait_for(lambda: transfer.gates)
        transfer.gates[0].set()
        return await task

    with pytest.raises(SendFailed) as exc:
        asyncio.run(run())

    assert store.messages(KEY) == []
    assert store.pending(KEY) == []
    failure = exc.value
    assert failure.failed.delivery_state == FAILED
    assert failure.draft.receiver is U42
    assert failure.draft.content == "Toplanti notlari"
    assert failure.draft.files == [photo]
    assert isinstance(failure.cause, aiohttp.ClientError)


def test_retry_sends_draft_as_new_pending_message():
    store = ConversationStore()
    transfer = ScriptedTransfer()
    transfer.errors.append(asyncio.TimeoutError())
    pipeline = SendPipeline(store, transfer, ME)

    async def run():
        first = asyncio.create_task(pipeline.send(U42, "Tekrar"))
        await wait_for(lambda: transfer.gates)
        transfer.gates[0].set()
        with pytest.raises(SendFailed) as exc:
            await first
        failed_local_id = exc.value.failed.local_id

        second = asyncio.create_task(pipeline.retry(exc.value))
        await wait_for(lambda: len(transfer.gates) == 2)
        assert failed_local_id not in [m.key for m in store.messages(KEY)]
        assert store.pending(KEY)[0].delivery_state == PENDING
        transfer.gates[1].set()
        return await second

    outcome = asyncio.run(run())
    assert outcome.message.content == "Tekrar"
    assert [m.key for m in store.messages(KEY)] == [outcome.message.server_id]


def test_server_error_message_reaches_the_user():
    store = ConversationStore()
    transfer = ScriptedTransfer()
    transfer.errors.append(ApiError(400, "Alici bulunamadi", "/messages"))
    pipeline = SendPipeline(store, transfer, ME)

    async def run():
        task = asyncio.create_task(pipeline.send(U42, "x"))
        await wait_for(lambda: transfer.gates)
        transfer.gates[0].set()
        await task

    with pytest.raises(SendFailed) as exc:
        asyncio.run(run())
    assert exc.value.user_message == "Alici bulunamadi"


def test_empty_message_is_rejected_before_anything_is_shown():
    store = ConversationStore()
    pipeline = SendPipeline(store, ScriptedTransfer(), ME)
    too_big = OutgoingFile(name="big.pdf", mime_type="application/pdf",
                           size_bytes=MAX_ATTACHMENT_BYTES + 1, payload=b"")

    with pytest.raises(EmptyMessage) as exc:
        asyncio.run(pipeline.send(U42, "   ", [too_big]))
    assert [r.file for r in exc.value.rejected] == [too_big]
    assert store.messages(KEY) == []


def test_sends_to_one_conversation_do_not_overlap():
    store = ConversationStore()
    transfer = ScriptedTransfer()
    pipeline = SendPipeline(store, transfer, ME)

    async def run():
        first = asyncio.create_task(pipeline.send(U42, "one"))
        second = asyncio.create_task(pipeline.send(U42, "two"))
        await wait_for(lambda: transfer.gates)
        await asyncio.sleep(0.05)
        # Both are visible, only the first is on the wire.
        assert len(store.pending(KEY)) == 2
        assert len(transfer.gates) == 1

        transfer.gates[0].set()
        await first
        await wait_for(lambda: len(transfer.gates) == 2)
        transfer.gates[1].set()
        await second

    asyncio.run(run())
    assert transfer.log == [("start", "one"), ("end", "one"), ("start", "two"), ("end", "two")]
    assert [m.content for m in store.messages(KEY)] == ["one", "two"]


def test_second_send_waits_for_a_failed_first_send():
    store = ConversationStore()
    transfer = ScriptedTransfer()
    transfer.errors.append(aiohttp.ClientConnectionError("down"))
    pipeline = SendPipeline(store, transfer, ME)

    async def run():
        first = asyncio.create_task(pipeline.send(U42, "one"))
        second = asyncio.create_task(pipeline.send(U42, "two"))
        await wait_for(lambda: transfer.gates)
        transfer.gates[0].set()
        with pytest.raises(SendFailed):
            await first
        await wait_for(lambda: len(transfer.gates) == 2)
        transfer.gates[1].set()
        await second

    asyncio.run(run())
    assert transfer.log == [("start", "one"), ("end", "one"), ("start", "two"), ("end", "two")]
    assert [m.content for m in store.messages(KEY)] == ["two"]


def test_sends_to_different_conversations_run_together():
    store = ConversationStore()
    transfer = ScriptedTransfer()
    pipeline = SendPipeline(store, transfer, ME)

    async def run():
        a = asyncio.create_task(pipeline.send(U42, "to U42"))
        b = asyncio.create_task(pipeline.send(U7, "to U7"))
        await wait_for(lambda: len(transfer.gates) == 2)
        for gate in transfer.gates:
            gate.set()
        await asyncio.gather(a, b)

    asyncio.run(run())
    assert transfer.log[:2] == [("start", "to U42"), ("start", "to U7")]


def test_result_lands_in_conversation_after_navigating_away():
    store = ConversationStore()
    transfer = ScriptedTransfer()
    pipeline = SendPipeline(store, transfer, ME)

    async def run():
        task = asyncio.create_task(pipeline.send(U42, "giderken"))
        await wait_for(lambda: transfer.gates)
        store.evict(KEY)
        # Reopened while the upload is still running: the pending entry comes back.
        store.load(KEY, [])
        assert [m.content for m in store.messages(KEY)] == ["giderken"]
        transfer.gates[0].set()
        await task

    asyncio.run(run())
    shown = store.messages(KEY)
    assert len(shown) == 1
    assert isinstance(shown[0], ConfirmedMessage)


def test_three_files_one_oversized_uploads_two():
    backend = FakeBackend()
    files = [
        OutgoingFile.from_bytes("a.png", "image/png", b"a"),
        OutgoingFile(name="huge.pdf", mime_type="application/pdf",
                     size_bytes=MAX_ATTACHMENT_BYTES + 1, payload=b""),
        OutgoingFile.from_bytes("c.pdf", "application/pdf", b"c"),
    ]
    refreshed = []

    async def on_sent():
        refreshed.append(True)

    async def run():
        async with serve(backend) as api:
            pipeline = SendPipeline(ConversationStore(), AttachmentTransfer(api), ME, on_sent=on_sent)
            return await pipeline.send(U42, "Belgeler", files)

    outcome = asyncio.run(run())

    assert backend.uploads[0]["attachments"] == ["a.png", "c.pdf"]
    assert len(outcome.rejected) == 1
    assert outcome.rejected[0].file.name == "huge.pdf"
    assert [a.original_name for a in outcome.message.attachments] == ["a.png", "c.pdf"]
    assert refreshed == [True]


def test_attached_file_removed_before_send_rolls_back(tmp_path):
    path = tmp_path / "rapor.pdf"
    path.write_bytes(b"%PDF-1.4")
    report = OutgoingFile.from_path(path)
    path.unlink()
    store = ConversationStore()
    pipeline = SendPipeline(store, AttachmentTransfer(api=None), ME)

    with pytest.raises(SendFailed) as exc:
        asyncio.run(pipeline.send(U42, "Rapor ekte", [report]))

    assert store.messages(KEY) == []
    assert store.pending(KEY) == []
    assert isinstance(exc.value.cause, FileNotFoundError)
    assert exc.value.draft.files == [report]
    assert exc.value.draft.content == "Rapor ekte"


def test_unreadable_send_response_is_not_offered_for_retry():
    backend = FakeBackend()
    backend.garble_send = True
    store = ConversationStore()

    async def run():
        async with serve(backend) as api:
            pipeline = SendPipeline(store, AttachmentTransfer(api), ME)
            await pipeline.send(U42, "Kaydedildi mi?")

    with pytest.raises(SendUnconfirmed):
        asyncio.run(run())

    assert len(backend.messages) == 1
    assert store.pending(KEY) == []
    assert store.messages(KEY) == []
