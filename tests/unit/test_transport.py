"""Tests for transport modules: spool, smtp_relay, and smtp_server."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import aiosmtplib
import pytest

from smime_gate.exceptions import (
    AllocationError,
    PersistReplaceError,
    SessionAbortedError,
    SpoolError,
)
from smime_gate.models import MailObject, SessionState
from smime_gate.services.intake import fill_batch
from smime_gate.transport.smtp_relay import SMTPRelay
from smime_gate.transport.smtp_server import (
    REPLY_ACCEPTED,
    REPLY_BUSY,
    REPLY_TEMPFAIL,
    GatewayHandler,
    SMTPSessionTransport,
)
from smime_gate.transport.spool import SpoolStore

# ==============================================================================
# SpoolStore Tests
# ==============================================================================


class TestSpoolStore:
    """Tests for SpoolStore class."""

    def test_init_sets_path(self, mock_settings, tmp_path: Path) -> None:
        """Test that SpoolStore uses the configured spool directory."""
        store = SpoolStore(mock_settings)

        assert store.spool_dir == tmp_path / "spool"

    @pytest.mark.asyncio
    async def test_ensure_directories_creates_spool(self, mock_settings, tmp_path: Path) -> None:
        """Test that ensure_directories creates the spool directory."""
        store = SpoolStore(mock_settings)

        await store.ensure_directories()

        assert (tmp_path / "spool").is_dir()

    def test_generate_filename_is_unique(self, spool_store) -> None:
        """Test that generated filenames are unique."""
        assert spool_store._generate_filename() != spool_store._generate_filename()

    def test_generate_filename_format(self, spool_store) -> None:
        """Test that filename follows timestamp.random.hostname.mail."""
        filename = spool_store._generate_filename()
        timestamp, random_part, rest = filename.split(".", 2)

        assert timestamp.isdigit()
        assert all(c in "0123456789abcdef" for c in random_part)
        assert rest.endswith(".mail")

    def test_byproduct_path_sits_next_to_file(self, spool_store) -> None:
        """Test that the transform byproduct is <path>.prcs."""
        path = spool_store.spool_dir / "123.abc.host.mail"

        assert spool_store.byproduct_path(path) == spool_store.spool_dir / "123.abc.host.mail.prcs"

    @pytest.mark.asyncio
    async def test_allocate_creates_private_empty_file(self, spool_store) -> None:
        """Test that allocate reserves an empty 0600 file."""
        path = await spool_store.allocate()

        assert path.parent == spool_store.spool_dir
        assert path.read_bytes() == b""
        assert (path.stat().st_mode & 0o777) == 0o600

    @pytest.mark.asyncio
    async def test_allocate_failure_raises_allocation_error(self, mock_settings) -> None:
        """Test that allocate raises AllocationError when the spool is missing."""
        store = SpoolStore(mock_settings)

        with pytest.raises(AllocationError) as exc_info:
            await store.allocate()

        assert "Cannot reserve spool file" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_allocate_never_reuses_existing_file(self, spool_store) -> None:
        """Test that a name collision fails instead of truncating a mail."""
        existing = spool_store.spool_dir / "fixed.mail"
        existing.write_bytes(b"buffered mail")

        with patch.object(spool_store, "_generate_filename", return_value="fixed.mail"):
            with pytest.raises(AllocationError):
                await spool_store.allocate()

        assert existing.read_bytes() == b"buffered mail"

    @pytest.mark.asyncio
    async def test_write_and_load(self, spool_store, sample_email_bytes) -> None:
        """Test that a written mail loads back with the supplied envelope."""
        path = await spool_store.allocate()

        await spool_store.write(path, sample_email_bytes)
        mail = await spool_store.load(path, "alice@x.com", ["bob@partner.org"])

        assert path.read_bytes() == sample_email_bytes
        assert mail.raw == sample_email_bytes
        assert mail.sender == "alice@x.com"
        assert mail.recipients == ["bob@partner.org"]
        assert mail.subject == "Quarterly numbers"

    @pytest.mark.asyncio
    async def test_write_failure_raises_spool_error(self, spool_store) -> None:
        """Test that write raises SpoolError when the file cannot be written."""
        path = spool_store.spool_dir / "missing" / "x.mail"

        with pytest.raises(SpoolError) as exc_info:
            await spool_store.write(path, b"email")

        assert "Failed to write" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_load_missing_file_raises_spool_error(self, spool_store) -> None:
        """Test that load raises SpoolError for a missing file."""
        with pytest.raises(SpoolError):
            await spool_store.load(spool_store.spool_dir / "gone.mail", "a@x.com", [])

    @pytest.mark.asyncio
    async def test_replace_promotes_byproduct(self, spool_store) -> None:
        """Test that replace moves the byproduct over the spool file."""
        path = await spool_store.allocate()
        await spool_store.write(path, b"before")
        byproduct = spool_store.byproduct_path(path)
        byproduct.write_bytes(b"after")

        await spool_store.replace(byproduct, path)

        assert path.read_bytes() == b"after"
        assert not byproduct.exists()

    @pytest.mark.asyncio
    async def test_replace_failure_keeps_original(self, spool_store) -> None:
        """Test that a failed replace raises and leaves the spool file alone."""
        path = await spool_store.allocate()
        await spool_store.write(path, b"before")

        with pytest.raises(PersistReplaceError):
            await spool_store.replace(spool_store.byproduct_path(path), path)

        assert path.read_bytes() == b"before"

    @pytest.mark.asyncio
    async def test_release_deletes_file(self, spool_store) -> None:
        """Test that release deletes a reserved file."""
        path = await spool_store.allocate()

        await spool_store.release(path)

        assert not path.exists()

    @pytest.mark.asyncio
    async def test_release_missing_file_is_noop(self, spool_store) -> None:
        """Test that releasing a file that was never created does not raise."""
        await spool_store.release(spool_store.spool_dir / "never.mail.prcs")

    @pytest.mark.asyncio
    async def test_remove_returns_status(self, spool_store) -> None:
        """Test that remove reports whether the file was deleted."""
        path = await spool_store.allocate()

        assert await spool_store.remove(path) is True
        assert await spool_store.remove(path) is False

    @pytest.mark.asyncio
    async def test_count_pending_counts_mail_files_only(self, spool_store) -> None:
        """Test that count_pending ignores byproducts and other files."""
        (spool_store.spool_dir / "a.mail").write_bytes(b"1")
        (spool_store.spool_dir / "b.mail").write_bytes(b"2")
        (spool_store.spool_dir / "b.mail.prcs").write_bytes(b"partial")
        (spool_store.spool_dir / "notes.txt").write_bytes(b"ignored")

        assert await spool_store.count_pending() == 2

    @pytest.mark.asyncio
    async def test_count_pending_nonexistent_folder(self, mock_settings) -> None:
        """Test counting when the spool directory doesn't exist."""
        assert await SpoolStore(mock_settings).count_pending() == 0


# ==============================================================================
# SMTPRelay Tests
# ==============================================================================


@pytest.fixture
def relay_mail(sample_email_bytes) -> MailObject:
    return MailObject.parse(sample_email_bytes, "alice@x.com", ["bob@partner.org"])


@pytest.fixture
def mock_smtp():
    """Patch aiosmtplib in the relay module, keeping the real exceptions."""
    with patch("smime_gate.transport.smtp_relay.aiosmtplib") as mock_module:
        mock_module.SMTPException = aiosmtplib.SMTPException
        mock_module.SMTPServerDisconnected = aiosmtplib.SMTPServerDisconnected
        client = AsyncMock()
        client.is_connected = True
        client.sendmail = AsyncMock(return_value=({}, "250 2.0.0 Ok: queued"))
        mock_module.SMTP.return_value = client
        yield mock_module


class TestSMTPRelay:
    """Tests for SMTPRelay class."""

    def test_init_sets_config_correctly(self, mock_settings) -> None:
        """Test that SMTPRelay initializes with correct settings."""
        relay = SMTPRelay(mock_settings)

        assert relay.host == "relay.test.local"
        assert relay.port == 25
        assert relay.timeout == 30
        assert relay.is_connected is False

    @pytest.mark.asyncio
    async def test_new_state_connects_and_sends(self, mock_settings, mock_smtp, relay_mail) -> None:
        """Test that a NEW send opens the session and relays the envelope."""
        relay = SMTPRelay(mock_settings)

        result = await relay.send(relay_mail, SessionState.NEW)

        assert result is True
        mock_smtp.SMTP.assert_called_once_with(hostname="relay.test.local", port=25, timeout=30)
        client = mock_smtp.SMTP.return_value
        client.connect.assert_awaited_once()
        client.sendmail.assert_awaited_once_with(
            "alice@x.com", ["bob@partner.org"], relay_mail.raw
        )

    @pytest.mark.asyncio
    async def test_nxt_state_reuses_connection(self, mock_settings, mock_smtp, relay_mail) -> None:
        """Test that NXT sends go over the same connection."""
        relay = SMTPRelay(mock_settings)

        await relay.send(relay_mail, SessionState.NEW)
        await relay.send(relay_mail, SessionState.NXT)

        assert mock_smtp.SMTP.call_count == 1
        assert mock_smtp.SMTP.return_value.sendmail.await_count == 2

    @pytest.mark.asyncio
    async def test_nxt_without_session_returns_false(
        self, mock_settings, mock_smtp, relay_mail
    ) -> None:
        """Test that a NXT send with no open session fails."""
        relay = SMTPRelay(mock_settings)

        assert await relay.send(relay_mail, SessionState.NXT) is False
        mock_smtp.SMTP.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_failure_returns_false(
        self, mock_settings, mock_smtp, relay_mail
    ) -> None:
        """Test that an unreachable relay makes the send fail."""
        mock_smtp.SMTP.return_value.connect.side_effect = ConnectionRefusedError("refused")
        relay = SMTPRelay(mock_settings)

        assert await relay.send(relay_mail, SessionState.NEW) is False
        mock_smtp.SMTP.return_value.sendmail.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_mail_resets_session(
        self, mock_settings, mock_smtp, relay_mail
    ) -> None:
        """Test that a rejected mail returns False and issues RSET."""
        client = mock_smtp.SMTP.return_value
        client.sendmail.side_effect = aiosmtplib.SMTPResponseException(550, "No such user")
        relay = SMTPRelay(mock_settings)

        result = await relay.send(relay_mail, SessionState.NEW)

        assert result is False
        client.rset.assert_awaited_once()
        assert relay.is_connected is True

    @pytest.mark.asyncio
    async def test_disconnect_during_send_drops_session(
        self, mock_settings, mock_smtp, relay_mail
    ) -> None:
        """Test that a lost connection fails this and later NXT sends."""
        client = mock_smtp.SMTP.return_value
        client.sendmail.side_effect = aiosmtplib.SMTPServerDisconnected("gone")
        relay = SMTPRelay(mock_settings)

        assert await relay.send(relay_mail, SessionState.NEW) is False
        assert relay.is_connected is False
        assert await relay.send(relay_mail, SessionState.NXT) is False

    @pytest.mark.asyncio
    async def test_permanently_refused_recipient_still_accepted(
        self, mock_settings, mock_smtp, relay_mail
    ) -> None:
        """Test that a permanently refused recipient is only logged."""
        mock_smtp.SMTP.return_value.sendmail.return_value = (
            {"bob@partner.org": (550, "unknown")},
            "250 Ok",
        )
        relay = SMTPRelay(mock_settings)

        assert await relay.send(relay_mail, SessionState.NEW) is True

    @pytest.mark.asyncio
    async def test_deferred_recipient_keeps_mail(
        self, mock_settings, mock_smtp, sample_email_bytes
    ) -> None:
        """Test that a 4xx recipient refusal counts as a failed send."""
        mail = MailObject.parse(
            sample_email_bytes, "alice@x.com", ["bob@partner.org", "eve@partner.org"]
        )
        mock_smtp.SMTP.return_value.sendmail.return_value = (
            {"eve@partner.org": aiosmtplib.SMTPResponse(451, "mailbox busy")},
            "250 Ok",
        )
        relay = SMTPRelay(mock_settings)

        assert await relay.send(mail, SessionState.NEW) is False
        mock_smtp.SMTP.return_value.rset.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_quits(self, mock_settings, mock_smtp, relay_mail) -> None:
        """Test that close sends QUIT."""
        relay = SMTPRelay(mock_settings)
        await relay.send(relay_mail, SessionState.NEW)

        await relay.close()

        mock_smtp.SMTP.return_value.quit.assert_awaited_once()
        assert relay.is_connected is False

    @pytest.mark.asyncio
    async def test_close_falls_back_to_hard_close(
        self, mock_settings, mock_smtp, relay_mail
    ) -> None:
        """Test that a failed QUIT still closes the socket."""
        client = mock_smtp.SMTP.return_value
        client.quit.side_effect = aiosmtplib.SMTPServerDisconnected("gone")
        client.close = MagicMock()
        relay = SMTPRelay(mock_settings)
        await relay.send(relay_mail, SessionState.NEW)

        await relay.close()

        client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_without_session(self, mock_settings, mock_smtp) -> None:
        """Test that closing an unused relay does nothing."""
        await SMTPRelay(mock_settings).close()

        mock_smtp.SMTP.assert_not_called()


# ==============================================================================
# SMTPSessionTransport Tests
# ==============================================================================


class TestSMTPSessionTransport:
    """Tests for the per-connection inbound transport."""

    @pytest.mark.asyncio
    async def test_offered_mail_is_persisted_then_accepted(
        self, spool_store, sample_email_bytes
    ) -> None:
        """Test that the client gets 250 only after the mail is on disk."""
        transport = SMTPSessionTransport(spool_store, "10.0.0.1")
        path = await spool_store.allocate()

        offer = asyncio.create_task(
            transport.offer("alice@x.com", ["bob@partner.org"], sample_email_bytes)
        )
        mail = await transport.receive(SessionState.NEW, path)

        assert await offer == REPLY_ACCEPTED
        assert mail is not None
        assert mail.sender == "alice@x.com"
        assert mail.recipients == ["bob@partner.org"]
        assert path.read_bytes() == sample_email_bytes

    @pytest.mark.asyncio
    async def test_err_state_refuses_further_mail(self, spool_store) -> None:
        """Test that ERR ends the session and later offers get 421."""
        transport = SMTPSessionTransport(spool_store)

        assert await transport.receive(SessionState.ERR, None) is None
        assert transport.refusing is True
        assert await transport.offer("a@x.com", ["b@y.com"], b"mail") == REPLY_BUSY

    @pytest.mark.asyncio
    async def test_err_state_answers_waiting_offer(self, spool_store) -> None:
        """Test that a mail already waiting when ERR arrives gets 421."""
        transport = SMTPSessionTransport(spool_store)
        offer = asyncio.create_task(transport.offer("a@x.com", ["b@y.com"], b"mail"))
        await asyncio.sleep(0)

        await transport.receive(SessionState.ERR, None)

        assert await offer == REPLY_BUSY

    @pytest.mark.asyncio
    async def test_missing_path_refuses(self, spool_store) -> None:
        """Test that a receive without a reserved path ends the session."""
        transport = SMTPSessionTransport(spool_store)

        assert await transport.receive(SessionState.NXT, None) is None
        assert transport.refusing is True

    @pytest.mark.asyncio
    async def test_end_of_session_returns_none(self, spool_store) -> None:
        """Test that QUIT ends the receive loop."""
        transport = SMTPSessionTransport(spool_store)
        transport.end()

        assert await transport.receive(SessionState.NXT, await spool_store.allocate()) is None

    @pytest.mark.asyncio
    async def test_abort_raises(self, spool_store) -> None:
        """Test that a lost connection raises SessionAbortedError."""
        transport = SMTPSessionTransport(spool_store, "10.0.0.1")
        transport.abort()

        with pytest.raises(SessionAbortedError) as exc_info:
            await transport.receive(SessionState.NEW, await spool_store.allocate())

        assert "10.0.0.1" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_spool_failure_tempfails(self, spool_store) -> None:
        """Test that a mail that cannot be persisted is answered 451."""
        transport = SMTPSessionTransport(spool_store)
        offer = asyncio.create_task(transport.offer("a@x.com", ["b@y.com"], b"mail"))

        result = await transport.receive(
            SessionState.NEW, spool_store.spool_dir / "missing" / "x.mail"
        )

        assert result is None
        assert await offer == REPLY_TEMPFAIL
        assert transport.refusing is True


# ==============================================================================
# GatewayHandler Tests
# ==============================================================================


def make_session(peer=("10.0.0.1", 40000)) -> MagicMock:
    session = MagicMock()
    session.peer = peer
    return session


def make_envelope(content: bytes | str) -> MagicMock:
    envelope = MagicMock()
    envelope.mail_from = "alice@x.com"
    envelope.rcpt_tos = ["bob@partner.org"]
    envelope.content = content
    return envelope


class TestGatewayHandler:
    """Tests for the aiosmtpd handler."""

    @pytest.fixture
    def batches(self) -> list:
        return []

    @pytest.fixture
    def handler_factory(self, spool_store, batches):
        def factory(capacity: int) -> GatewayHandler:
            async def run_session(transport):
                try:
                    batches.append(await fill_batch(transport, spool_store, capacity))
                except SessionAbortedError:
                    batches.append("aborted")

            return GatewayHandler(spool_store, run_session)

        return factory

    @pytest.mark.asyncio
    async def test_data_accepted_and_quit_ends_session(
        self, handler_factory, batches, sample_email_bytes
    ) -> None:
        """Test DATA gets 250 and QUIT lets the session finish its batch."""
        handler = handler_factory(5)
        server, session = MagicMock(), make_session()

        reply = await handler.handle_DATA(server, session, make_envelope(sample_email_bytes))
        quit_reply = await handler.handle_QUIT(server, session, MagicMock())
        await handler.wait_closed()

        assert reply == REPLY_ACCEPTED
        assert quit_reply == "221 Bye"
        assert len(batches) == 1
        (record,) = batches[0]
        assert record.mail.sender == "alice@x.com"
        assert record.path.read_bytes() == sample_email_bytes

    @pytest.mark.asyncio
    async def test_one_session_per_connection(
        self, handler_factory, batches, sample_email_bytes
    ) -> None:
        """Test that mails of one connection share a session and batch."""
        handler = handler_factory(5)
        server, session = MagicMock(), make_session()

        await handler.handle_DATA(server, session, make_envelope(sample_email_bytes))
        await handler.handle_DATA(server, session, make_envelope(sample_email_bytes))

        assert handler.active_sessions == 1
        await handler.handle_QUIT(server, session, MagicMock())
        await handler.wait_closed()
        assert len(batches[0]) == 2

    @pytest.mark.asyncio
    async def test_full_batch_answers_421_and_closes(
        self, handler_factory, batches, sample_email_bytes
    ) -> None:
        """Test that mail past the batch capacity is refused with 421."""
        handler = handler_factory(1)
        server, session = MagicMock(), make_session()

        first = await handler.handle_DATA(server, session, make_envelope(sample_email_bytes))
        second = await handler.handle_DATA(server, session, make_envelope(sample_email_bytes))
        await asyncio.sleep(0)
        await handler.wait_closed()

        assert first == REPLY_ACCEPTED
        assert second == REPLY_BUSY
        server.transport.close.assert_called_once()
        assert len(batches[0]) == 1

    @pytest.mark.asyncio
    async def test_connection_lost_aborts_session(
        self, handler_factory, batches, sample_email_bytes
    ) -> None:
        """Test that a dropped client abandons the batch."""
        handler = handler_factory(5)
        server, session = MagicMock(), make_session()

        await handler.handle_DATA(server, session, make_envelope(sample_email_bytes))
        handler.connection_lost(session)
        await handler.wait_closed()

        assert batches == ["aborted"]
        assert handler.active_sessions == 0

    @pytest.mark.asyncio
    async def test_quit_without_mail_starts_no_session(self, handler_factory, batches) -> None:
        """Test that a connection that never sent DATA has no session."""
        handler = handler_factory(5)
        session = make_session()

        assert await handler.handle_QUIT(MagicMock(), session, MagicMock()) == "221 Bye"
        handler.connection_lost(session)
        await handler.wait_closed()

        assert batches == []

    @pytest.mark.asyncio
    async def test_text_content_is_encoded(self, handler_factory, batches) -> None:
        """Test that str content from aiosmtpd is stored as UTF-8 bytes."""
        handler = handler_factory(5)
        server, session = MagicMock(), make_session()

        await handler.handle_DATA(server, session, make_envelope("Subject: plain\n\nbody\n"))
        await handler.handle_QUIT(server, session, MagicMock())
        await handler.wait_closed()

        assert batches[0].records[0].path.read_bytes() == "Subject: plain\n\nbody\n".encode()

    @pytest.mark.asyncio
    async def test_crashing_session_is_contained(self, spool_store, sample_email_bytes) -> None:
        """Test that an exception in the session runner does not escape."""

        async def run_session(transport):
            await transport.receive(SessionState.NEW, await spool_store.allocate())
            raise RuntimeError("boom")

        handler = GatewayHandler(spool_store, run_session)
        await handler.handle_DATA(MagicMock(), make_session(), make_envelope(sample_email_bytes))

        await handler.wait_closed()
