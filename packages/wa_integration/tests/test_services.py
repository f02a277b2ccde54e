"""
Tests for the account and messaging services and for stored identifiers.
"""

from datetime import timedelta
from uuid import UUID

import pytest
import redis
from sqlalchemy import text

from wacore.clock import utcnow

from wa_integration.dispatch.jobs import JobKind
from wa_integration.dispatch.queue import DispatchQueue
from wa_integration.errors import (
    AccountNotFound,
    DispatchUnavailable,
    GatewayError,
    GatewayUnavailable,
    InvalidAccountState,
)
from wa_integration.persistence.models import MessageDirection, MessageStatus, WhatsAppMessage
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.persistence.secrets import decrypt_secret
from wa_integration.reconciler.service import ConnectionReconciler
from wa_integration.service.accounts import AccountService, account_to_dict
from wa_integration.service.messaging import MessagingService


@pytest.fixture
def account_service(db, gateway, encryption_key):
    return AccountService(
        db,
        gateway,
        ConnectionReconciler(db, gateway, encryption_key=encryption_key),
        backend_url="https://app.example.com/",
        encryption_key=encryption_key,
    )


@pytest.fixture
def messaging_service(db, redis_client):
    return MessagingService(db, DispatchQueue(redis_client))


async def unavailable(*args, **kwargs):
    raise GatewayUnavailable("Connection refused", code="CONNECTION_ERROR", retryable=True)


def refuse(*args, **kwargs):
    raise redis.ConnectionError("Connection refused")


class TestAccountService:
    """Tests for the account lifecycle."""

    async def test_create_provisions_on_gateway(self, account_service, gateway, sample_tenant_id, encryption_key):
        account = await account_service.create_account(sample_tenant_id, "Ferretería Lima")

        assert account.account_key.startswith(str(sample_tenant_id)[:8] + "_")
        assert account.status == "disconnected"
        assert account.provisioning_error is None
        assert ("create_account", account.account_key) in gateway.calls

        stored = decrypt_secret(account.secret_encrypted, encryption_key)
        assert stored == gateway.accounts[account.account_key]["secret"]

    async def test_create_keeps_row_when_provisioning_fails(
        self, account_service, gateway, monkeypatch, sample_tenant_id
    ):
        monkeypatch.setattr(gateway, "create_account", unavailable)

        account = await account_service.create_account(sample_tenant_id, "Ferretería Lima")

        assert account.id is not None
        assert account.secret_encrypted is None
        assert "Connection refused" in account.provisioning_error
        assert account_service.list_accounts(sample_tenant_id) == [account]

    async def test_connect_provisions_again(self, account_service, gateway, monkeypatch, sample_tenant_id):
        monkeypatch.setattr(gateway, "create_account", unavailable)
        account = await account_service.create_account(sample_tenant_id, "Ferretería Lima")
        monkeypatch.undo()

        result = await account_service.connect(sample_tenant_id, account.id)

        assert result.state == "connecting"
        assert result.pairing_payload
        assert account.provisioning_error is None
        assert account.secret_encrypted is not None

    async def test_connect_fails_when_provisioning_still_fails(
        self, account_service, gateway, monkeypatch, sample_tenant_id
    ):
        monkeypatch.setattr(gateway, "create_account", unavailable)
        account = await account_service.create_account(sample_tenant_id, "Ferretería Lima")

        with pytest.raises(GatewayError) as exc_info:
            await account_service.connect(sample_tenant_id, account.id)
        assert exc_info.value.code == "PROVISIONING_FAILED"

    async def test_other_tenant_cannot_see_account(self, account_service, make_account, other_tenant_id):
        account = make_account("acme_1")

        with pytest.raises(AccountNotFound):
            account_service.get_account(other_tenant_id, account.id)
        with pytest.raises(AccountNotFound):
            await account_service.connect(other_tenant_id, account.id)

    async def test_disconnect(self, db, account_service, gateway, make_account, sample_tenant_id):
        account = make_account("acme_1", status="connected", phone="5511999999999", gateway_state="open")

        await account_service.disconnect(sample_tenant_id, account.id)

        db.refresh(account)
        assert account.status == "disconnected"
        assert account.state_source == "local"
        assert gateway.accounts["acme_1"]["state"] == "close"

    async def test_disconnect_failed_account_rejected(self, account_service, make_account, sample_tenant_id):
        account = make_account("acme_1", status="failed")

        with pytest.raises(InvalidAccountState):
            await account_service.disconnect(sample_tenant_id, account.id)

    async def test_delete(self, account_service, gateway, make_account, sample_tenant_id):
        account = make_account("acme_1")

        await account_service.delete_account(sample_tenant_id, account.id)

        assert account.deleted_at is not None
        assert "acme_1" not in gateway.accounts
        assert account_service.list_accounts(sample_tenant_id) == []
        with pytest.raises(AccountNotFound):
            account_service.get_account(sample_tenant_id, account.id)

    async def test_delete_when_gateway_lost_account(self, account_service, make_account, sample_tenant_id):
        account = make_account("acme_1", gateway_state=None)

        await account_service.delete_account(sample_tenant_id, account.id)

        assert account.deleted_at is not None

    async def test_configure_webhook(self, account_service, gateway, make_account, sample_tenant_id):
        account = make_account("acme_1")

        url = await account_service.configure_webhook(sample_tenant_id, account.id)

        assert url == "https://app.example.com/webhook/acme_1"
        assert gateway.accounts["acme_1"]["webhook_url"] == url

    def test_connection_status(self, account_service, make_account, sample_tenant_id):
        account = make_account("acme_1", status="connected", phone="5511999999999")

        status = account_service.get_connection_status(sample_tenant_id, account.id).to_dict()

        assert status["state"] == "connected"
        assert status["phone_identity"] == "5511999999999"
        assert status["needs_attention"] is False

    def test_public_representation_has_no_secret(self, make_account):
        data = account_to_dict(make_account("acme_1"))
        assert "secret_encrypted" not in data
        assert "account-secret" not in str(data)


class TestMessagingService:
    """Tests for application sends."""

    def test_send_single_records_message(self, db, messaging_service, make_account, sample_tenant_id):
        account = make_account("acme_1", status="connected", phone="5511999999999")

        job = messaging_service.send_single(sample_tenant_id, account.id, "5511888888888", "Hola")

        message = WhatsAppRepository(db).get_message(job.message_id)
        assert message.direction == MessageDirection.OUTBOUND.value
        assert message.status == MessageStatus.PENDING.value
        assert message.content == "Hola"
        assert job.kind == JobKind.SINGLE
        assert job.recipient == "5511888888888"

    def test_send_to_foreign_account_rejected(self, messaging_service, make_account, other_tenant_id):
        account = make_account("acme_1")

        with pytest.raises(AccountNotFound):
            messaging_service.send_single(other_tenant_id, account.id, "5511888888888", "Hola")

    def test_send_bulk(self, db, messaging_service, make_account, sample_tenant_id):
        account = make_account("acme_1", status="connected", phone="5511999999999")

        result = messaging_service.send_bulk(
            sample_tenant_id, account.id, ["5511000000001", "5511000000002"], "Promo", delay_ms=2000
        )

        assert result.total_queued == 2
        assert result.estimated_seconds == 4.0
        assert db.query(WhatsAppMessage).count() == 2

    def test_send_bulk_validates_before_recording(self, db, messaging_service, make_account, sample_tenant_id):
        account = make_account("acme_1")

        with pytest.raises(ValueError):
            messaging_service.send_bulk(sample_tenant_id, account.id, ["5511000000001"], "Promo", delay_ms=0)
        with pytest.raises(ValueError):
            messaging_service.send_bulk(sample_tenant_id, account.id, [], "Promo")
        assert db.query(WhatsAppMessage).count() == 0

    def test_send_scheduled(self, messaging_service, make_account, sample_tenant_id):
        account = make_account("acme_1")
        send_at = utcnow() + timedelta(hours=1)

        job = messaging_service.send_scheduled(sample_tenant_id, account.id, "5511888888888", "Recordatorio", send_at)

        assert job.kind == JobKind.SCHEDULED
        assert job.not_before == send_at

    def test_send_scheduled_in_past_records_nothing(self, db, messaging_service, make_account, sample_tenant_id):
        account = make_account("acme_1")

        with pytest.raises(ValueError):
            messaging_service.send_scheduled(
                sample_tenant_id, account.id, "5511888888888", "Tarde", utcnow() - timedelta(minutes=1)
            )
        assert db.query(WhatsAppMessage).count() == 0

    def test_queue_failure_marks_message_failed(
        self, db, messaging_service, make_account, sample_tenant_id, monkeypatch
    ):
        account = make_account("acme_1", status="connected", phone="5511999999999")
        monkeypatch.setattr(messaging_service.queue, "enqueue_single", refuse)

        with pytest.raises(DispatchUnavailable) as exc_info:
            messaging_service.send_single(sample_tenant_id, account.id, "5511888888888", "Hola")

        [message_id] = exc_info.value.message_ids
        message = WhatsAppRepository(db).get_message(message_id)
        assert message.status == MessageStatus.FAILED.value
        assert message.error_code == "ENQUEUE_FAILED"
        assert "Connection refused" in message.error_message

    def test_bulk_queue_failure_marks_batch_failed(
        self, db, messaging_service, make_account, sample_tenant_id, monkeypatch
    ):
        account = make_account("acme_1", status="connected", phone="5511999999999")
        monkeypatch.setattr(messaging_service.queue, "enqueue_bulk", refuse)

        with pytest.raises(DispatchUnavailable):
            messaging_service.send_bulk(sample_tenant_id, account.id, ["5511000000001", "5511000000002"], "Promo")

        statuses = [message.status for message in db.query(WhatsAppMessage).all()]
        assert statuses == [MessageStatus.FAILED.value, MessageStatus.FAILED.value]

    def test_scheduled_queue_failure_marks_message_failed(
        self, db, messaging_service, make_account, sample_tenant_id, monkeypatch
    ):
        account = make_account("acme_1")
        monkeypatch.setattr(messaging_service.queue, "enqueue_scheduled", refuse)

        with pytest.raises(DispatchUnavailable):
            messaging_service.send_scheduled(
                sample_tenant_id, account.id, "5511888888888", "Luego", utcnow() + timedelta(hours=1)
            )

        message = db.query(WhatsAppMessage).one()
        assert message.status == MessageStatus.FAILED.value
        assert message.error_code == "ENQUEUE_FAILED"


class TestStoredIdentifiers:
    """Ids made only of digits must survive storage as UUIDs."""

    def test_all_digit_tenant_id_reads_back_as_uuid(self, db, make_account):
        tenant_id = UUID("12345678-1234-1234-1234-123456789012")
        account_id = make_account("acme_1", tenant_id=tenant_id).id
        db.expire_all()

        repo = WhatsAppRepository(db)
        stored = repo.get_account(account_id)

        assert isinstance(stored.tenant_id, UUID)
        assert stored.tenant_id == tenant_id
        assert repo.list_accounts(tenant_id) == [stored]
        assert db.execute(text("SELECT typeof(tenant_id) FROM whatsapp_accounts")).scalar() == "text"
