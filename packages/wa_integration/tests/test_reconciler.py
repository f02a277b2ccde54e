"""
Tests for connection state merging and the connection reconciler.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from wa_integration.contracts.payloads import WebhookEvent
from wa_integration.errors import GatewayUnavailable, MissingCredential
from wa_integration.gateway.base import ConnectionState
from wa_integration.persistence.models import WhatsAppAccount
from wa_integration.reconciler.service import ConnectionReconciler
from wa_integration.reconciler.state import (
    MergeOutcome,
    Observation,
    ObservationSource,
    apply_observation,
    observation_from_webhook,
    register_orphan_strike,
)

T0 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_row(**overrides) -> WhatsAppAccount:
    values = dict(
        account_key="acme_1",
        display_name="Acme",
        status=ConnectionState.DISCONNECTED.value,
        phone_identity=None,
        pairing_payload=None,
        state_observed_at=None,
        state_source=None,
        orphan_strikes=0,
        needs_attention=False,
    )
    values.update(overrides)
    return WhatsAppAccount(**values)


def observe(state, at, source=ObservationSource.POLL, **kwargs) -> Observation:
    return Observation(state=state, observed_at=at, source=source, **kwargs)


class TestApplyObservation:
    """Tests for the merge rule."""

    def test_first_observation_applied(self):
        row = make_row()
        result = apply_observation(row, observe(ConnectionState.CONNECTING, T0, pairing_payload="qr"))

        assert result.applied
        assert result.changed
        assert row.status == "connecting"
        assert row.pairing_payload == "qr"
        assert row.state_source == "poll"

    def test_older_observation_dropped(self):
        row = make_row(status="connecting", state_observed_at=T0, state_source="poll")
        result = apply_observation(row, observe(ConnectionState.DISCONNECTED, T0 - timedelta(seconds=1)))

        assert result.outcome == MergeOutcome.STALE
        assert row.status == "connecting"

    def test_webhook_beats_poll_on_tie(self):
        row = make_row(status="connecting", state_observed_at=T0, state_source="poll")
        result = apply_observation(
            row, observe(ConnectionState.DISCONNECTED, T0, ObservationSource.WEBHOOK)
        )

        assert result.applied
        assert row.status == "disconnected"

    def test_poll_loses_to_webhook_on_tie(self):
        row = make_row(status="disconnected", state_observed_at=T0, state_source="webhook")
        result = apply_observation(row, observe(ConnectionState.CONNECTING, T0))

        assert result.outcome == MergeOutcome.STALE
        assert row.status == "disconnected"

    def test_naive_stored_timestamp(self):
        """Test rows read back from SQLite carry naive UTC timestamps."""
        row = make_row(status="connecting", state_observed_at=T0.replace(tzinfo=None), state_source="poll")
        result = apply_observation(row, observe(ConnectionState.DISCONNECTED, T0 + timedelta(seconds=1)))
        assert result.applied

    def test_failed_is_sticky(self):
        row = make_row(status="failed", state_observed_at=T0, state_source="local")
        result = apply_observation(
            row,
            observe(ConnectionState.CONNECTED, T0 + timedelta(minutes=5), phone_identity="5511999999999"),
        )

        assert result.outcome == MergeOutcome.STICKY_FAILED
        assert row.status == "failed"

    def test_unknown_state_ignored(self):
        row = make_row(status="connecting", state_observed_at=T0)
        result = apply_observation(row, observe(None, T0 + timedelta(seconds=5), raw_state="refused"))

        assert result.outcome == MergeOutcome.UNKNOWN_STATE
        assert row.status == "connecting"

    def test_connected_requires_identity(self):
        row = make_row(status="connecting", pairing_payload="qr")
        result = apply_observation(row, observe(ConnectionState.CONNECTED, T0))

        assert result.outcome == MergeOutcome.MISSING_IDENTITY
        assert row.status == "connecting"

    def test_connected_clears_pairing(self):
        row = make_row(status="connecting", pairing_payload="qr", orphan_strikes=1, needs_attention=True)
        result = apply_observation(
            row, observe(ConnectionState.CONNECTED, T0, phone_identity="5511999999999", profile_name="Acme")
        )

        assert result.changed
        assert row.status == "connected"
        assert row.phone_identity == "5511999999999"
        assert row.pairing_payload is None
        assert row.last_connected_at == T0
        assert row.orphan_strikes == 0
        assert row.needs_attention is False

    def test_connected_keeps_stored_identity(self):
        row = make_row(status="disconnected", phone_identity="5511999999999")
        result = apply_observation(row, observe(ConnectionState.CONNECTED, T0))

        assert result.applied
        assert row.phone_identity == "5511999999999"

    def test_late_poll_does_not_override_newer_webhook(self):
        """
        Test interleaving: a poll that started before a webhook but finished
        after it must not undo the webhook.
        """
        row = make_row(status="connecting", pairing_payload="qr")
        poll_started = T0
        webhook_received = T0 + timedelta(milliseconds=300)

        apply_observation(
            row,
            observe(ConnectionState.CONNECTED, webhook_received, ObservationSource.WEBHOOK, phone_identity="5511999999999"),
        )
        late_poll = apply_observation(row, observe(ConnectionState.CONNECTING, poll_started))

        assert late_poll.outcome == MergeOutcome.STALE
        assert row.status == "connected"


class TestOrphanStrikes:
    def test_two_strikes_orphan_the_account(self):
        row = make_row(status="connected", phone_identity="5511999999999", state_observed_at=T0)

        assert register_orphan_strike(row, T0 + timedelta(minutes=5)) is False
        assert row.status == "connected"
        assert row.orphan_strikes == 1

        assert register_orphan_strike(row, T0 + timedelta(minutes=10)) is True
        assert row.status == "disconnected"
        assert row.needs_attention is True

    def test_already_flagged_not_reported_again(self):
        row = make_row(status="disconnected", orphan_strikes=2, needs_attention=True)
        assert register_orphan_strike(row, T0) is False
        assert row.orphan_strikes == 3

    def test_failed_accounts_ignored(self):
        row = make_row(status="failed")
        assert register_orphan_strike(row, T0) is False
        assert row.orphan_strikes == 0


class TestWebhookObservations:
    def test_connection_update(self):
        event = WebhookEvent(
            event="connection.update",
            instance="acme_1",
            data={"state": "open", "wuid": "5511999999999@s.whatsapp.net", "profileName": "Acme"},
        )
        observation = observation_from_webhook(event, T0)

        assert observation.state == ConnectionState.CONNECTED
        assert observation.phone_identity == "5511999999999"
        assert observation.source == ObservationSource.WEBHOOK
        assert observation.observed_at == T0

    def test_qrcode_updated(self):
        event = WebhookEvent(
            event="qrcode.updated",
            instance="acme_1",
            data={"qrcode": {"base64": "data:image/png;base64,QR", "code": "2@x"}},
        )
        observation = observation_from_webhook(event, T0)

        assert observation.state == ConnectionState.CONNECTING
        assert observation.pairing_payload == "data:image/png;base64,QR"

    def test_other_events(self):
        assert observation_from_webhook(WebhookEvent(event="messages.upsert"), T0) is None


class TestConnectionReconciler:
    """Tests for the reconciler against the stub gateway."""

    @pytest.fixture
    def reconciler(self, db, gateway, encryption_key):
        return ConnectionReconciler(
            db, gateway, concurrency=4, deadline_seconds=5, interval_seconds=300, encryption_key=encryption_key
        )

    async def test_connect_requests_pairing(self, db, reconciler, make_account, gateway):
        account = make_account("acme_1")

        result = await reconciler.request_connection(account.id)

        assert result.already_connected is False
        assert result.state == "connecting"
        assert result.pairing_payload.startswith("stub-qr-acme_1")
        db.refresh(account)
        assert account.state_source == "local"
        assert gateway.accounts["acme_1"]["state"] == "connecting"

    async def test_connect_already_open(self, db, reconciler, make_account):
        account = make_account("acme_1", gateway_state="open", phone="5511999999999")

        result = await reconciler.request_connection(account.id)

        assert result.already_connected is True
        db.refresh(account)
        assert account.status == "connected"
        assert account.phone_identity == "5511999999999"

    async def test_connect_failed_without_secret(self, reconciler, make_account):
        account = make_account("acme_1", status="failed", secret=None)

        with pytest.raises(MissingCredential):
            await reconciler.request_connection(account.id)

    async def test_connect_failed_with_secret_clears_failure(self, db, reconciler, make_account):
        account = make_account("acme_1", status="failed")
        account.provisioning_error = "credential undecryptable"
        db.commit()

        result = await reconciler.request_connection(account.id)

        assert result.state == "connecting"
        db.refresh(account)
        assert account.provisioning_error is None

    async def test_connect_account_missing_on_gateway(self, reconciler, make_account):
        account = make_account("acme_1", gateway_state=None)

        with pytest.raises(GatewayUnavailable):
            await reconciler.request_connection(account.id)

    async def test_poll_applies_gateway_state(self, db, reconciler, make_account):
        account = make_account("acme_1", status="connecting", gateway_state="open", phone="5511999999999")

        report = await reconciler.poll_all()

        assert report.total == 1
        assert report.polled == 1
        assert report.changed == 1
        db.refresh(account)
        assert account.status == "connected"
        assert account.last_polled_at is not None

    async def test_poll_orphans_after_two_strikes(self, db, reconciler, make_account):
        account = make_account("acme_1", status="connected", phone="5511999999999", gateway_state=None)

        first = await reconciler.poll_all()
        db.refresh(account)
        assert first.orphaned == 0
        assert account.status == "connected"

        second = await reconciler.poll_all()
        db.refresh(account)
        assert second.orphaned == 1
        assert account.status == "disconnected"
        assert account.needs_attention is True

    async def test_poll_skips_failed_and_deleted(self, db, reconciler, make_account, gateway):
        make_account("acme_failed", status="failed")
        deleted = make_account("acme_deleted")
        deleted.deleted_at = datetime.now(timezone.utc)
        db.commit()

        report = await reconciler.poll_all()

        assert report.total == 0
        assert ("fetch_connection_state", "acme_failed") not in gateway.calls

    async def test_poll_skips_account_with_fresh_webhook(self, db, reconciler, make_account, gateway):
        account = make_account("acme_1")
        now = datetime.now(timezone.utc)
        account.last_webhook_at = now
        account.last_polled_at = now
        db.commit()

        report = await reconciler.poll_all()

        assert report.skipped_fresh == 1
        assert ("fetch_connection_state", "acme_1") not in gateway.calls

    async def test_fresh_webhook_skips_at_most_one_cycle(self, db, reconciler, make_account):
        account = make_account("acme_1")
        now = datetime.now(timezone.utc)
        account.last_webhook_at = now
        account.last_polled_at = now - timedelta(seconds=600)
        db.commit()

        report = await reconciler.poll_all()

        assert report.skipped_fresh == 0
        assert report.polled == 1

    async def test_webhook_event_connects(self, db, reconciler, make_account):
        account = make_account("acme_1", status="connecting")
        event = WebhookEvent(
            event="connection.update",
            instance="acme_1",
            data={"state": "open", "wuid": "5511999999999@s.whatsapp.net"},
        )

        merge = await reconciler.apply_webhook_event("acme_1", event, T0)

        assert merge.changed
        db.refresh(account)
        assert account.status == "connected"
        assert account.phone_identity == "5511999999999"
        assert account.state_source == "webhook"

    async def test_webhook_event_unknown_account(self, reconciler):
        event = WebhookEvent(event="connection.update", instance="ghost", data={"state": "open"})
        assert await reconciler.apply_webhook_event("ghost", event, T0) is None

    async def test_stale_webhook_after_local_connect(self, db, reconciler, make_account):
        """Test a webhook received before the user's connect does not roll it back."""
        account = make_account("acme_1")
        await reconciler.request_connection(account.id)

        event = WebhookEvent(event="connection.update", instance="acme_1", data={"state": "close"})
        merge = await reconciler.apply_webhook_event("acme_1", event, T0)

        assert merge.outcome == MergeOutcome.STALE
        db.refresh(account)
        assert account.status == "connecting"

    async def test_poll_concurrency_is_bounded(self, db, gateway, make_account, encryption_key, monkeypatch):
        for n in range(5):
            make_account(f"acme_{n}", status="connecting", gateway_state="open", phone=f"551199999999{n}")

        original = gateway.fetch_connection_state
        in_flight = 0
        peak = 0

        async def fetch(account_key, api_key=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return await original(account_key, api_key)

        monkeypatch.setattr(gateway, "fetch_connection_state", fetch)
        reconciler = ConnectionReconciler(db, gateway, concurrency=2, deadline_seconds=5, encryption_key=encryption_key)

        report = await reconciler.poll_all()

        assert report.polled == 5
        assert report.changed == 5
        assert peak == 2

    async def test_poll_deadline_abandons_hung_account(
        self, db, gateway, make_account, encryption_key, monkeypatch
    ):
        hung = make_account("acme_hung", status="connecting")
        for n in range(3):
            make_account(f"acme_{n}", status="connecting", gateway_state="open", phone=f"551199999999{n}")

        original = gateway.fetch_connection_state

        async def fetch(account_key, api_key=None):
            if account_key == "acme_hung":
                await asyncio.Event().wait()
            return await original(account_key, api_key)

        monkeypatch.setattr(gateway, "fetch_connection_state", fetch)
        reconciler = ConnectionReconciler(
            db, gateway, concurrency=2, deadline_seconds=0.2, encryption_key=encryption_key
        )

        started = time.monotonic()
        report = await reconciler.poll_all()

        assert time.monotonic() - started < 2
        assert report.total == 4
        assert report.polled == 3
        assert report.changed == 3
        assert report.abandoned == 1
        db.refresh(hung)
        assert hung.last_polled_at is None
        assert hung.status == "connecting"


class TestGatewayCallsBeforeLock:
    """Gateway calls finish before the account row is locked."""

    @pytest.fixture
    def reconciler(self, db, gateway, encryption_key, monkeypatch):
        reconciler = ConnectionReconciler(db, gateway, encryption_key=encryption_key)
        repo = reconciler.repo
        for name in ("get_account", "get_account_by_key"):
            original = getattr(repo, name)

            def read(key, for_update=False, _original=original):
                if for_update:
                    gateway.calls.append(("lock", str(key)))
                return _original(key, for_update=for_update)

            monkeypatch.setattr(repo, name, read)
        return reconciler

    async def test_connect(self, db, reconciler, gateway, make_account):
        account = make_account("acme_1")
        gateway.calls.clear()

        await reconciler.request_connection(account.id)

        assert [name for name, _key in gateway.calls] == ["fetch_connection_state", "request_pairing", "lock"]
        db.refresh(account)
        assert account.status == "connecting"

    async def test_webhook_phone_lookup(self, db, reconciler, gateway, make_account):
        account = make_account("acme_1", status="connecting")
        gateway.set_state("acme_1", "open", owner_jid="5511999999999@s.whatsapp.net")
        gateway.calls.clear()
        event = WebhookEvent(event="connection.update", instance="acme_1", data={"state": "open"})

        merge = await reconciler.apply_webhook_event("acme_1", event, T0)

        assert merge.changed
        assert [name for name, _key in gateway.calls] == ["list_accounts", "lock"]
        db.refresh(account)
        assert account.phone_identity == "5511999999999"
