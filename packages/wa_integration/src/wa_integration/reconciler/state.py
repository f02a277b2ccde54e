"""
Connection State Merging

Applies gateway observations (poll results, webhook events, explicit user
actions) to an account row.

Merge rule:
- an observation older than the last applied one is dropped
- on equal timestamps a webhook beats a poll
- FAILED is sticky: only an explicit reconnect leaves it
- unknown gateway states are ignored
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from wacore.clock import as_utc

from wa_integration.contracts.event_types import GatewayEvent
from wa_integration.contracts.payloads import WebhookEvent
from wa_integration.gateway.base import ConnectionState, map_gateway_state, strip_jid
from wa_integration.persistence.models import WhatsAppAccount

logger = logging.getLogger(__name__)

# Consecutive unauthorized/not-found poll results before an account is orphaned
ORPHAN_STRIKE_LIMIT = 2


class ObservationSource(str, Enum):
    """Where an observation of the gateway state came from."""

    POLL = "poll"
    WEBHOOK = "webhook"
    LOCAL = "local"  # Result of an explicit user action against the gateway


# Tie-break order for observations with equal timestamps
SOURCE_PRIORITY = {
    ObservationSource.POLL.value: 0,
    ObservationSource.WEBHOOK.value: 1,
    ObservationSource.LOCAL.value: 2,
}


class MergeOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    STICKY_FAILED = "sticky_failed"
    UNKNOWN_STATE = "unknown_state"
    MISSING_IDENTITY = "missing_identity"


@dataclass
class Observation:
    """A point-in-time view of an account's gateway state."""

    state: ConnectionState | None
    observed_at: datetime
    source: ObservationSource
    phone_identity: str | None = None
    profile_name: str | None = None
    pairing_payload: str | None = None
    raw_state: str | None = None


@dataclass
class MergeResult:
    outcome: MergeOutcome
    previous_state: str
    current_state: str

    @property
    def applied(self) -> bool:
        return self.outcome == MergeOutcome.APPLIED

    @property
    def changed(self) -> bool:
        return self.applied and self.previous_state != self.current_state


def is_newer(observation: Observation, account: WhatsAppAccount) -> bool:
    """Whether an observation may overwrite the account's last applied one."""
    stored_at = as_utc(account.state_observed_at)
    if stored_at is None:
        return True

    observed_at = as_utc(observation.observed_at)
    if observed_at != stored_at:
        return observed_at > stored_at

    stored_priority = SOURCE_PRIORITY.get(account.state_source or "", 0)
    return SOURCE_PRIORITY[observation.source.value] >= stored_priority


def apply_observation(account: WhatsAppAccount, observation: Observation) -> MergeResult:
    """
    Merge an observation into an account row.

    The caller commits. Connected requires a phone identity, taken from the
    observation or, failing that, the one already stored.
    """
    previous = account.status

    def result(outcome: MergeOutcome) -> MergeResult:
        return MergeResult(outcome=outcome, previous_state=previous, current_state=account.status)

    if previous == ConnectionState.FAILED.value:
        return result(MergeOutcome.STICKY_FAILED)

    if observation.state is None or observation.state == ConnectionState.FAILED:
        return result(MergeOutcome.UNKNOWN_STATE)

    if not is_newer(observation, account):
        return result(MergeOutcome.STALE)

    if observation.state == ConnectionState.CONNECTED:
        phone = observation.phone_identity or account.phone_identity
        if not phone:
            return result(MergeOutcome.MISSING_IDENTITY)
        account.phone_identity = phone
        account.pairing_payload = None
        if previous != ConnectionState.CONNECTED.value:
            account.last_connected_at = observation.observed_at
    elif observation.state == ConnectionState.CONNECTING:
        if observation.pairing_payload:
            account.pairing_payload = observation.pairing_payload
    else:
        account.pairing_payload = None

    if observation.profile_name:
        account.profile_name = observation.profile_name

    account.status = observation.state.value
    account.state_observed_at = observation.observed_at
    account.state_source = observation.source.value
    account.orphan_strikes = 0
    account.needs_attention = False

    return result(MergeOutcome.APPLIED)


def register_orphan_strike(account: WhatsAppAccount, observed_at: datetime) -> bool:
    """
    Record an unauthorized/not-found poll result.

    Returns:
        True if this strike orphaned the account (disconnected + needs_attention)
    """
    if account.status == ConnectionState.FAILED.value:
        return False
    if not is_newer(Observation(None, observed_at, ObservationSource.POLL), account):
        return False

    account.orphan_strikes = (account.orphan_strikes or 0) + 1
    if account.orphan_strikes < ORPHAN_STRIKE_LIMIT:
        return False

    already_flagged = account.needs_attention
    account.status = ConnectionState.DISCONNECTED.value
    account.pairing_payload = None
    account.needs_attention = True
    account.state_observed_at = observed_at
    account.state_source = ObservationSource.POLL.value
    return not already_flagged


def _pairing_from_data(data: dict[str, Any]) -> str | None:
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict):
        return qrcode.get("base64") or qrcode.get("code")
    if isinstance(qrcode, str) and qrcode:
        return qrcode
    return data.get("base64") or data.get("code")


def observation_from_webhook(event: WebhookEvent, received_at: datetime) -> Observation | None:
    """
    Build an observation from a connection.update or qrcode.updated event.

    Returns None for other events.
    """
    data = event.data if isinstance(event.data, dict) else {}

    if event.event == GatewayEvent.CONNECTION_UPDATE.value:
        raw_state = data.get("state") or data.get("status")
        return Observation(
            state=map_gateway_state(raw_state),
            observed_at=received_at,
            source=ObservationSource.WEBHOOK,
            phone_identity=strip_jid(data.get("wuid") or data.get("ownerJid") or event.sender),
            profile_name=data.get("profileName"),
            raw_state=raw_state,
        )

    if event.event == GatewayEvent.QRCODE_UPDATED.value:
        return Observation(
            state=ConnectionState.CONNECTING,
            observed_at=received_at,
            source=ObservationSource.WEBHOOK,
            pairing_payload=_pairing_from_data(data),
            raw_state="connecting",
        )

    return None
