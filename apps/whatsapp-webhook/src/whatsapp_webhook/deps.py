"""FastAPI dependencies for the webhook service."""

import functools
import logging
from uuid import UUID

import redis
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from wacore.db import get_db
from wacore.redis import get_redis_client
from wacore.settings import Settings, get_settings

from wa_integration.dispatch.queue import DispatchQueue
from wa_integration.dispatch.rate_limit import TenantRateLimiter
from wa_integration.gateway import MessagingGateway, build_gateway
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.persistence.secrets import SecretDecryptionError, decrypt_secret
from wa_integration.policy.service import PolicyService
from wa_integration.security.gate import WebhookAuthGate
from wa_integration.service.accounts import AccountService
from wa_integration.service.messaging import MessagingService

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


def get_redis() -> redis.Redis:
    return get_redis_client()


@functools.lru_cache()
def _shared_gateway() -> MessagingGateway:
    return build_gateway()


def get_gateway() -> MessagingGateway:
    """Gateway client shared by all requests of the process."""
    return _shared_gateway()


def get_gate(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WebhookAuthGate:
    """Webhook auth gate whose per-account secrets come from the database."""
    repo = WhatsAppRepository(db)

    def lookup(account_key: str) -> str | None:
        account = repo.get_account_by_key(account_key)
        if account is None or account.is_deleted or not account.secret_encrypted:
            return None
        try:
            return decrypt_secret(account.secret_encrypted, settings.ENCRYPTION_KEY)
        except SecretDecryptionError:
            logger.warning(f"Stored secret of {account_key} cannot be decrypted")
            return None

    return WebhookAuthGate.from_settings(settings, secret_lookup=lookup)


def require_tenant(x_tenant_id: str | None = Header(None, alias=TENANT_HEADER)) -> UUID:
    """Tenant of an application API request, from the X-Tenant-ID header."""
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail=f"{TENANT_HEADER} header is required")
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{TENANT_HEADER} must be a UUID")


def get_queue(
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
) -> DispatchQueue:
    return DispatchQueue.from_settings(redis_client, settings)


def get_rate_limiter(
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
) -> TenantRateLimiter:
    return TenantRateLimiter(redis_client, default_plan=settings.DEFAULT_RATE_PLAN)


def get_account_service(
    db: Session = Depends(get_db),
    gateway: MessagingGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> AccountService:
    return AccountService.from_settings(db, gateway, settings)


def get_messaging_service(
    db: Session = Depends(get_db),
    queue: DispatchQueue = Depends(get_queue),
) -> MessagingService:
    return MessagingService(db, queue)


def get_policy_service(db: Session = Depends(get_db)) -> PolicyService:
    return PolicyService(db)
