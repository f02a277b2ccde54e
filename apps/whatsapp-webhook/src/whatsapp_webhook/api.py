"""
Application API

Tenant-scoped HTTP surface over the integration services: accounts,
messaging, dispatch administration and the auto-response policy.
The tenant is taken from the X-Tenant-ID header.
"""

import logging
from dataclasses import asdict
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from wa_integration.contracts.payloads import (
    AccountCreateRequest,
    BulkSendRequest,
    DispatchAccepted,
    ScheduleSendRequest,
    SendMessageRequest,
)
from wa_integration.dispatch.jobs import DispatchJob
from wa_integration.dispatch.queue import DispatchQueue
from wa_integration.dispatch.rate_limit import TenantRateLimiter
from wa_integration.policy.config import PolicyUpdate
from wa_integration.policy.service import PolicyService
from wa_integration.service.accounts import AccountService, account_to_dict
from wa_integration.service.messaging import MessagingService

from whatsapp_webhook.deps import (
    get_account_service,
    get_messaging_service,
    get_policy_service,
    get_queue,
    get_rate_limiter,
    require_tenant,
)

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api/v1")


class ToggleRequest(BaseModel):
    enabled: bool


def _accepted(job: DispatchJob) -> DispatchAccepted:
    return DispatchAccepted(job_id=job.job_id, message_id=job.message_id, not_before=job.not_before)


# =============================================================================
# Accounts
# =============================================================================

@api_router.post("/accounts", status_code=201)
async def create_account(
    request: AccountCreateRequest,
    tenant_id: UUID = Depends(require_tenant),
    service: AccountService = Depends(get_account_service),
) -> dict[str, Any]:
    account = await service.create_account(tenant_id, request.display_name)
    return account_to_dict(account)


@api_router.get("/accounts")
async def list_accounts(
    tenant_id: UUID = Depends(require_tenant),
    service: AccountService = Depends(get_account_service),
) -> list[dict[str, Any]]:
    return [account_to_dict(account) for account in service.list_accounts(tenant_id)]


@api_router.get("/accounts/{account_id}")
async def get_account(
    account_id: UUID,
    tenant_id: UUID = Depends(require_tenant),
    service: AccountService = Depends(get_account_service),
) -> dict[str, Any]:
    return account_to_dict(service.get_account(tenant_id, account_id))


@api_router.post("/accounts/{account_id}/connect")
async def connect_account(
    account_id: UUID,
    tenant_id: UUID = Depends(require_tenant),
    service: AccountService = Depends(get_account_service),
) -> dict[str, Any]:
    """Start pairing; the response carries the pairing payload to render."""
    result = await service.connect(tenant_id, account_id)
    data = asdict(result)
    data["account_id"] = str(result.account_id)
    return data


@api_router.post("/accounts/{account_id}/disconnect")
async def disconnect_account(
    account_id: UUID,
    tenant_id: UUID = Depends(require_tenant),
    service: AccountService = Depends(get_account_service),
) -> dict[str, Any]:
    account = await service.disconnect(tenant_id, account_id)
    return account_to_dict(account)


@api_router.delete("/accounts/{account_id}")
async def delete_account(
    account_id: UUID,
    tenant_id: UUID = Depends(require_tenant),
    service: AccountService = Depends(get_account_service),
) -> dict[str, str]:
    await service.delete_account(tenant_id, account_id)
    return {"status": "deleted", "account_id": str(account_id)}


@api_router.get("/accounts/{account_id}/status")
async def connection_status(
    account_id: UUID,
    tenant_id: UUID = Depends(require_tenant),
    service: AccountService = Depends(get_account_service),
) -> dict[str, Any]:
    return service.get_connection_status(tenant_id, account_id).to_dict()


@api_router.post("/accounts/{account_id}/webhook")
async def configure_webhook(
    account_id: UUID,
    tenant_id: UUID = Depends(require_tenant),
    service: AccountService = Depends(get_account_service),
) -> dict[str, str]:
    url = await service.configure_webhook(tenant_id, account_id)
    return {"webhook_url": url}


# =============================================================================
# Messaging
# =============================================================================

@api_router.post("/accounts/{account_id}/messages", status_code=202)
async def send_message(
    account_id: UUID,
    request: SendMessageRequest,
    tenant_id: UUID = Depends(require_tenant),
    service: MessagingService = Depends(get_messaging_service),
) -> DispatchAccepted:
    job = service.send_single(tenant_id, account_id, request.to, request.text)
    return _accepted(job)


@api_router.post("/accounts/{account_id}/messages/bulk", status_code=202)
async def send_bulk(
    account_id: UUID,
    request: BulkSendRequest,
    tenant_id: UUID = Depends(require_tenant),
    service: MessagingService = Depends(get_messaging_service),
) -> dict[str, Any]:
    result = service.send_bulk(tenant_id, account_id, request.recipients, request.text, request.delay_ms)
    return {
        "batch_id": str(result.batch_id),
        "job_ids": [str(job_id) for job_id in result.job_ids],
        "total_queued": result.total_queued,
        "estimated_seconds": result.estimated_seconds,
    }


@api_router.post("/accounts/{account_id}/messages/scheduled", status_code=202)
async def send_scheduled(
    account_id: UUID,
    request: ScheduleSendRequest,
    tenant_id: UUID = Depends(require_tenant),
    service: MessagingService = Depends(get_messaging_service),
) -> DispatchAccepted:
    job = service.send_scheduled(tenant_id, account_id, request.to, request.text, request.send_at)
    return _accepted(job)


# =============================================================================
# Dispatch administration
# =============================================================================

@api_router.get("/dispatch/stats")
async def queue_stats(
    tenant_id: UUID = Depends(require_tenant),
    queue: DispatchQueue = Depends(get_queue),
) -> dict[str, Any]:
    return queue.get_queue_stats().to_dict()


@api_router.get("/dispatch/dead-letters")
async def list_dead_letters(
    tenant_id: UUID = Depends(require_tenant),
    queue: DispatchQueue = Depends(get_queue),
) -> list[dict[str, Any]]:
    return [job.to_dict() for job in queue.list_dead_letters(tenant_id)]


@api_router.post("/dispatch/dead-letters/retry")
async def retry_dead_letters(
    tenant_id: UUID = Depends(require_tenant),
    queue: DispatchQueue = Depends(get_queue),
) -> dict[str, int]:
    return {"retried": queue.retry_failed_messages(tenant_id)}


@api_router.delete("/dispatch/jobs/{job_id}")
async def cancel_job(
    job_id: UUID,
    tenant_id: UUID = Depends(require_tenant),
    queue: DispatchQueue = Depends(get_queue),
) -> dict[str, str]:
    job = queue.get_job(job_id)
    if job is None or job.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Dispatch job not found")
    if not queue.cancel(job_id):
        raise HTTPException(status_code=409, detail="Dispatch job already started or finished")
    return {"status": "cancelled", "job_id": str(job_id)}


@api_router.get("/dispatch/rate-limit")
async def rate_limit_usage(
    tenant_id: UUID = Depends(require_tenant),
    limiter: TenantRateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    return limiter.get_usage(tenant_id)


# =============================================================================
# Auto-response policy
# =============================================================================

@api_router.get("/policy")
async def get_policy(
    tenant_id: UUID = Depends(require_tenant),
    service: PolicyService = Depends(get_policy_service),
) -> dict[str, Any]:
    return service.get_policy(tenant_id).model_dump(mode="json")


@api_router.put("/policy")
async def update_policy(
    update: PolicyUpdate,
    tenant_id: UUID = Depends(require_tenant),
    service: PolicyService = Depends(get_policy_service),
) -> dict[str, Any]:
    return service.update_policy(tenant_id, update).model_dump(mode="json")


@api_router.post("/policy/toggle")
async def toggle_policy(
    request: ToggleRequest,
    tenant_id: UUID = Depends(require_tenant),
    service: PolicyService = Depends(get_policy_service),
) -> dict[str, Any]:
    return service.toggle(tenant_id, request.enabled).model_dump(mode="json")


@api_router.get("/policy/usage")
async def policy_usage(
    tenant_id: UUID = Depends(require_tenant),
    service: PolicyService = Depends(get_policy_service),
) -> dict[str, Any]:
    return service.get_usage_stats(tenant_id)


@api_router.post("/policy/usage/reset")
async def reset_policy_usage(
    tenant_id: UUID = Depends(require_tenant),
    service: PolicyService = Depends(get_policy_service),
) -> dict[str, Any]:
    return service.reset_usage(tenant_id).model_dump(mode="json")
