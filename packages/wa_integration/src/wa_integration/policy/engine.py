"""
Auto-Response Policy Engine

Decides whether an inbound message gets an automated reply and, if so,
generates it through the language-model provider within the tenant's quotas.

Flow for one inbound message:
1. should_respond: enablement and response mode
2. generate_response: quota check, context, prompt, model call, usage record
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from wacore.clock import utcnow

from wa_integration.errors import CompletionError
from wa_integration.persistence.models import MessageDirection, WhatsAppConversation, WhatsAppMessage
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.policy.config import ResponseMode, TenantPolicy
from wa_integration.policy.llm import ChatCompletionClient
from wa_integration.policy.prompts import build_system_prompt, prompt_fingerprint
from wa_integration.policy.schedule import is_within_business_hours
from wa_integration.policy.usage import TenantUsageLedger

logger = logging.getLogger(__name__)


@dataclass
class GeneratedReply:
    text: str
    model: str
    total_tokens: int
    prompt_fingerprint: str
    delay_ms: int = 0  # Reply is released no earlier than this after generation

    def automation_record(self) -> dict:
        """Automation metadata stored on the inbound and reply messages."""
        return {
            "model": self.model,
            "total_tokens": self.total_tokens,
            "prompt_fingerprint": self.prompt_fingerprint,
        }


def contains_keyword(text: str, keywords: list[str]) -> bool:
    """Case-insensitive substring match against any keyword."""
    if not text or not keywords:
        return False
    lowered = text.lower()
    return any(keyword.lower() in lowered for keyword in keywords if keyword)


def merge_turns(turns: list[dict[str, str]]) -> list[dict[str, str]]:
    """Join consecutive turns of the same role into one."""
    merged: list[dict[str, str]] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1] = {"role": turn["role"], "content": f"{merged[-1]['content']}\n{turn['content']}"}
        else:
            merged.append(dict(turn))
    return merged


class AutoResponsePolicyEngine:
    """
    Per-tenant auto-response decisions and reply generation.

    Provider failures never propagate: generate_response returns None. Only
    QuotaExceeded is raised, so callers can record the skip distinctly.
    """

    def __init__(
        self,
        db: Session,
        llm: ChatCompletionClient | None,
        timeout_seconds: float = 20.0,
        clock: Callable[[], datetime] = utcnow,
        ledger: TenantUsageLedger | None = None,
    ):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.llm = llm
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.ledger = ledger or TenantUsageLedger(db, clock=clock)

    def should_respond(
        self,
        text: str | None,
        conversation: WhatsAppConversation | None,
        policy: TenantPolicy,
        now: datetime | None = None,
    ) -> bool:
        """
        Decide whether an inbound message gets an automated reply.

        Args:
            text: Inbound message text
            conversation: Conversation the message belongs to
            policy: Tenant policy
            now: Evaluation time (defaults to the engine clock)
        """
        if not policy.enabled:
            return False

        mode = policy.response_mode
        if mode == ResponseMode.ALWAYS:
            decision = True
        elif mode == ResponseMode.BUSINESS_HOURS:
            decision = is_within_business_hours(policy.business_hours, now or self.clock())
        elif mode == ResponseMode.OUTSIDE_HOURS:
            decision = not is_within_business_hours(policy.business_hours, now or self.clock())
        elif mode == ResponseMode.KEYWORDS:
            decision = contains_keyword(text or "", policy.keywords)
        else:
            decision = False

        logger.debug(
            f"Auto-response decision: {decision} (mode {mode.value})",
            extra={"conversation_id": str(conversation.id) if conversation else None},
        )
        return decision

    def build_context(
        self,
        message: WhatsAppMessage,
        conversation: WhatsAppConversation,
        policy: TenantPolicy,
    ) -> list[dict[str, str]]:
        """Recent conversation turns, oldest first, ending with the new message."""
        window = policy.generation.context_window
        history = (
            self.repo.get_recent_messages(conversation.id, limit=window, exclude_id=message.id)
            if window
            else []
        )

        turns = [
            {
                "role": "user" if previous.direction == MessageDirection.INBOUND.value else "assistant",
                "content": previous.content,
            }
            for previous in reversed(history)
            if previous.content
        ]
        turns.append({"role": "user", "content": message.content or ""})
        return merge_turns(turns)

    async def generate_response(
        self,
        message: WhatsAppMessage,
        conversation: WhatsAppConversation,
        policy: TenantPolicy,
    ) -> GeneratedReply | None:
        """
        Generate a reply for an inbound message.

        Returns:
            The reply, or None when the provider fails, times out or is not configured

        Raises:
            QuotaExceeded: A usage quota is exhausted (no provider call is made)
        """
        tenant_id = conversation.tenant_id
        await self.ledger.check(tenant_id, conversation)

        if self.llm is None:
            logger.warning(f"Auto-response skipped for tenant {tenant_id}: no language model configured")
            return None

        system_prompt = build_system_prompt(policy)
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(self.build_context(message, conversation, policy))

        settings = policy.generation
        try:
            result = await asyncio.wait_for(
                self.llm.complete(
                    model=policy.model,
                    messages=messages,
                    temperature=settings.temperature,
                    max_tokens=settings.max_tokens,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Auto-response timed out after {self.timeout_seconds}s",
                extra={"tenant_id": str(tenant_id), "conversation_id": str(conversation.id)},
            )
            return None
        except CompletionError as e:
            logger.error(
                f"Auto-response generation failed: {e}",
                extra={"tenant_id": str(tenant_id), "conversation_id": str(conversation.id)},
            )
            return None

        if not result.text:
            logger.warning(f"Empty auto-response for conversation {conversation.id}")
            return None

        await self.ledger.record(tenant_id, conversation, result.total_tokens)

        reply = GeneratedReply(
            text=result.text,
            model=result.model or policy.model,
            total_tokens=result.total_tokens,
            prompt_fingerprint=prompt_fingerprint(system_prompt, policy.model),
            delay_ms=settings.reply_delay_ms,
        )
        logger.info(
            f"Auto-response generated ({reply.total_tokens} tokens)",
            extra={"tenant_id": str(tenant_id), "conversation_id": str(conversation.id)},
        )
        return reply
