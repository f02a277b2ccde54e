"""
System prompt composition for auto-responses.
"""

import hashlib

from wa_integration.policy.config import Personality, TenantPolicy

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly, professional virtual assistant. Help users efficiently and politely. "
    "Answer clearly and concisely while keeping a conversational tone. "
    "If something is unclear, ask for clarification. "
    "Always try to add value with your answers."
)

PERSONALITY_PROMPTS: dict[Personality, str] = {
    Personality.PROFESSIONAL: (
        "You are a professional and formal assistant. Answer clearly, concisely and politely, "
        "using a corporate tone."
    ),
    Personality.FRIENDLY: (
        "You are a friendly and approachable assistant. Answer warmly and conversationally, "
        "like a friend helping another."
    ),
    Personality.TECHNICAL: (
        "You are an expert technical assistant. Give detailed and precise answers, using "
        "technical terminology where appropriate."
    ),
    Personality.SALES: (
        "You are a persuasive but never pushy sales assistant. Help customers by highlighting "
        "benefits and resolving objections."
    ),
    Personality.CUSTOM: DEFAULT_SYSTEM_PROMPT,
}


def build_system_prompt(policy: TenantPolicy) -> str:
    """
    Compose the system instruction for a tenant.

    A configured system prompt is used verbatim. Otherwise the personality
    default is extended with the reply language, the industry and the
    blocked phrases.
    """
    if policy.system_prompt:
        return policy.system_prompt

    prompt = PERSONALITY_PROMPTS.get(policy.personality, PERSONALITY_PROMPTS[Personality.FRIENDLY])

    settings = policy.generation
    if settings.language:
        prompt += f" Always reply in {settings.language}."
    if settings.industry:
        prompt += f" You specialize in the {settings.industry} industry."
    if policy.blocked_phrases:
        prompt += f" Never use these words or phrases: {', '.join(policy.blocked_phrases)}."

    return prompt


def prompt_fingerprint(system_prompt: str, model: str) -> str:
    """Short stable hash identifying the prompt and model behind a reply."""
    digest = hashlib.sha256(f"{model}\n{system_prompt}".encode("utf-8")).hexdigest()
    return digest[:16]
