"""
WhatsApp Integration Core

Connects tenant WhatsApp accounts through the Evolution API gateway.
It provides:
- Gateway client (typed REST wrapper, no business logic)
- Connection reconciler (poll + webhook state merge)
- Webhook authentication gate
- Outbound dispatch queue (durable, rate-limited, retrying)
- Auto-response policy engine (modes, quotas, language-model replies)

Processes (webhook service, worker, CLI) live outside this package and
depend on it, never the other way around.
"""
