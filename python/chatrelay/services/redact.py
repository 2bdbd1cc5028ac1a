"""Log guard and redaction helpers.

Never-log policy:
- API keys (plaintext or decrypted) and bearer tokens
- Message content, prompts, titles generated from them
- Raw file bytes

Allowed (with suffix):
- _chars, _length: length of text
- _sha256, _hash: hash of text
- Token counts, provider request IDs, fingerprints
"""

import os

import structlog

FORBIDDEN_KEYS = frozenset(
    {
        "prompt",
        "content",
        "api_key",
        "bearer",
        "token",
        "secret",
        "password",
        "message_text",
        "raw_body",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def _has_redacted_suffix(key: str) -> bool:
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Return kwargs after checking that no forbidden key is logged.

    Raises ValueError in local/test if a forbidden key is used without a
    redacted suffix. In staging/prod, logs a warning instead.

    Usage:
        logger.info("llm.request.started", **safe_kv(
            provider="openai",
            model_name="gpt-4o-mini",
            message_chars=1234,
        ))
    """
    violations = [key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("CHATRELAY_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        structlog.get_logger("chatrelay.services.redact").warning(
            "safe_kv_violation", forbidden_keys=violations
        )

    return kwargs
