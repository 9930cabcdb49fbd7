"""Secret sanitizer: masks credentials in log output.

Masks bearer tokens, API-key headers and query parameters, vendor keys
and SHA-256 digests so that neither plaintext keys nor their hashes reach
stdout/file logs.
"""

from __future__ import annotations

import re

# Authorization: Bearer <token>
_BEARER_RE = re.compile(r"(Bearer\s+)([A-Za-z0-9._~+/=-]{6})[A-Za-z0-9._~+/=-]*", re.IGNORECASE)

# x-api-key / xi-api-key / api_key / key = value (headers, query strings, JSON-ish dumps)
_KEY_PARAM_RE = re.compile(
    r"""((?:x-api-key|xi-api-key|api_key|apikey|subscription_key)["']?\s*[:=]\s*["']?)"""
    r"([A-Za-z0-9_-]{4})[A-Za-z0-9_-]*",
    re.IGNORECASE,
)

# Vendor-style secret prefixes (OpenAI sk-..., ElevenLabs sk_...)
_VENDOR_KEY_RE = re.compile(r"\b(sk[-_])([A-Za-z0-9]{4})[A-Za-z0-9_-]{12,}")

# SHA-256 hex digests (stored key hashes)
_DIGEST_RE = re.compile(r"\b([0-9a-f]{8})[0-9a-f]{56}\b")


def sanitize_bearer(text: str) -> str:
    """Mask bearer tokens: Bearer abcdef123456 → Bearer abcdef***."""
    return _BEARER_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}***", text)


def sanitize_key_params(text: str) -> str:
    """Mask key parameters: api_key=abcd1234 → api_key=abcd***."""
    return _KEY_PARAM_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}***", text)


def sanitize_vendor_keys(text: str) -> str:
    """Mask vendor keys: sk-abcd1234567890abcdef → sk-abcd***."""
    return _VENDOR_KEY_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}***", text)


def sanitize_digests(text: str) -> str:
    """Mask 64-char hex digests, keeping an 8-char prefix."""
    return _DIGEST_RE.sub(lambda m: f"{m.group(1)}***", text)


def sanitize_secrets(text: str) -> str:
    """Sanitize all secrets in text for logging."""
    text = sanitize_bearer(text)
    text = sanitize_key_params(text)
    text = sanitize_vendor_keys(text)
    text = sanitize_digests(text)
    return text
