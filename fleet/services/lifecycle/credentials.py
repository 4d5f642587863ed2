"""
Credential blob handling.

A credential arrives in one of three shapes:
  - a JSON object                          {"creds": {"me": {"id": "15551234567:12@s.whatsapp.net"}}}
  - the same object serialized as a string
  - a base64 "session id" wrapping that JSON, optionally prefixed ("FLEET~<b64>")

The only field the orchestrator interprets is the embedded identity: the digits
before the first ':' of me.id (or creds.me.id). Everything else is opaque.
"""

import base64
import binascii
import json
import re
from typing import Any, Optional, Union

from fleet.services.shared.errors import ValidationError

_IDENTITY_RE = re.compile(r"^(\d+):")
_SESSION_PREFIX_RE = re.compile(r"^[A-Za-z0-9_-]+[~;]")


def normalize_identity(raw: str) -> str:
    """Strip whitespace and the leading '+' so '+1555...' and '1555...' compare equal."""
    value = (raw or "").strip().replace(" ", "")
    if value.startswith("+"):
        value = value[1:]
    if not value.isdigit():
        raise ValidationError(f"identity must be a phone number, got {raw!r}")
    return value


def decode_session_id(session_id: str) -> dict[str, Any]:
    """Decode a base64 session id into its credential object."""
    token = _SESSION_PREFIX_RE.sub("", session_id.strip(), count=1)
    token += "=" * (-len(token) % 4)
    try:
        raw = base64.b64decode(token, altchars=b"-_" if ("-" in token or "_" in token) else None, validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"session id is not valid base64 JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("session id does not contain a credential object")
    return payload


def parse(blob: Union[str, bytes, dict[str, Any], None]) -> dict[str, Any]:
    """Accept any supported credential shape and return the credential object."""
    if blob is None:
        raise ValidationError("credentials are required")
    if isinstance(blob, dict):
        return blob
    if isinstance(blob, bytes):
        blob = blob.decode("utf-8", errors="replace")
    text = blob.strip()
    if not text:
        raise ValidationError("credentials are empty")
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"credentials are not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValidationError("credentials must be a JSON object")
        return payload
    return decode_session_id(text)


def extract_identity(credentials: dict[str, Any]) -> Optional[str]:
    """Digits before ':' in me.id or creds.me.id, or None when absent."""
    for holder in (credentials, credentials.get("creds")):
        if not isinstance(holder, dict):
            continue
        me = holder.get("me")
        if isinstance(me, dict) and isinstance(me.get("id"), str):
            match = _IDENTITY_RE.match(me["id"])
            if match:
                return match.group(1)
    return None


def validate(blob: Union[str, bytes, dict[str, Any], None], declared_identity: Optional[str]) -> tuple[dict[str, Any], str]:
    """
    Parse `blob` and check its embedded identity against `declared_identity`.
    Returns (credentials, identity). When no identity is declared the embedded one
    is used. Raises ValidationError on any mismatch; nothing is persisted here.
    """
    credentials = parse(blob)
    embedded = extract_identity(credentials)
    if embedded is None:
        raise ValidationError("cannot extract phone number from credentials")
    if declared_identity:
        declared = normalize_identity(declared_identity)
        if declared != embedded:
            raise ValidationError(
                f"credentials belong to {embedded}, not the declared number {declared}"
            )
    return credentials, embedded
