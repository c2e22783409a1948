"""
Cryptographic operations: payload canonicalization, chain hashing, and API keys.
"""

import hashlib
import json
import logging
import math
import secrets
from typing import Any, Dict, List, Mapping, Optional, Union

from cryptography.hazmat.primitives import hashes, hmac

logger = logging.getLogger(__name__)

# prev_hash of the first record of every chain
ZERO_HASH = "0" * 64

JSONScalar = Union[str, int, float, bool]
JSONValue = Union[None, JSONScalar, List["JSONValue"], Dict[str, "JSONValue"]]


def compute_sha256_hex(data: bytes) -> str:
    """Compute SHA-256 hash and return as hex string."""
    return hashlib.sha256(data).hexdigest()


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time."""
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ============================================================================
# Canonicalization
# ============================================================================

def normalize(value: Any) -> JSONValue:
    """
    Normalize a JSON-like value into its canonical form.

    - None and "" are absent (returned as None)
    - Lists keep their order, with absent elements dropped
    - Mappings drop absent values and are rebuilt with keys sorted by code point
    - Empty lists and mappings (after filtering) are absent

    Semantically equal payloads (different key order, extra empty values)
    normalize to the same value, which keeps chain hashes reproducible.

    Raises:
        TypeError: If the value is not JSON-representable
    """
    if value is None:
        return None

    if isinstance(value, str):
        return value or None

    # bool is a subclass of int, both are returned unchanged
    if isinstance(value, (int, float)):
        return value

    if isinstance(value, (list, tuple)):
        items = [normalize(v) for v in value]
        items = [v for v in items if v is not None]
        return items or None

    if isinstance(value, Mapping):
        entries = []
        for key, v in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, got {type(key).__name__}")
            normalized = normalize(v)
            if normalized is not None:
                entries.append((key, normalized))
        entries.sort(key=lambda entry: entry[0])
        return dict(entries) or None

    raise TypeError(f"Value of type {type(value).__name__} is not JSON-representable")


def canonicalize_payload(payload: Any) -> Union[Dict[str, JSONValue], List[JSONValue], JSONScalar]:
    """Normalize a payload, substituting an empty object when nothing is left."""
    normalized = normalize(payload)
    return {} if normalized is None else normalized


def canonical_json(payload: Any) -> str:
    """
    Serialize a payload's canonical form for hashing.
    - Sorted keys
    - No whitespace
    - UTF-8 text, no ASCII escaping
    - NaN/Infinity rejected (ValueError)
    """
    return json.dumps(
        canonicalize_payload(payload),
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
        allow_nan=False,
    )


def is_finite_json(value: Any) -> bool:
    """Check that a JSON-like value contains no NaN or infinite floats."""
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, (list, tuple)):
        return all(is_finite_json(v) for v in value)
    if isinstance(value, Mapping):
        return all(is_finite_json(v) for v in value.values())
    return True


# ============================================================================
# Chain hashing
# ============================================================================

def compute_log_hash(
    application_id: str,
    seq: int,
    log_type: str,
    payload: Any,
    prev_hash: str,
    secret_key: str
) -> str:
    """
    Compute the keyed hash of one chain record.

    Formula: HMAC-SHA256(secret_key, application_id|seq|LOG_TYPE|canonical_payload|prev_hash)

    Args:
        application_id: Owning application (tenant) ID
        seq: 1-based position in the application's chain
        log_type: Log type tag (upper-cased before hashing)
        payload: Payload, canonicalized before hashing
        prev_hash: Hash of the previous record, or ZERO_HASH
        secret_key: HMAC key

    Returns:
        Lowercase hex digest (64 characters)
    """
    message = "|".join([
        str(application_id),
        str(seq),
        log_type.upper(),
        canonical_json(payload),
        prev_hash,
    ])

    h = hmac.HMAC(secret_key.encode('utf-8'), hashes.SHA256())
    h.update(message.encode('utf-8'))
    return h.finalize().hex()


def verify_log_record(record: Any, secret_key: str) -> bool:
    """
    Recompute a stored record's hash and compare it with the stored value.

    Args:
        record: Object with application_id, seq, log_type, payload, prev_hash and hash
        secret_key: HMAC key

    Returns:
        True if the stored hash matches, False otherwise
    """
    try:
        expected = compute_log_hash(
            application_id=str(record.application_id),
            seq=record.seq,
            log_type=record.log_type,
            payload=record.payload,
            prev_hash=record.prev_hash,
            secret_key=secret_key,
        )
    except (TypeError, ValueError) as e:
        # A stored payload that cannot be canonicalized cannot match
        logger.debug(f"Cannot recompute hash for seq={record.seq}: {e}")
        return False

    return constant_time_compare(expected, record.hash or "")


# ============================================================================
# API keys
# ============================================================================

def generate_api_key() -> str:
    """Generate a new application API key (64 hex characters)."""
    return secrets.token_hex(32)


def hash_api_key(api_key: str) -> str:
    """Digest stored in place of the API key."""
    return compute_sha256_hex(api_key.encode('utf-8'))


def api_key_prefix(api_key: Optional[str]) -> str:
    """Short, loggable prefix of an API key."""
    return (api_key or "")[:8]
