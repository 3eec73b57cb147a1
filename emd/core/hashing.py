"""EMD — Stable Hashing Helpers."""

import hashlib


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def alert_fingerprint(rule_id: str, entity_id: str) -> str:
    """Deterministic identifier of a (rule, job) pairing."""
    return sha256_hex(f"{rule_id}|{entity_id}")[:24]
