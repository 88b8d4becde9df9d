"""Blockchain hash extraction from NOWPayments IPN payloads.

The gateway has reported hashes under different field names over time and
per payment type. Each leg is resolved by an ordered list of rules; the
first rule that yields a value wins and its name is recorded in ``source``.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

GENERIC_HASH_FIELDS = ("hash", "tx_hash", "transaction_hash")


@dataclass(frozen=True)
class HashRule:
    name: str
    extract: Callable[[Dict[str, Any], str], Optional[str]]

    def __call__(self, payload: Dict[str, Any], gateway_status: str) -> Optional[str]:
        return self.extract(payload, gateway_status)


@dataclass
class CapturedHashes:
    payin_hash: Optional[str] = None
    payout_hash: Optional[str] = None
    tx_hash: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @property
    def source(self) -> str:
        return "_".join(self.tags) if self.tags else "none"

    def as_update(self) -> Dict[str, str]:
        return {
            name: value
            for name, value in (
                ("payin_hash", self.payin_hash),
                ("payout_hash", self.payout_hash),
                ("tx_hash", self.tx_hash),
            )
            if value
        }


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def outcome_hash(payload: Dict[str, Any]) -> Optional[str]:
    outcome = payload.get("outcome")
    if isinstance(outcome, dict):
        return _text(outcome.get("hash"))
    return None


def generic_hash(payload: Dict[str, Any]) -> Optional[str]:
    for name in GENERIC_HASH_FIELDS:
        value = _text(payload.get(name))
        if value:
            return value
    return None


def explicit_field(name: str) -> Callable[[Dict[str, Any], str], Optional[str]]:
    return lambda payload, gateway_status: _text(payload.get(name))


def typed_generic(kind: str) -> Callable[[Dict[str, Any], str], Optional[str]]:
    return lambda payload, gateway_status: generic_hash(payload) if payload.get("type") == kind else None


def outcome_when(status: str) -> Callable[[Dict[str, Any], str], Optional[str]]:
    return lambda payload, gateway_status: outcome_hash(payload) if gateway_status == status else None


PAYIN_RULES: Tuple[HashRule, ...] = (
    HashRule("direct_payin_hash", explicit_field("payin_hash")),
    HashRule("type_payin_with_hash", typed_generic("payin")),
    HashRule("outcome_hash_confirming", outcome_when("confirming")),
)

PAYOUT_RULES: Tuple[HashRule, ...] = (
    HashRule("direct_payout_hash", explicit_field("payout_hash")),
    HashRule("type_payout_with_hash", typed_generic("payout")),
    HashRule("outcome_hash_confirmed", outcome_when("confirmed")),
)


def first_match(
    rules: Tuple[HashRule, ...], payload: Dict[str, Any], gateway_status: str
) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(value, rule name)`` of the first rule that matches."""
    for rule in rules:
        value = rule(payload, gateway_status)
        if value:
            return value, rule.name
    return None, None


def capture_hashes(payload: Dict[str, Any], gateway_status: str, new_status: str) -> CapturedHashes:
    captured = CapturedHashes()

    captured.payin_hash, tag = first_match(PAYIN_RULES, payload, gateway_status)
    if tag:
        captured.tags.append(tag)

    captured.payout_hash, tag = first_match(PAYOUT_RULES, payload, gateway_status)
    if tag:
        captured.tags.append(tag)

    # outcome.hash всегда пишем в tx_hash для старых потребителей
    legacy = outcome_hash(payload)
    if legacy:
        captured.tx_hash = legacy
        if captured.payin_hash or captured.payout_hash:
            captured.tags.append("outcome_as_primary")
        else:
            captured.tags.append("outcome_as_tx_hash")
    elif new_status == "confirmed" and captured.payout_hash:
        captured.tx_hash = captured.payout_hash
        captured.tags.append("payout_as_primary")
    elif captured.payin_hash:
        captured.tx_hash = captured.payin_hash
        captured.tags.append("payin_as_primary")

    return captured
