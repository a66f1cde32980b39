"""
Deterministic bucketing for experiment assignment.

The hash must give the same answer in every process and in any language, so it is
defined byte-for-byte here rather than borrowed from Python's `hash()`:

    stable_hash(s) = fmix32(fnv1a_32(utf8(s)))

- fnv1a_32: offset basis 0x811C9DC5, prime 0x01000193, xor-then-multiply per byte
- fmix32: the MurmurHash3 finalizer (xor-shift 16, * 0x85EBCA6B, xor-shift 13,
  * 0xC2B2AE35, xor-shift 16), applied so that low-order bits (used by `% 100`)
  depend on every input byte

Variant bucket:   stable_hash(f"{session_id}:{experiment_id}") % 100
Traffic gate:     stable_hash(f"traffic:{experiment_id}:{session_id}") % 100
"""

import logging
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
MASK_32 = 0xFFFFFFFF

BUCKETS = 100


def fnv1a_32(data: bytes) -> int:
    h = FNV_OFFSET_BASIS
    for byte in data:
        h ^= byte
        h = (h * FNV_PRIME) & MASK_32
    return h


def fmix32(h: int) -> int:
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & MASK_32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & MASK_32
    h ^= h >> 16
    return h


def stable_hash(value: str) -> int:
    return fmix32(fnv1a_32(value.encode("utf-8")))


def variant_bucket(session_id: str, experiment_id) -> int:
    return stable_hash(f"{session_id}:{experiment_id}") % BUCKETS


def traffic_bucket(session_id: str, experiment_id) -> int:
    return stable_hash(f"traffic:{experiment_id}:{session_id}") % BUCKETS


def in_traffic_allocation(session_id: str, experiment_id, traffic_allocation: int) -> bool:
    """Whether the session falls inside the experiment's eligible share of traffic."""
    if traffic_allocation >= BUCKETS:
        return True
    if traffic_allocation <= 0:
        return False
    return traffic_bucket(session_id, experiment_id) < traffic_allocation


def fallback_variant(variants: Sequence):
    """The control variant, or the first variant by id when none is marked control."""
    ordered = sorted(variants, key=lambda v: v.id)
    for variant in ordered:
        if variant.is_control:
            return variant
    return ordered[0]


def select_variant(variants: Sequence, bucket: int):
    """
    Walk variants in ascending id order, accumulating traffic percentages, and
    return the first whose cumulative share exceeds `bucket`.

    Buckets past the configured total fall back to the control variant. A
    configuration whose percentages add up to more than 100 is invalid and every
    bucket gets the control variant.
    """
    if not variants:
        raise ValueError("select_variant() requires at least one variant")

    ordered = sorted(variants, key=lambda v: v.id)
    total = sum(v.traffic_percentage for v in ordered)
    if total > BUCKETS:
        logger.warning(
            f"Variant traffic sums to {total}% (>100%) for variants "
            f"{[v.id for v in ordered]}; falling back to control"
        )
        return fallback_variant(ordered)

    cumulative = 0
    for variant in ordered:
        cumulative += variant.traffic_percentage
        if bucket < cumulative:
            return variant

    return fallback_variant(ordered)


def choose_variant(session_id: str, experiment_id, variants: Sequence) -> Optional[object]:
    """Variant for a session, or None when there are no variants to choose from."""
    if not variants:
        return None
    return select_variant(variants, variant_bucket(session_id, experiment_id))
