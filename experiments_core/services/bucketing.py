"""Consistent hash bucketing for rollouts and variant selection.

A (key, subject) pair always lands in the same bucket in [0, 100), on every
process, with no shared state. Rollout membership and variant selection use
different hash inputs so a subject's rollout bucket and its variant bucket
are independent.
"""

from __future__ import annotations

import hashlib
from typing import Sequence

from experiments_core.models.experiment import Variant
from experiments_core.store.base import variant_sort_key

BUCKET_COUNT = 100
VARIANT_SALT = "variant"


class ConsistentBucketer:
    """Deterministic SHA-256 based bucketing."""

    def bucket(self, key: str, subject_id: str) -> int:
        """Calculate the bucket (0-99) for a key/subject combination.

        Args:
            key: Flag or experiment key
            subject_id: Subject's unique identifier

        Returns:
            Bucket number 0-99
        """
        return self._hash_bucket(f"{key}:{subject_id}")

    def variant_bucket(self, key: str, subject_id: str) -> int:
        """Bucket used for variant selection, independent of ``bucket``."""
        return self._hash_bucket(f"{key}:{VARIANT_SALT}:{subject_id}")

    def is_in_percentage(self, key: str, subject_id: str, percentage: int) -> bool:
        """Check if a subject is within the rollout percentage.

        100 or more is always in and 0 or less is always out, without hashing.
        """
        if percentage >= 100:
            return True
        if percentage <= 0:
            return False
        return self.bucket(key, subject_id) < percentage

    def bucket_variant(self, key: str, subject_id: str, variants: Sequence[Variant]) -> Variant:
        """Pick a variant by walking cumulative weights.

        Variants are walked control first, then by key, regardless of the
        order they are passed in. A bucket beyond the accumulated total goes
        to the last variant.

        Raises:
            ValueError: If ``variants`` is empty
        """
        if not variants:
            raise ValueError("Cannot bucket into an empty variant list")

        ordered = sorted(variants, key=variant_sort_key)
        bucket = self.variant_bucket(key, subject_id)

        cumulative = 0
        for variant in ordered:
            cumulative += variant.weight
            if bucket < cumulative:
                return variant

        return ordered[-1]

    @staticmethod
    def _hash_bucket(hash_input: str) -> int:
        hash_bytes = hashlib.sha256(hash_input.encode("utf-8")).digest()
        # Use first 4 bytes as unsigned int, mod 100 for bucket
        hash_int = int.from_bytes(hash_bytes[:4], byteorder="big", signed=False)
        return hash_int % BUCKET_COUNT
