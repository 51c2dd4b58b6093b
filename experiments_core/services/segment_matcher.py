"""Segment rule matching.

All populated rule fields must pass (AND logic); empty lists and unset
thresholds are ignored. List membership is case-sensitive exact match.
"""

from __future__ import annotations

from typing import Optional

from packaging.version import InvalidVersion, Version

from experiments_core.core.logging import get_logger
from experiments_core.models.context import UserContext
from experiments_core.models.flag import SegmentRules

logger = get_logger(__name__)


class SegmentMatcher:
    """Evaluates ``SegmentRules`` against a ``UserContext``.

    A missing rule set is not this class's concern; callers decide what an
    absent rule set means for them.
    """

    def matches(self, ctx: UserContext, rules: SegmentRules) -> bool:
        if rules.roles and ctx.role not in rules.roles:
            return False
        if rules.countries and ctx.country not in rules.countries:
            return False
        if rules.cities and ctx.city not in rules.cities:
            return False
        if rules.platforms and ctx.platform not in rules.platforms:
            return False
        if rules.loyalty_tiers and ctx.loyalty_tier not in rules.loyalty_tiers:
            return False

        if rules.min_rides is not None and ctx.total_rides < rules.min_rides:
            return False
        if rules.max_rides is not None and ctx.total_rides > rules.max_rides:
            return False
        if rules.min_rating is not None and ctx.rating < rules.min_rating:
            return False
        if rules.min_account_age_days is not None and ctx.account_age_days < rules.min_account_age_days:
            return False

        if rules.min_app_version and not self._version_at_least(ctx.app_version, rules.min_app_version):
            return False

        return True

    def _version_at_least(self, user_version: Optional[str], min_version: str) -> bool:
        if not user_version:
            return False

        user_ver = self._parse_version(user_version)
        target_ver = self._parse_version(min_version)
        if user_ver is None or target_ver is None:
            logger.debug(
                "semver_parse_failed",
                user_version=user_version,
                target_version=min_version,
            )
            return False

        return user_ver >= target_ver

    def _parse_version(self, version: str) -> Optional[Version]:
        """Parse a version string using the packaging library.

        Handles both SemVer-style (1.2.3-beta+build) and PEP 440 versions.

        Args:
            version: Version string (e.g., "1.2.3", "2.0.0-beta.1", "v1.0.0")

        Returns:
            packaging.version.Version or None if invalid
        """
        version = version.lstrip("vV").strip()
        if not version:
            return None

        try:
            return Version(version)
        except InvalidVersion:
            try:
                return Version(self._semver_to_pep440(version))
            except InvalidVersion:
                return None

    @staticmethod
    def _semver_to_pep440(version: str) -> str:
        """Convert a SemVer prerelease ("1.0.0-beta.1") to PEP 440 ("1.0.0b1")."""
        if "-" not in version:
            # Build metadata only
            return version.split("+")[0]

        base, prerelease = version.split("-", 1)
        prerelease = prerelease.split("+")[0].lower()

        if prerelease.startswith("alpha"):
            return base + prerelease.replace("alpha", "a").replace(".", "")
        if prerelease.startswith("beta"):
            return base + prerelease.replace("beta", "b").replace(".", "")
        if prerelease.startswith("rc"):
            return base + prerelease.replace(".", "")
        if prerelease.startswith("pre"):
            return base + prerelease.replace("pre", "rc").replace(".", "")
        return f"{base}.dev0"
