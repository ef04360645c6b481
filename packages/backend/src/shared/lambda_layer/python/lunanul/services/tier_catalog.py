"""
Tier Catalog

Static, data-driven definitions of what each subscription tier unlocks.
Call sites ask the catalog instead of branching on tiers themselves.
"""

import json
import os
from functools import cache
from typing import Any, Dict, List, Optional, Set, Union

from aws_lambda_powertools import Logger
from pydantic import BaseModel, Field, NonNegativeInt, ValidationError, model_validator

from ..constants import subscription_tiers
from ..models.errors import CatalogConfigError, UnknownFeatureError
from ..models.subscription import (
    FeatureDescriptor,
    GuideDescriptor,
    GuideType,
    SpreadDescriptor,
    SpreadType,
    Tier,
)

logger = Logger()

CatalogKey = Union[str, SpreadType, GuideType]
Descriptor = Union[FeatureDescriptor, SpreadDescriptor, GuideDescriptor]


class FeatureConfig(BaseModel):
    display_name: str
    description: str = ""
    required_tier: Tier
    limits: Dict[Tier, Optional[NonNegativeInt]] = Field(default_factory=dict)

    def limit_for(self, tier: Tier) -> Optional[int]:
        return self.limits.get(tier)


class SpreadConfig(BaseModel):
    display_name: str
    card_count: int = Field(default=1, ge=1)
    required_tier: Tier


class GuideConfig(BaseModel):
    display_name: str
    required_tier: Tier


class CatalogConfig(BaseModel):
    """Validated tier table"""

    features: Dict[str, FeatureConfig]
    spreads: Dict[SpreadType, SpreadConfig] = Field(default_factory=dict)
    guides: Dict[GuideType, GuideConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_monotonic(self) -> "CatalogConfig":
        for key, feature in self.features.items():
            previous: Optional[int] = None
            previous_tier: Optional[Tier] = None
            for tier in sorted(Tier):
                if tier < feature.required_tier:
                    if feature.limit_for(tier) is not None:
                        raise ValueError(
                            f"Feature {key} sets a limit for {tier.value} below its required tier"
                        )
                    continue
                limit = feature.limit_for(tier)
                # None is unlimited and may never be followed by a finite cap
                if previous_tier is not None:
                    if previous is None and limit is not None:
                        raise ValueError(
                            f"Feature {key} is unlimited at {previous_tier.value} but capped at {tier.value}"
                        )
                    if previous is not None and limit is not None and limit < previous:
                        raise ValueError(
                            f"Feature {key} limit drops from {previous} at {previous_tier.value} "
                            f"to {limit} at {tier.value}"
                        )
                previous, previous_tier = limit, tier
        return self


def default_config_data() -> Dict[str, Any]:
    return {
        "features": subscription_tiers.FEATURES,
        "spreads": subscription_tiers.SPREADS,
        "guides": subscription_tiers.GUIDES,
    }


class TierCatalog:
    """Pure lookups over a validated tier table"""

    def __init__(self, config: CatalogConfig):
        self.config = config
        self._features: Dict[tuple, FeatureDescriptor] = {}
        self._spreads: Dict[tuple, SpreadDescriptor] = {}
        self._guides: Dict[tuple, GuideDescriptor] = {}
        for tier in Tier:
            for key, feature in config.features.items():
                limit = feature.limit_for(max(tier, feature.required_tier))
                self._features[(key, tier)] = FeatureDescriptor(
                    key=key,
                    display_name=feature.display_name,
                    description=feature.description,
                    required_tier=feature.required_tier,
                    usage_limited=limit is not None,
                    monthly_limit=limit,
                )
            for spread, spread_config in config.spreads.items():
                self._spreads[(spread, tier)] = SpreadDescriptor(
                    key=spread,
                    display_name=spread_config.display_name,
                    card_count=spread_config.card_count,
                    required_tier=spread_config.required_tier,
                )
            for guide, guide_config in config.guides.items():
                self._guides[(guide, tier)] = GuideDescriptor(
                    key=guide,
                    display_name=guide_config.display_name,
                    required_tier=guide_config.required_tier,
                )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TierCatalog":
        try:
            return cls(CatalogConfig.model_validate(data))
        except ValidationError as e:
            raise CatalogConfigError(f"Invalid tier catalog: {e}") from e

    @classmethod
    def from_json_file(cls, path: str) -> "TierCatalog":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogConfigError(f"Cannot read tier catalog from {path}: {e}") from e
        logger.info(f"Loaded tier catalog from {path}")
        return cls.from_dict(data)

    def resolve_key(self, key: CatalogKey) -> CatalogKey:
        """
        Normalize a lookup key.

        Feature strings win over spread and guide names; legacy spread
        aliases resolve to their canonical SpreadType.
        """
        if isinstance(key, (SpreadType, GuideType)):
            return key
        if key in self.config.features:
            return key
        try:
            return SpreadType(key)
        except ValueError:
            pass
        try:
            return GuideType(key)
        except ValueError:
            raise UnknownFeatureError(str(key)) from None

    def descriptor(self, key: CatalogKey, tier: Optional[Tier] = None) -> Descriptor:
        """
        Descriptor for a key as seen from a tier.

        Without a tier, the descriptor is the one seen from the required tier.
        """
        resolved = self.resolve_key(key)
        if isinstance(resolved, SpreadType):
            table = self._spreads
        elif isinstance(resolved, GuideType):
            table = self._guides
        else:
            table = self._features
        if tier is None:
            tier = self.minimum_tier(resolved)
        try:
            return table[(resolved, tier)]
        except KeyError:
            raise UnknownFeatureError(str(getattr(resolved, "value", resolved)))

    def minimum_tier(self, key: CatalogKey) -> Tier:
        resolved = self.resolve_key(key)
        if isinstance(resolved, SpreadType):
            source = self.config.spreads.get(resolved)
        elif isinstance(resolved, GuideType):
            source = self.config.guides.get(resolved)
        else:
            source = self.config.features.get(resolved)
        if source is None:
            raise UnknownFeatureError(str(getattr(resolved, "value", resolved)))
        return source.required_tier

    @staticmethod
    def _unlocked(table: Dict[tuple, Any], tier: Tier) -> Set[Any]:
        # Canonical descriptors, as seen from their required tier, so lower tiers' sets are subsets
        return {d for (_, t), d in table.items() if t == d.required_tier and t <= tier}

    def features_for(self, tier: Tier) -> Set[FeatureDescriptor]:
        return self._unlocked(self._features, tier)

    def spreads_for(self, tier: Tier) -> Set[SpreadDescriptor]:
        return self._unlocked(self._spreads, tier)

    def guides_for(self, tier: Tier) -> Set[GuideDescriptor]:
        return self._unlocked(self._guides, tier)

    def limited_features(self, tier: Tier) -> List[FeatureDescriptor]:
        """Features capped at the tier, with the tier's own limits"""
        at_tier = (self.descriptor(d.key, tier) for d in self.features_for(tier))
        return sorted((d for d in at_tier if d.usage_limited), key=lambda d: d.key)

    def locked_descriptors(self, tier: Tier) -> List[Descriptor]:
        """Every descriptor locked at the tier, lowest required tier first"""
        locked = [
            d
            for table in (self._features, self._spreads, self._guides)
            for (_, t), d in table.items()
            if t == tier and d.required_tier > tier
        ]
        return sorted(locked, key=lambda d: (d.required_tier.rank, getattr(d.key, "value", d.key)))

    def tracked_feature_keys(self) -> List[str]:
        """Features capped at some tier, whose usage is counted"""
        return sorted(
            key for key, feature in self.config.features.items()
            if any(limit is not None for limit in feature.limits.values())
        )

    def recommended_upgrade(self, tier: Tier) -> Tier:
        return tier.next_tier()

    def upgrade_tier_for_usage(self, key: CatalogKey, tier: Tier) -> Tier:
        """Lowest tier above `tier` whose limit for `key` is higher or unlimited"""
        current = self.descriptor(key, tier).monthly_limit
        for candidate in sorted(Tier):
            if candidate <= tier:
                continue
            limit = self.descriptor(key, candidate).monthly_limit
            if limit is None or (current is not None and limit > current):
                return candidate
        return self.recommended_upgrade(tier)

    def tier_summary(self, tier: Tier) -> Dict[str, Any]:
        return {
            "tier": tier.value,
            "name": tier.display_name,
            "price": tier.price,
            "description": tier.description,
            "features": sorted(d.key for d in self.features_for(tier)),
            "limits": {d.key: d.monthly_limit for d in self.limited_features(tier)},
            "spreads": sorted(d.key.value for d in self.spreads_for(tier)),
            "guides": sorted(d.key.value for d in self.guides_for(tier)),
        }


@cache
def default_catalog() -> TierCatalog:
    """
    The process-wide catalog.

    Reads the JSON table at TIER_CATALOG_PATH when set, otherwise the
    built-in table.
    """
    path = os.environ.get("TIER_CATALOG_PATH")
    if path:
        return TierCatalog.from_json_file(path)
    return TierCatalog.from_dict(default_config_data())
