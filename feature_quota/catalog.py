from __future__ import annotations

import json
from pathlib import Path
from threading import RLock
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .models import FeaturePolicy

DEFAULT_CATALOG_PATH = Path(__file__).with_name("features.json")


def normalize_feature_id(feature_id: str) -> str:
    """Canonical form: trimmed, lower-case, underscores instead of dashes."""
    return str(feature_id).strip().lower().replace("-", "_")


def _reject_duplicate_keys(pairs: List[Tuple[str, object]]) -> dict:
    result: dict = {}
    for key, value in pairs:
        if key in result:
            raise ConfigurationError(f"duplicate key in feature catalog: {key!r}", feature_id=key)
        result[key] = value
    return result


class FeatureCatalog:
    """Single source of truth for gated features, loaded from features.json with reload support."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        *,
        policies: Optional[Iterable[FeaturePolicy]] = None,
    ) -> None:
        self._config_path = Path(config_path) if config_path else DEFAULT_CATALOG_PATH
        self._lock = RLock()
        self._policies: Mapping[str, FeaturePolicy]
        if policies is not None:
            self._policies = self._index(policies)
        else:
            self.reload()

    @classmethod
    def from_policies(cls, policies: Iterable[FeaturePolicy]) -> "FeatureCatalog":
        return cls(policies=policies)

    def reload(self) -> None:
        """Re-read the catalog file. A bad file leaves the previous catalog in place."""
        raw = self._read_config_file()
        parsed = self._parse_config(raw)
        with self._lock:
            self._policies = parsed

    def policy_for(self, feature_id: str) -> FeaturePolicy:
        key = normalize_feature_id(feature_id)
        if not key:
            raise ConfigurationError("feature_id is required")
        with self._lock:
            policy = self._policies.get(key)
        if policy is None:
            raise ConfigurationError(f"unknown feature_id: {feature_id}", feature_id=str(feature_id))
        return policy

    def require(self, feature_ids: Iterable[str]) -> None:
        """Fail fast when any of `feature_ids` is not in the catalog."""
        for feature_id in feature_ids:
            self.policy_for(feature_id)

    def __contains__(self, feature_id: object) -> bool:
        with self._lock:
            return normalize_feature_id(str(feature_id)) in self._policies

    def feature_ids(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._policies.keys())

    def policies(self) -> List[FeaturePolicy]:
        with self._lock:
            return [self._policies[key] for key in sorted(self._policies)]

    @staticmethod
    def _index(policies: Iterable[FeaturePolicy]) -> Mapping[str, FeaturePolicy]:
        indexed: Dict[str, FeaturePolicy] = {}
        for policy in policies:
            key = normalize_feature_id(policy.feature_id)
            existing = indexed.get(key)
            if existing is not None:
                raise ConfigurationError(
                    f"feature '{key}' is defined more than once "
                    f"({existing.feature_id!r} and {policy.feature_id!r})",
                    feature_id=key,
                )
            indexed[key] = FeaturePolicy(
                feature_id=key,
                free_limit=policy.free_limit,
                paid_limit=policy.paid_limit,
                reset_period=policy.reset_period,
                description=policy.description,
                upgrade_message=policy.upgrade_message,
                fail_open=policy.fail_open,
            )
        if not indexed:
            raise ConfigurationError("feature catalog must define at least one feature")
        return MappingProxyType(indexed)

    def _read_config_file(self) -> dict:
        try:
            with self._config_path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle, object_pairs_hook=_reject_duplicate_keys)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"cannot read feature catalog {self._config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError("feature catalog must contain a top-level object")
        return raw

    @classmethod
    def _parse_config(cls, raw: dict) -> Mapping[str, FeaturePolicy]:
        features_raw = raw.get("features")
        if not isinstance(features_raw, dict):
            raise ConfigurationError("feature catalog must include an object field named 'features'")

        policies: List[FeaturePolicy] = []
        for feature_id, data in features_raw.items():
            if not isinstance(feature_id, str) or not feature_id.strip():
                raise ConfigurationError("each feature key must be a non-empty string")
            if not isinstance(data, dict):
                raise ConfigurationError(f"feature '{feature_id}' must be an object", feature_id=feature_id)
            if "free_limit" not in data or "reset_period" not in data:
                raise ConfigurationError(
                    f"feature '{feature_id}' needs free_limit and reset_period", feature_id=feature_id
                )

            policies.append(
                FeaturePolicy(
                    feature_id=feature_id,
                    free_limit=data["free_limit"],
                    paid_limit=data.get("paid_limit"),
                    reset_period=data["reset_period"],
                    description=str(data.get("description", "")),
                    upgrade_message=str(data.get("upgrade_message", "")),
                    fail_open=bool(data.get("fail_open", False)),
                )
            )

        return cls._index(policies)
