"""
Analysis policy configuration loader.

Loads the policy constants that drive user-facing classification from
config/analysis_policy.yml:
  - package tier ranks and the equal-rank tie rule (diff engine)
  - the at-risk threshold and default lookahead window (expiration monitor)
  - request types that mark a deployment as deprovisioned (ghost accounts)
  - request types that are compared against their deployment predecessor
  - re-scan worker pool size

The loader produces an immutable AnalysisPolicy value. Engine components
receive it as an argument; none of them read settings globally.

Usage:
    from provisioning_ops.config.analysis_policy import get_analysis_policy_loader

    policy = get_analysis_policy_loader().get_policy()
    policy.tier_order.rank("Premium")  # 20
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

TIE_POLICY_UPGRADE = "upgrade"
TIE_POLICY_DOWNGRADE = "downgrade"
VALID_TIE_POLICIES = (TIE_POLICY_UPGRADE, TIE_POLICY_DOWNGRADE)

# Fallbacks used when the YAML file is missing or a key is absent
_DEFAULT_AT_RISK_DAYS = 7
_DEFAULT_WINDOW_DAYS = 30
_DEFAULT_TIME_FRAME = "1y"
_DEFAULT_MAX_WORKERS = 4
_DEFAULT_TIER_RANKS: Dict[str, int] = {
    "Base": 10,
    "Standard": 15,
    "Premium": 20,
    "Enterprise": 30,
}


def _setting(section: Mapping[str, Any], key: str, default: Any) -> Any:
    """section[key], or default when the key is absent or left empty (null)."""
    value = section.get(key)
    return default if value is None else value


@dataclass(frozen=True)
class AnalysisPolicy:
    """Explicit policy constants passed into classifier, diff and aggregator calls."""

    tier_ranks: Mapping[str, int] = field(default_factory=lambda: dict(_DEFAULT_TIER_RANKS))
    tie_policy: str = TIE_POLICY_UPGRADE
    at_risk_days: int = _DEFAULT_AT_RISK_DAYS
    default_window_days: int = _DEFAULT_WINDOW_DAYS
    default_time_frame: str = _DEFAULT_TIME_FRAME
    ghost_excluded_request_types: Tuple[str, ...] = ("Deprovision",)
    cross_record_request_types: Tuple[str, ...] = ("Update",)
    max_workers: int = _DEFAULT_MAX_WORKERS

    def __post_init__(self):
        if self.tie_policy not in VALID_TIE_POLICIES:
            raise ValueError(
                f"tie_policy must be one of {VALID_TIE_POLICIES}, got {self.tie_policy!r}"
            )
        if self.at_risk_days < 0:
            raise ValueError("at_risk_days must be >= 0")
        if self.default_window_days < 0:
            raise ValueError("default_window_days must be >= 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

    @property
    def tier_order(self):
        # Imported lazily: the diff engine imports this module for the tie constants
        from provisioning_ops.services.diff_engine import TierOrder

        return TierOrder(self.tier_ranks, tie_policy=self.tie_policy)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "AnalysisPolicy":
        """Build a policy from the parsed YAML document, keeping defaults for absent keys."""
        tiers = raw.get("package_tiers") or {}
        expiration = raw.get("expiration") or {}
        ghost = raw.get("ghost_accounts") or {}
        package_changes = raw.get("package_changes") or {}
        scan = raw.get("scan") or {}

        ranks = tiers.get("ranks")
        return cls(
            tier_ranks={str(k): int(v) for k, v in ranks.items()} if ranks else dict(_DEFAULT_TIER_RANKS),
            tie_policy=str(_setting(tiers, "tie_policy", TIE_POLICY_UPGRADE)),
            at_risk_days=int(_setting(expiration, "at_risk_days", _DEFAULT_AT_RISK_DAYS)),
            default_window_days=int(_setting(expiration, "default_window_days", _DEFAULT_WINDOW_DAYS)),
            default_time_frame=str(_setting(package_changes, "default_time_frame", _DEFAULT_TIME_FRAME)),
            ghost_excluded_request_types=tuple(
                _setting(ghost, "excluded_request_types", ("Deprovision",))
            ),
            cross_record_request_types=tuple(
                _setting(package_changes, "cross_record_request_types", ("Update",))
            ),
            max_workers=int(
                os.getenv("ANALYSIS_MAX_WORKERS") or _setting(scan, "max_workers", _DEFAULT_MAX_WORKERS)
            ),
        )


class AnalysisPolicyLoader:
    """
    Thread-safe singleton loader for config/analysis_policy.yml.

    The path can be overridden with ANALYSIS_POLICY_PATH.
    """

    _instance: Optional["AnalysisPolicyLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("ANALYSIS_POLICY_PATH")
        self._policy = AnalysisPolicy()
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "analysis_policy.yml",
            Path(os.getcwd()) / "config" / "analysis_policy.yml",
            Path(os.getcwd()) / ".." / "config" / "analysis_policy.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"analysis_policy.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading analysis policy from %s", path)

                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}

                self._policy = AnalysisPolicy.from_dict(raw)

                logger.info(
                    "Loaded analysis policy: tiers=%d, tie_policy=%s, at_risk_days=%d",
                    len(self._policy.tier_ranks),
                    self._policy.tie_policy,
                    self._policy.at_risk_days,
                )
            except FileNotFoundError:
                logger.warning("analysis_policy.yml not found, using fallback defaults")
                self._policy = AnalysisPolicy()

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def get_policy(self) -> AnalysisPolicy:
        return self._policy

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests load different files)."""
        with cls._lock:
            cls._instance = None


def get_analysis_policy_loader(config_path: Optional[str] = None) -> AnalysisPolicyLoader:
    """Get the singleton policy loader."""
    return AnalysisPolicyLoader(config_path)
