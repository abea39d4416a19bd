"""Operational feature flags (kill switches)."""

from .remote import RemoteConfigClient
from .switch import (
    CachedFlag,
    FeatureSwitch,
    FlagCache,
    FlagResolution,
    get_flag_cache,
    invalidate,
    parse_flag,
)

__all__ = [
    "CachedFlag",
    "FeatureSwitch",
    "FlagCache",
    "FlagResolution",
    "RemoteConfigClient",
    "get_flag_cache",
    "invalidate",
    "parse_flag",
]
