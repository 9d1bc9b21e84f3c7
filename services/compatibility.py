"""Xcode / iOS / watchOS simulator pairing compatibility table.

Which iOS and watchOS simulators an Xcode can pair is decided inside the
private CoreSimulator framework, so it cannot be queried from any tool.
This table MUST be maintained by hand when new Xcode releases ship.

Shape: Xcode range -> iOS range -> watchOS range -> supported. An iOS range
mapping to an empty dict is a supported iOS runtime without watch pairing.
The first Xcode range matching an Xcode version wins; an Xcode matching no
range supports nothing.
"""

from types import MappingProxyType
from typing import Mapping

from . import version

TABLE_VERSION = "2024.09"

WatchRanges = Mapping[str, bool]
PairTable = Mapping[str, WatchRanges]  # iOS range -> watchOS ranges


def _freeze(value):
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    return value


# iOS ranges shared by several Xcode releases
_IOS_10_3_WATCH = {"2.2": True, "3.x": True}
_IOS_11_WATCH = {">=3.2 <4.0": True, "4.x": True}

DEVICE_PAIR_COMPATIBILITY: Mapping[str, PairTable] = _freeze({
    ">=6.2 <7.0": {                     # Xcode 6.2 - 6.4
        ">=8.2 <9.0": {"1.x": True},
    },
    "7.x": {
        ">=8.2 <9.0": {"1.x": True},
        ">=9.0 <=9.2": {">=2.0 <=2.1": True},
        ">=9.3 <10": {"2.2": True},
    },
    "8.x": {
        ">=9.0 <=9.2": {">=2.0 <=2.1": True},
        ">=9.3 <10": {"2.2": True, "3.x": True},
        "10.x": {"2.2": True, "3.x": True},
    },
    "9.x": {
        ">=9.0 <=9.2": {">=2.0 <=2.1": True},
        ">=9.3 <10": {"2.2": True, "3.x": True},
        "10.x": {"2.2": True, "3.x": True},
        "11.x": _IOS_11_WATCH,
    },
    "10.x <10.3": {                     # Xcode 10.0 - 10.2.1
        "8.x": {},
        ">=9.0 <=9.2": {">=2.0 <=2.1": True},
        ">=9.3 <10": {"2.2": True, "3.x": True},
        ">=10.0 <=10.2": {"2.2": True, "3.x": True},
        ">=10.3 <11": {"3.x": True},
        "11.x": _IOS_11_WATCH,
        "12.x": {">=3.2 <4.0": True, "4.x": True, "5.x": True},
    },
    ">=10.3 <11": {                     # Xcode 10.3
        ">=10.3 <11": {"3.x": True},
        "11.x": _IOS_11_WATCH,
        "12.x": {"4.x": True, "5.x": True},
    },
    "11.x": {
        ">=10.3 <11": _IOS_10_3_WATCH,
        "11.x": _IOS_11_WATCH,
        "12.x": {"4.x": True, "5.x": True, "6.x": True},
        "13.x": {"4.x": True, "5.x": True, "6.x": True},
    },
    "12.x": {
        ">=10.3 <11": _IOS_10_3_WATCH,
        "11.x": _IOS_11_WATCH,
        "12.x": {"4.x": True, "5.x": True, "6.x": True, "7.x": True},
        "13.x": {"4.x": True, "5.x": True, "6.x": True, "7.x": True},
        "14.x": {"4.x": True, "5.x": True, "6.x": True, "7.x": True},
    },
    "13.x": {
        ">=10.3 <11": _IOS_10_3_WATCH,
        "11.x": _IOS_11_WATCH,
        "12.x": {"4.x": True, "5.x": True, "6.x": True, "7.x": True, "8.x": True},
        "13.x": {"4.x": True, "5.x": True, "6.x": True, "7.x": True, "8.x": True},
        "14.x": {"4.x": True, "5.x": True, "6.x": True, "7.x": True, "8.x": True},
        "15.x": {"4.x": True, "5.x": True, "6.x": True, "7.x": True, "8.x": True},
    },
    "14.x": {
        "12.x": {"7.x": True, "8.x": True, "9.x": True},
        "13.x": {"7.x": True, "8.x": True, "9.x": True},
        "14.x": {"7.x": True, "8.x": True, "9.x": True},
        "15.x": {"7.x": True, "8.x": True, "9.x": True},
        "16.x": {"7.x": True, "8.x": True, "9.x": True},
    },
    "15.x": {
        "15.x": {"7.x": True, "8.x": True, "9.x": True, "10.x": True},
        "16.x": {"7.x": True, "8.x": True, "9.x": True, "10.x": True},
        "17.x": {"7.x": True, "8.x": True, "9.x": True, "10.x": True},
    },
    "16.x": {
        "15.x": {"8.x": True, "9.x": True, "10.x": True, "11.x": True},
        "16.x": {"8.x": True, "9.x": True, "10.x": True, "11.x": True},
        "17.x": {"8.x": True, "9.x": True, "10.x": True, "11.x": True},
        "18.x": {"8.x": True, "9.x": True, "10.x": True, "11.x": True},
    },
})

_EMPTY: PairTable = MappingProxyType({})


def freeze_table(table: dict) -> Mapping[str, PairTable]:
    """Build an immutable table from plain dicts (used for alternate tables)."""
    return _freeze(table)


def for_xcode(xcode_version: str,
              table: Mapping[str, PairTable] = DEVICE_PAIR_COMPATIBILITY) -> PairTable:
    """Return the iOS -> watchOS slice of the table for an Xcode version.

    Unknown Xcode versions get an empty slice, so they support nothing.
    """
    for xcode_range, ios_ranges in table.items():
        if version.satisfies(xcode_version, xcode_range):
            return ios_ranges
    return _EMPTY
