"""Version comparison for Apple version strings.

Versions are coerced to three release components ("13" -> 13.0.0,
"10.3.1.2" -> 10.3.1), any "-suffix" or " (build)" tag is dropped, and the
result is a ``packaging.version.Version``.

Ranges understand:
  - exact versions ("13.0.0") and partial versions ("13.0", "13.x", "13")
    which match every version sharing the given components
  - comparators: >=, <=, >, <, =
  - space separated comparators that must all match (">=9.3 <10")
  - alternatives joined with "||"
  - "*" / "x" / "" which match everything
"""

import re
from typing import Iterable, List, Optional, Sequence, Tuple

from packaging.version import InvalidVersion, Version

_COMPARATOR_RE = re.compile(r"^(>=|<=|>|<|=)?\s*v?(.*)$")
_WILDCARDS = ("x", "X", "*")


def _strip_suffix(ver: str) -> str:
    return str(ver).strip().split("-", 1)[0].split(" ", 1)[0]


def _release(parts: Sequence[int]) -> Version:
    padded = list(parts[:3]) + [0] * (3 - len(parts[:3]))
    return Version(".".join(str(p) for p in padded))


def parse(ver: str) -> Version:
    """Coerce a version string into a three-component Version.

    Raises:
        ValueError: not a version (InvalidVersion is a ValueError)
    """
    cleaned = _strip_suffix(ver)
    if not cleaned:
        raise InvalidVersion(f"Invalid version: {ver!r}")
    return _release(Version(cleaned).release)


def format_version(ver: str, min_parts: int = 1, max_parts: int = 3) -> str:
    """Normalize a version to between min_parts and max_parts components.

    format_version("13", 2) -> "13.0"; format_version("10.3.1", 2, 2) -> "10.3"
    """
    parts = [str(p) for p in parse(ver).release]
    raw = _strip_suffix(ver).split(".")
    count = max(min_parts, min(len(raw), max_parts))
    return ".".join(parts[:count])


def compare(a: str, b: str) -> int:
    pa, pb = parse(a), parse(b)
    return (pa > pb) - (pa < pb)


def rcompare(a: str, b: str) -> int:
    return compare(b, a)


def eq(a: str, b: str) -> bool:
    return parse(a) == parse(b)


def gt(a: str, b: str) -> bool:
    return parse(a) > parse(b)


def gte(a: str, b: str) -> bool:
    return parse(a) >= parse(b)


def lt(a: str, b: str) -> bool:
    return parse(a) < parse(b)


def lte(a: str, b: str) -> bool:
    return parse(a) <= parse(b)


def sort_versions(versions: Iterable[str], reverse: bool = False) -> List[str]:
    return sorted(versions, key=parse, reverse=reverse)


# =========================================================================
# Ranges
# =========================================================================
# packaging.specifiers has no x-ranges or "||", so ranges are translated
# into primitive (op, Version) bounds here.

def _partial(text: str) -> List[int]:
    """Parse the specified components of a partial version.

    "12.x" -> [12], "9.3" -> [9, 3], "*" -> []
    """
    text = _strip_suffix(text)
    if text in ("",) + _WILDCARDS:
        return []
    result = []
    for part in text.split(".")[:3]:
        if part in _WILDCARDS:
            break
        if not part.isdigit():
            raise ValueError(f"Invalid range component: {part!r}")
        result.append(int(part))
    return result


def _bump(parts: List[int]) -> Version:
    bumped = list(parts)
    bumped[-1] += 1
    return _release(bumped)


def _bounds(token: str) -> List[Tuple[str, Version]]:
    """Translate one comparator token into primitive (op, version) bounds."""
    m = _COMPARATOR_RE.match(token)
    if not m:
        raise ValueError(f"Invalid comparator: {token!r}")
    op, operand = m.group(1) or "=", m.group(2)
    parts = _partial(operand)

    if not parts:
        # "*", ">=x" and friends match everything; "<x" matches nothing
        return [("<", _release([]))] if op in ("<", ">") else []

    if op == ">=":
        return [(">=", _release(parts))]
    if op == "<":
        return [("<", _release(parts))]
    if op == ">":
        return [(">", _release(parts))] if len(parts) == 3 else [(">=", _bump(parts))]
    if op == "<=":
        return [("<=", _release(parts))] if len(parts) == 3 else [("<", _bump(parts))]
    # "=" or bare version
    if len(parts) == 3:
        return [("=", _release(parts))]
    return [(">=", _release(parts)), ("<", _bump(parts))]


def _test(ver: Version, op: str, bound: Version) -> bool:
    if op == ">=":
        return ver >= bound
    if op == ">":
        return ver > bound
    if op == "<=":
        return ver <= bound
    if op == "<":
        return ver < bound
    return ver == bound


def _tokens(comparator_set: str) -> List[str]:
    # Allow ">= 9.3" as well as ">=9.3"
    normalized = re.sub(r"(>=|<=|>|<|=)\s+", r"\1", comparator_set.strip())
    return normalized.split()


def satisfies(ver: str, range_expr: Optional[str]) -> bool:
    """Check whether a version satisfies a range.

    Never raises: a malformed version or range simply does not match.
    """
    try:
        parsed = parse(ver)
        if range_expr is None:
            return False
        for alternative in str(range_expr).split("||"):
            tokens = _tokens(alternative)
            if not tokens:
                return True
            bounds = [b for token in tokens for b in _bounds(token)]
            if all(_test(parsed, op, bound) for op, bound in bounds):
                return True
    except ValueError:
        return False
    return False


def is_valid(ver: Optional[str]) -> bool:
    if not ver:
        return False
    try:
        parse(ver)
    except ValueError:
        return False
    return True
