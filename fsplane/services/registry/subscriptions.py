"""Subscription matching and the persisted subscription string format.

Resolution always works on structured :class:`Subscription` values. The flat
``"project:name:exclude"`` form exists only at the persistence boundary.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from fsplane.foundation.errors import ValidationError

from .models import WILDCARD, FeatureSetReference, Store, Subscription

_ENTRY_SEP = ","
_FIELD_SEP = ":"
_TRUE = "true"
_FALSE = "false"


def pattern_matches(pattern: str, value: str) -> bool:
    if pattern == WILDCARD:
        return bool(value)
    return pattern == value


def matches(subscription: Subscription, ref: FeatureSetReference) -> bool:
    return pattern_matches(subscription.project_pattern, ref.project) and pattern_matches(
        subscription.name_pattern, ref.name
    )


def resolve(ref: FeatureSetReference, subscriptions: Iterable[Subscription]) -> bool:
    """Return ``True`` when ``ref`` should flow into a store with ``subscriptions``.

    Every subscription is considered; a single matching exclude wins over any
    number of matching includes, so the result does not depend on list order.
    """

    has_include = False
    has_exclude = False
    for sub in subscriptions:
        if not matches(sub, ref):
            continue
        if sub.exclude:
            has_exclude = True
        else:
            has_include = True
    return has_include and not has_exclude


def subscribed_stores(
    ref: FeatureSetReference, stores: Mapping[str, Store] | Iterable[Store]
) -> frozenset[str]:
    """Names of the stores that ``ref`` resolves into."""

    values = stores.values() if isinstance(stores, Mapping) else stores
    return frozenset(s.name for s in values if resolve(ref, s.subscriptions))


# persistence format ------------------------------------------------------


def format_subscription(sub: Subscription) -> str:
    flag = _TRUE if sub.exclude else _FALSE
    return _FIELD_SEP.join((sub.project_pattern, sub.name_pattern, flag))


def format_subscriptions(subscriptions: Iterable[Subscription]) -> str:
    return _ENTRY_SEP.join(format_subscription(s) for s in subscriptions)


def _parse_flag(raw: str, entry: str) -> bool:
    value = raw.lower()
    if value == _TRUE:
        return True
    if value == _FALSE:
        return False
    raise ValidationError(f"invalid exclude flag {raw!r} in subscription {entry!r}")


def parse_subscription(entry: str) -> Subscription:
    """Parse one ``project:name[:exclude]`` entry.

    Two-part entries predate the exclude flag and are read as includes.
    """

    compact = "".join(entry.split())
    parts = compact.split(_FIELD_SEP)
    if len(parts) == 2:
        project, name = parts
        exclude = False
    elif len(parts) == 3:
        project, name, flag = parts
        exclude = _parse_flag(flag, entry)
    else:
        raise ValidationError(f"malformed subscription entry {entry!r}")
    return Subscription(project, name, exclude)


def parse_subscriptions(raw: str | None) -> list[Subscription]:
    if not raw:
        return []
    out: list[Subscription] = []
    for entry in raw.split(_ENTRY_SEP):
        if not entry.strip():
            continue
        out.append(parse_subscription(entry))
    return out


__all__ = [
    "pattern_matches",
    "matches",
    "resolve",
    "subscribed_stores",
    "format_subscription",
    "format_subscriptions",
    "parse_subscription",
    "parse_subscriptions",
]
