"""
Structural subscription filter.

A [Filter][relayhub.models.filter.Filter] describes which events a
subscription wants. Two filters built from the same constraints compare and
hash equal regardless of list order or duplicates, which makes the filter
usable as a cache and subscription-identity key.

See Also:
    [relayhub.core.multiplexer][]: Opens one relay subscription per
        connected relay for a filter, and suppresses empty filters.
    [relayhub.core.batch][]: Builds one filter per debounce window.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from nostr_sdk import Filter as NostrFilter

from ._validation import str_tuple, validate_instance, validate_int, validate_str_no_null
from .constants import EVENT_KIND_MAX


def _sorted_unique(values: Iterable[Any]) -> tuple[Any, ...]:
    return tuple(sorted(set(values)))


@dataclass(frozen=True, slots=True)
class Filter:
    """Immutable, value-comparable NIP-01 filter.

    ``None`` means the constraint is absent. An empty tuple means the
    constraint is present but matches nothing, which makes the whole
    filter [empty][relayhub.models.filter.Filter.is_empty].

    List inputs are normalised into sorted, de-duplicated tuples and tag
    names are stored without their ``#`` prefix.

    Attributes:
        ids: Event ids to match.
        authors: Author pubkeys to match.
        kinds: Event kinds to match.
        since: Lower creation-time bound (inclusive).
        until: Upper creation-time bound (inclusive).
        limit: Maximum number of stored events to return.
        tags: ``(name, values)`` pairs for ``#<name>`` tag queries.
        search: NIP-50 full-text query.

    Examples:
        ```python
        a = Filter(kinds=[0], authors=["bb" * 32, "aa" * 32])
        b = Filter.from_dict({"authors": ["aa" * 32, "bb" * 32], "kinds": [0, 0]})
        a == b              # True
        Filter(authors=[]).is_empty  # True
        ```
    """

    ids: tuple[str, ...] | None = None
    authors: tuple[str, ...] | None = None
    kinds: tuple[int, ...] | None = None
    since: int | None = None
    until: int | None = None
    limit: int | None = None
    tags: tuple[tuple[str, tuple[str, ...]], ...] = ()
    search: str | None = None

    def __post_init__(self) -> None:
        for name in ("ids", "authors"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, _sorted_unique(str_tuple(value, name)))

        if self.kinds is not None:
            validate_instance(self.kinds, Iterable, "kinds")
            kinds = tuple(self.kinds)
            for kind in kinds:
                validate_int(kind, "kind", maximum=EVENT_KIND_MAX)
            object.__setattr__(self, "kinds", _sorted_unique(int(kind) for kind in kinds))

        for name in ("since", "until", "limit"):
            value = getattr(self, name)
            if value is not None:
                validate_int(value, name)

        if self.search is not None:
            validate_str_no_null(self.search, "search")

        raw_tags = self.tags.items() if isinstance(self.tags, Mapping) else self.tags
        tags: dict[str, tuple[str, ...]] = {}
        for name, values in raw_tags:
            validate_str_no_null(name, "tag name")
            key = name.removeprefix("#")
            if not key:
                raise ValueError("tag name must not be empty")
            tags[key] = _sorted_unique(str_tuple(values, f"#{key}"))
        object.__setattr__(self, "tags", tuple(sorted(tags.items())))

    @property
    def is_empty(self) -> bool:
        """Whether a present list constraint has zero entries.

        An empty filter can never match anything, so no subscription is
        opened for it.
        """
        if any(v is not None and not v for v in (self.ids, self.authors, self.kinds)):
            return True
        return any(not values for _, values in self.tags)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Filter:
        """Build a filter from its NIP-01 JSON form.

        Raises:
            TypeError: If *data* is not a mapping or a value has the wrong type.
            ValueError: If *data* contains an unknown field.
        """
        validate_instance(data, Mapping, "filter")
        fields: dict[str, Any] = {}
        tags: dict[str, Any] = {}
        for key, value in data.items():
            if key.startswith("#"):
                tags[key] = value
            elif key in ("ids", "authors", "kinds", "since", "until", "limit", "search"):
                fields[key] = value
            else:
                raise ValueError(f"unknown filter field: {key!r}")
        return cls(**fields, tags=tuple(tags.items()))

    def to_dict(self) -> dict[str, Any]:
        """Return the NIP-01 JSON form, omitting absent constraints."""
        result: dict[str, Any] = {}
        for name in ("ids", "authors", "kinds"):
            value = getattr(self, name)
            if value is not None:
                result[name] = list(value)
        for name, values in self.tags:
            result[f"#{name}"] = list(values)
        for name in ("since", "until", "limit", "search"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result

    def canonical(self) -> str:
        """Return the canonical JSON serialization used as identity key."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def to_nostr(self) -> NostrFilter:
        """Return the filter as a ``nostr_sdk.Filter``."""
        return NostrFilter.from_json(self.canonical())
