"""Identity resolution: names, search filters and import paths to remote IDs.

A filter is a conjunction of predicates:

- name_regex: regular expression searched in the object name (anchor it for
  a full match)
- date: "[op] YYYY-MM-DD[ HH:MM[:SS]]" compared with the creation date,
  op one of >, >=, <, <=, == (default ==). A date without a time covers
  the whole day.
- metadata: exact key/value equality for every listed key

earliest/latest only break ties between several matches. Without them more
than one match raises AmbiguousMatchError naming every match.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import Config
from .errors import ErrorKind, NotFoundError, ProvisionerError
from .remote import ObjectSummary, RemoteResourceAPI
from .resources import ParentRef
from .tasks import TimeoutBudget, bounded, retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

LIST_PREFIX = "list@"

_DATE_PATTERN = re.compile(
    r"^\s*(?P<op>>=|<=|==|>|<)?\s*"
    r"(?P<date>\d{4}-\d{2}-\d{2})"
    r"(?:[ T](?P<time>\d{2}:\d{2}(?::\d{2})?))?\s*$"
)


class AmbiguousMatchError(ProvisionerError):
    """Raised when several objects match and no tie-break was declared."""

    kind = ErrorKind.AMBIGUOUS

    def __init__(self, message: str, names: list[str]) -> None:
        super().__init__(message)
        self.names = names


class ImportPathError(ProvisionerError):
    """Raised when an import path does not have the expected shape."""

    kind = ErrorKind.INVALID_PLAN


class ImportListingRequested(Exception):
    """Raised instead of adopting an object when the path asked for a listing."""

    def __init__(self, candidates: list[ObjectSummary]) -> None:
        self.candidates = candidates
        super().__init__(format_listing(candidates))


def format_listing(candidates: list[ObjectSummary]) -> str:
    lines = ["No object adopted, list of candidates:", "  position  id  name"]
    for position, candidate in enumerate(candidates, start=1):
        lines.append(f"  {position}  {candidate.id}  {candidate.name}")
    return "\n".join(lines)


# =============================================================================
# Search filters
# =============================================================================


@dataclass(frozen=True)
class DateFilter:
    """Comparison of a creation date with a fixed point in time."""

    operator: str
    value: datetime
    date_only: bool

    @classmethod
    def parse(cls, text: str) -> DateFilter:
        """Parse "[op] YYYY-MM-DD[ HH:MM[:SS]]".

        Raises:
            ValueError: If text does not follow the syntax.
        """
        match = _DATE_PATTERN.match(text)
        if match is None:
            raise ValueError(f"Invalid date filter '{text}', expected '[op] YYYY-MM-DD[ HH:MM[:SS]]'")
        time_part = match.group("time")
        stamp = match.group("date") + (f" {time_part}" if time_part else "")
        fmt = "%Y-%m-%d %H:%M:%S" if time_part and time_part.count(":") == 2 else "%Y-%m-%d %H:%M"
        value = datetime.strptime(stamp, fmt if time_part else "%Y-%m-%d").replace(tzinfo=UTC)
        return cls(operator=match.group("op") or "==", value=value, date_only=time_part is None)

    def matches(self, created: datetime | None) -> bool:
        if created is None:
            return False
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)

        if not self.date_only:
            return {
                ">": created > self.value,
                ">=": created >= self.value,
                "<": created < self.value,
                "<=": created <= self.value,
                "==": created == self.value,
            }[self.operator]

        # A bare date stands for the whole day
        start = self.value
        end = start + timedelta(days=1)
        return {
            ">": created >= end,
            ">=": created >= start,
            "<": created < start,
            "<=": created < end,
            "==": start <= created < end,
        }[self.operator]


class SearchFilter(BaseModel):
    """Filter selecting one remote object among query results."""

    model_config = {"extra": "forbid", "frozen": True}

    name_regex: str | None = None
    date: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    earliest: bool = False
    latest: bool = False

    @field_validator("name_regex")
    @classmethod
    def validate_name_regex(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"name_regex is not a valid regular expression: {e}") from e
        return v

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str | None) -> str | None:
        if v is not None:
            DateFilter.parse(v)
        return v

    @model_validator(mode="after")
    def validate_tie_break(self) -> SearchFilter:
        if self.earliest and self.latest:
            raise ValueError("earliest and latest are mutually exclusive")
        if self.name_regex is None and self.date is None and not self.metadata:
            raise ValueError("a filter needs at least one of name_regex, date or metadata")
        return self

    def matches(self, candidate: ObjectSummary) -> bool:
        if self.name_regex is not None and re.search(self.name_regex, candidate.name) is None:
            return False
        if self.date is not None and not DateFilter.parse(self.date).matches(candidate.created):
            return False
        for key, value in self.metadata.items():
            if candidate.metadata.get(key) != value:
                return False
        return True


def select_match(
    candidates: list[ObjectSummary], search_filter: SearchFilter, kind: str = "object"
) -> ObjectSummary:
    """Apply a filter to query results and return the single selected object.

    Raises:
        NotFoundError: If nothing matched.
        AmbiguousMatchError: If several matched and no tie-break resolves them.
    """
    matched = [c for c in candidates if search_filter.matches(c)]
    if not matched:
        raise NotFoundError(f"No {kind} matches filter {search_filter.model_dump(exclude_defaults=True)}")
    if len(matched) == 1:
        return matched[0]

    names = [c.name for c in matched]
    if not (search_filter.earliest or search_filter.latest):
        raise AmbiguousMatchError(
            f"{len(matched)} {kind} objects match the filter and no earliest/latest "
            f"was requested: {names}",
            names,
        )

    dated = [(_aware(c.created), c) for c in matched if c.created is not None]
    if not dated:
        raise AmbiguousMatchError(
            f"Cannot break tie between {names}: no creation dates reported", names
        )
    pick = min if search_filter.earliest else max
    chosen_at, chosen = pick(dated, key=lambda pair: pair[0])
    ties = [c.name for created, c in dated if created == chosen_at]
    if len(ties) > 1:
        raise AmbiguousMatchError(f"{len(ties)} {kind} objects share the same creation date: {ties}", ties)
    return chosen


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


# =============================================================================
# Import paths
# =============================================================================


@dataclass(frozen=True)
class ImportPath:
    """A parsed import path: leading segments plus an optional 1-based position."""

    segments: tuple[str, ...]
    position: int | None = None
    listing: bool = False

    @property
    def name(self) -> str:
        return self.segments[-1]

    @property
    def parents(self) -> tuple[str, ...]:
        return self.segments[:-1]


def parse_import_path(
    path: str,
    separator: str = ".",
    parts: int = 3,
    *,
    positional: bool = False,
    join_tail: bool = False,
) -> ImportPath:
    """Split an import path such as "org.vdc.name" or "org.vdc.name.2".

    Args:
        path: The raw path, optionally prefixed with "list@".
        separator: Segment separator.
        parts: Number of named segments.
        positional: Accept a trailing 1-based position.
        join_tail: Join every segment past parts-1 back with "." (dotted
            versions such as "vmware.kubernetes.1.0.0").

    Raises:
        ImportPathError: If the path does not have the expected shape.
    """
    listing = path.startswith(LIST_PREFIX)
    body = path[len(LIST_PREFIX) :] if listing else path
    segments = body.split(separator)
    position: int | None = None

    if join_tail:
        if len(segments) < parts:
            raise ImportPathError(_shape_message(path, separator, parts, positional))
        segments = segments[: parts - 1] + [".".join(segments[parts - 1 :])]
    elif positional and not listing and len(segments) == parts + 1:
        raw = segments.pop()
        if not raw.isdigit() or int(raw) < 1:
            raise ImportPathError(f"Position '{raw}' in import path '{path}' must be a positive integer")
        position = int(raw)
    elif len(segments) != parts:
        raise ImportPathError(_shape_message(path, separator, parts, positional))

    if any(not s for s in segments):
        raise ImportPathError(f"Import path '{path}' contains an empty segment")
    return ImportPath(tuple(segments), position, listing)


def _shape_message(path: str, separator: str, parts: int, positional: bool) -> str:
    shape = separator.join(f"<segment{i}>" for i in range(1, parts + 1))
    if positional:
        shape += f"[{separator}<position>]"
    return f"Import path '{path}' must be specified as {shape}"


# =============================================================================
# Resolver
# =============================================================================


class IdentityResolver:
    """Maps names, filters and import paths to remote object summaries.

    Every read and query runs under the operation timeout budget, with busy
    rejections retried and other adapter errors classified.
    """

    def __init__(self, api: RemoteResourceAPI, config: Config | None = None) -> None:
        self._api = api
        self._config = config or Config()

    async def _call(self, call: Callable[[], Awaitable[T]], operation: str) -> T:
        budget = TimeoutBudget(self._config.operation_timeout_seconds)
        return await retry(
            budget,
            lambda: bounded(call, budget, operation),
            operation,
            backoff_base=self._config.retry_backoff_base_seconds,
            backoff_max=self._config.retry_backoff_max_seconds,
        )

    async def _query(self, kind: str, parent: ParentRef | None) -> list[ObjectSummary]:
        return await self._call(lambda: self._api.query(kind, parent), f"query {kind}")

    async def resolve_by_id(self, kind: str, object_id: str) -> ObjectSummary:
        """Validate that object_id exists. No filtering is applied."""
        attributes: dict[str, Any] = await self._call(
            lambda: self._api.read(kind, object_id), f"read {kind}/{object_id}"
        )
        return ObjectSummary(id=object_id, name=str(attributes.get("name", "")))

    async def resolve_by_name(
        self, kind: str, name: str, parent: ParentRef | None = None
    ) -> ObjectSummary:
        candidates = await self._query(kind, parent)
        matched = [c for c in candidates if c.name == name]
        if not matched:
            raise NotFoundError(f"No {kind} named '{name}'")
        if len(matched) > 1:
            names = [c.name for c in matched]
            raise AmbiguousMatchError(f"{len(matched)} {kind} objects are named '{name}'", names)
        return matched[0]

    async def resolve(
        self, kind: str, search_filter: SearchFilter, parent: ParentRef | None = None
    ) -> ObjectSummary:
        candidates = await self._query(kind, parent)
        selected = select_match(candidates, search_filter, kind)
        logger.info(
            "Resolved object by filter",
            extra={"kind": kind, "id": selected.id, "object_name": selected.name},
        )
        return selected

    async def resolve_import(
        self, kind: str, import_path: ImportPath, parent: ParentRef | None = None
    ) -> ObjectSummary:
        """Resolve the object an import path points at.

        Raises:
            ImportListingRequested: If the path carried the "list@" prefix.
            NotFoundError: If no object has the name or the position is out
                of range.
            AmbiguousMatchError: If several objects share the name and no
                position was given.
        """
        candidates = [c for c in await self._query(kind, parent) if c.name == import_path.name]
        if import_path.listing:
            raise ImportListingRequested(candidates)
        if not candidates:
            raise NotFoundError(f"No {kind} named '{import_path.name}'")
        if import_path.position is not None:
            if import_path.position > len(candidates):
                raise NotFoundError(
                    f"Position {import_path.position} out of range, "
                    f"{len(candidates)} {kind} objects are named '{import_path.name}'"
                )
            return candidates[import_path.position - 1]
        if len(candidates) > 1:
            names = [f"{c.name} ({c.id})" for c in candidates]
            raise AmbiguousMatchError(
                f"{len(candidates)} {kind} objects are named '{import_path.name}', "
                f"append a position or use the {LIST_PREFIX} prefix",
                names,
            )
        return candidates[0]
