"""Tests for identity resolution, search filters and import paths."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError
from vcd_mock import MockVcdPlatform

from vcd_provisioner.config import Config
from vcd_provisioner.errors import ErrorKind, FatalRemoteError, NotFoundError, ProvisionerError
from vcd_provisioner.identity import (
    AmbiguousMatchError,
    DateFilter,
    IdentityResolver,
    ImportListingRequested,
    ImportPathError,
    SearchFilter,
    parse_import_path,
    select_match,
)
from vcd_provisioner.remote import ObjectSummary


def at(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 3, day, hour, 0, tzinfo=UTC)


WEB_SERVERS = [
    ObjectSummary(id="vm-1", name="web-1", created=at(1), metadata={"env": "prod"}),
    ObjectSummary(id="vm-2", name="web-2", created=at(5), metadata={"env": "test"}),
    ObjectSummary(id="vm-3", name="db-1", created=at(3), metadata={"env": "prod"}),
]


class TestDateFilter:
    """Tests for DateFilter parsing and comparison."""

    def test_default_operator_is_equality(self) -> None:
        date_filter = DateFilter.parse("2024-03-05")

        assert date_filter.operator == "=="
        assert date_filter.date_only

    def test_date_only_covers_whole_day(self) -> None:
        date_filter = DateFilter.parse("== 2024-03-05")

        assert date_filter.matches(at(5, 0))
        assert date_filter.matches(at(5, 23))
        assert not date_filter.matches(at(6, 0))

    @pytest.mark.parametrize(
        ("expression", "created", "expected"),
        [
            ("> 2024-03-05", at(5, 23), False),
            ("> 2024-03-05", at(6, 0), True),
            (">= 2024-03-05", at(5, 0), True),
            ("< 2024-03-05", at(4, 23), True),
            ("< 2024-03-05", at(5, 0), False),
            ("<= 2024-03-05", at(5, 23), True),
            ("<= 2024-03-05", at(6, 0), False),
        ],
    )
    def test_date_only_operators(self, expression: str, created: datetime, expected: bool) -> None:
        assert DateFilter.parse(expression).matches(created) is expected

    def test_date_with_time(self) -> None:
        date_filter = DateFilter.parse(">2024-03-05 12:30")

        assert not date_filter.date_only
        assert date_filter.matches(datetime(2024, 3, 5, 12, 31, tzinfo=UTC))
        assert not date_filter.matches(datetime(2024, 3, 5, 12, 30, tzinfo=UTC))

    def test_naive_creation_dates_are_utc(self) -> None:
        assert DateFilter.parse("2024-03-05").matches(datetime(2024, 3, 5, 8, 0))

    def test_missing_creation_date_never_matches(self) -> None:
        assert not DateFilter.parse(">= 2000-01-01").matches(None)

    @pytest.mark.parametrize("expression", ["yesterday", "=> 2024-03-05", "2024-3-5"])
    def test_invalid_expressions(self, expression: str) -> None:
        with pytest.raises(ValueError):
            DateFilter.parse(expression)


class TestSearchFilter:
    """Tests for SearchFilter validation and matching."""

    def test_filter_needs_a_predicate(self) -> None:
        with pytest.raises(ValidationError):
            SearchFilter(latest=True)

    def test_earliest_and_latest_are_exclusive(self) -> None:
        with pytest.raises(ValidationError):
            SearchFilter(name_regex="web", earliest=True, latest=True)

    def test_invalid_regex_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SearchFilter(name_regex="web[")

    def test_invalid_date_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SearchFilter(date="soon")

    def test_predicates_are_combined(self) -> None:
        search_filter = SearchFilter(name_regex="^web", metadata={"env": "prod"})

        assert [c.name for c in WEB_SERVERS if search_filter.matches(c)] == ["web-1"]


class TestSelectMatch:
    """Tests for select_match()."""

    def test_single_match(self) -> None:
        assert select_match(WEB_SERVERS, SearchFilter(name_regex="^db")).id == "vm-3"

    def test_no_match(self) -> None:
        with pytest.raises(NotFoundError):
            select_match(WEB_SERVERS, SearchFilter(name_regex="^mail"))

    def test_several_matches_without_tie_break(self) -> None:
        """web-1 and web-2 both match "^web" and nothing picks one."""
        with pytest.raises(AmbiguousMatchError) as exc_info:
            select_match(WEB_SERVERS, SearchFilter(name_regex="^web"), "vm")

        assert exc_info.value.kind == ErrorKind.AMBIGUOUS
        assert exc_info.value.names == ["web-1", "web-2"]
        assert "web-1" in str(exc_info.value)
        assert "web-2" in str(exc_info.value)

    def test_latest_breaks_tie(self) -> None:
        selected = select_match(WEB_SERVERS, SearchFilter(name_regex="^web", latest=True))

        assert selected.name == "web-2"

    def test_earliest_breaks_tie(self) -> None:
        selected = select_match(WEB_SERVERS, SearchFilter(name_regex="^web", earliest=True))

        assert selected.name == "web-1"

    def test_equal_dates_stay_ambiguous(self) -> None:
        twins = [
            ObjectSummary(id="a", name="web-a", created=at(1)),
            ObjectSummary(id="b", name="web-b", created=at(1)),
        ]

        with pytest.raises(AmbiguousMatchError):
            select_match(twins, SearchFilter(name_regex="web", latest=True))

    def test_same_day_without_tie_break_is_ambiguous(self) -> None:
        """A date-only filter covering both candidates still needs earliest/latest."""
        same_day = [
            ObjectSummary(id="vm-1", name="web-1", created=datetime(2024, 1, 1, 9, tzinfo=UTC)),
            ObjectSummary(id="vm-2", name="web-2", created=datetime(2024, 1, 1, 17, tzinfo=UTC)),
        ]

        with pytest.raises(AmbiguousMatchError) as exc_info:
            select_match(same_day, SearchFilter(name_regex="web-.*", date="2024-01-01"))

        assert exc_info.value.names == ["web-1", "web-2"]

    def test_date_filter_selects(self) -> None:
        selected = select_match(WEB_SERVERS, SearchFilter(name_regex="^web", date="> 2024-03-02"))

        assert selected.id == "vm-2"


class TestParseImportPath:
    """Tests for parse_import_path()."""

    def test_three_segments(self) -> None:
        path = parse_import_path("acme.vdc1.web")

        assert path.segments == ("acme", "vdc1", "web")
        assert path.name == "web"
        assert path.parents == ("acme", "vdc1")
        assert path.position is None
        assert not path.listing

    def test_custom_separator(self) -> None:
        path = parse_import_path("acme/my.vdc/web", separator="/")

        assert path.segments == ("acme", "my.vdc", "web")

    def test_position(self) -> None:
        path = parse_import_path("acme.vdc1.web.2", positional=True)

        assert path.segments == ("acme", "vdc1", "web")
        assert path.position == 2

    @pytest.mark.parametrize("raw", ["0", "-1", "two"])
    def test_invalid_position(self, raw: str) -> None:
        with pytest.raises(ImportPathError):
            parse_import_path(f"acme.vdc1.web.{raw}", positional=True)

    def test_listing_prefix(self) -> None:
        path = parse_import_path("list@acme.vdc1.web", positional=True)

        assert path.listing
        assert path.segments == ("acme", "vdc1", "web")

    def test_wrong_segment_count(self) -> None:
        with pytest.raises(ImportPathError) as exc_info:
            parse_import_path("acme.web")

        assert "<segment1>.<segment2>.<segment3>" in str(exc_info.value)

    def test_empty_segment(self) -> None:
        with pytest.raises(ImportPathError, match="empty segment"):
            parse_import_path("acme..web")

    def test_join_tail_keeps_dotted_version(self) -> None:
        path = parse_import_path("vmware.kubernetes.1.0.0", join_tail=True)

        assert path.segments == ("vmware", "kubernetes", "1.0.0")


class TestIdentityResolver:
    """Tests for IdentityResolver against the mock platform."""

    @pytest.fixture
    def platform(self) -> MockVcdPlatform:
        platform = MockVcdPlatform()
        platform.add_object("vm", "web", created=at(1), object_id="vm-a")
        platform.add_object("vm", "web", created=at(2), object_id="vm-b")
        platform.add_object("vm", "db", created=at(3), object_id="vm-c")
        return platform

    @pytest.mark.asyncio
    async def test_resolve_by_name(self, platform: MockVcdPlatform) -> None:
        resolver = IdentityResolver(platform)

        assert (await resolver.resolve_by_name("vm", "db")).id == "vm-c"

    @pytest.mark.asyncio
    async def test_resolve_by_duplicate_name_is_ambiguous(self, platform: MockVcdPlatform) -> None:
        with pytest.raises(AmbiguousMatchError):
            await IdentityResolver(platform).resolve_by_name("vm", "web")

    @pytest.mark.asyncio
    async def test_resolve_by_id_validates_existence(self, platform: MockVcdPlatform) -> None:
        resolver = IdentityResolver(platform)

        assert (await resolver.resolve_by_id("vm", "vm-c")).name == "db"
        with pytest.raises(NotFoundError):
            await resolver.resolve_by_id("vm", "vm-missing")

    @pytest.mark.asyncio
    async def test_resolve_with_filter(self, platform: MockVcdPlatform) -> None:
        selected = await IdentityResolver(platform).resolve(
            "vm", SearchFilter(name_regex="^web$", latest=True)
        )

        assert selected.id == "vm-b"

    @pytest.mark.asyncio
    async def test_import_with_position(self, platform: MockVcdPlatform) -> None:
        path = parse_import_path("acme.vdc1.web.2", positional=True)

        selected = await IdentityResolver(platform).resolve_import("vm", path)

        assert selected.id == "vm-b"

    @pytest.mark.asyncio
    async def test_import_position_out_of_range(self, platform: MockVcdPlatform) -> None:
        path = parse_import_path("acme.vdc1.web.3", positional=True)

        with pytest.raises(NotFoundError, match="out of range"):
            await IdentityResolver(platform).resolve_import("vm", path)

    @pytest.mark.asyncio
    async def test_import_duplicate_name_without_position(self, platform: MockVcdPlatform) -> None:
        path = parse_import_path("acme.vdc1.web")

        with pytest.raises(AmbiguousMatchError) as exc_info:
            await IdentityResolver(platform).resolve_import("vm", path)

        assert "list@" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_import_listing(self, platform: MockVcdPlatform) -> None:
        path = parse_import_path("list@acme.vdc1.web", positional=True)

        with pytest.raises(ImportListingRequested) as exc_info:
            await IdentityResolver(platform).resolve_import("vm", path)

        assert [c.id for c in exc_info.value.candidates] == ["vm-a", "vm-b"]
        assert "vm-a" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_busy_read_is_retried(
        self, platform: MockVcdPlatform, fast_config: Config
    ) -> None:
        platform.fail_call("read", RuntimeError("Object is busy completing an operation"))

        summary = await IdentityResolver(platform, fast_config).resolve_by_id("vm", "vm-c")

        assert summary.name == "db"
        assert platform.call_count("read") == 2

    @pytest.mark.asyncio
    async def test_adapter_errors_are_classified(
        self, platform: MockVcdPlatform, fast_config: Config
    ) -> None:
        platform.fail_call("query", RuntimeError("connection reset by peer"))

        with pytest.raises(FatalRemoteError) as exc_info:
            await IdentityResolver(platform, fast_config).resolve_by_name("vm", "db")

        assert isinstance(exc_info.value, ProvisionerError)
        assert exc_info.value.kind == ErrorKind.FATAL
