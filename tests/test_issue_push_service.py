"""Тесты IssuePushService: дедупликация задач по сигнатуре."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from conftest import BASE_TIME, make_group
from failsig.clients.base import IssueTrackerClient
from failsig.exceptions import ExternalPushError
from failsig.models.common import PrimaryClass, PushStatus
from failsig.models.push import IssuePayload, IssueRef
from failsig.services.issue_push_service import IssuePushService, format_issue_payload
from failsig.storage.memory import InMemoryDefectStore

SIGNATURE = "abcdef012345"


class FakeClock:
    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTracker:
    """Трекер в памяти: запоминает payload и выдаёт ключи DEF-1, DEF-2..."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.payloads: list[IssuePayload] = []

    async def create_or_update_issue(self, payload: IssuePayload) -> IssueRef:
        self.payloads.append(payload)
        if self.fail:
            raise ConnectionError("tracker unavailable")
        key = f"DEF-{len(self.payloads)}"
        return IssueRef(issue_key=key, issue_url=f"https://tracker.local/{key}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(store: InMemoryDefectStore, clock: FakeClock) -> IssuePushService:
    return IssuePushService(store, pending_timeout=600, clock=clock)


# ---------------------------------------------------------------------------
# should_push / record_push
# ---------------------------------------------------------------------------


def test_should_push_without_history(service: IssuePushService) -> None:
    assert service.should_push(SIGNATURE) is True


def test_success_blocks_until_failure_recorded(service: IssuePushService) -> None:
    service.record_push(SIGNATURE, 1, IssueRef(issue_key="DEF-1"))
    assert service.should_push(SIGNATURE) is False

    service.record_push(SIGNATURE, 1, ExternalPushError("boom"))
    assert service.should_push(SIGNATURE) is True


def test_fresh_pending_blocks_stale_pending_does_not(
    service: IssuePushService, clock: FakeClock,
) -> None:
    service.record_push(SIGNATURE, 1, None)
    assert service.should_push(SIGNATURE) is False

    clock.advance(599)
    assert service.should_push(SIGNATURE) is False

    clock.advance(2)
    assert service.should_push(SIGNATURE) is True


def test_record_push_stores_outcome_details(service: IssuePushService) -> None:
    ok = service.record_push(
        SIGNATURE, 7, IssueRef(issue_key="DEF-9", issue_url="https://tracker.local/DEF-9"),
        actor="ci",
    )
    failed = service.record_push(SIGNATURE, 7, ConnectionError("timeout"))

    assert ok.status == PushStatus.SUCCESS
    assert ok.issue_key == "DEF-9"
    assert ok.actor == "ci"
    assert failed.status == PushStatus.FAILED
    assert failed.error_message == "timeout"
    assert [r.id for r in service.get_push_history(SIGNATURE)] == [ok.id, failed.id]


def test_history_is_per_signature(service: IssuePushService) -> None:
    service.record_push(SIGNATURE, 1, IssueRef(issue_key="DEF-1"))

    assert service.should_push("0" * 12) is True
    assert service.get_push_history("0" * 12) == []


# ---------------------------------------------------------------------------
# push_group / push_groups
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_push_group_creates_issue_once(service: IssuePushService) -> None:
    tracker = FakeTracker()
    group = make_group(id=1)

    record = await service.push_group(group, tracker, actor="ci")
    again = await service.push_group(group, tracker, actor="ci")

    assert record is not None
    assert record.status == PushStatus.SUCCESS
    assert record.issue_key == "DEF-1"
    assert again is None
    assert len(tracker.payloads) == 1
    statuses = [r.status for r in service.get_push_history(group.signature)]
    assert statuses == [PushStatus.PENDING, PushStatus.SUCCESS]


@pytest.mark.asyncio
async def test_force_bypasses_dedup(service: IssuePushService) -> None:
    tracker = FakeTracker()
    group = make_group(id=1)

    await service.push_group(group, tracker)
    record = await service.push_group(group, tracker, force=True)

    assert record is not None
    assert record.issue_key == "DEF-2"


@pytest.mark.asyncio
async def test_tracker_error_is_recorded_not_raised(service: IssuePushService) -> None:
    group = make_group(id=1)

    record = await service.push_group(group, FakeTracker(fail=True))

    assert record is not None
    assert record.status == PushStatus.FAILED
    assert "tracker unavailable" in record.error_message
    assert service.should_push(group.signature) is True

    retry = await service.push_group(group, FakeTracker())
    assert retry is not None and retry.status == PushStatus.SUCCESS


@pytest.mark.asyncio
async def test_push_groups_deduplicates_and_counts(service: IssuePushService) -> None:
    already = make_group(id=3, signature="c" * 12)
    service.record_push(already.signature, already.id, IssueRef(issue_key="OLD-1"))
    groups = [
        make_group(id=1, signature="a" * 12),
        make_group(id=1, signature="a" * 12),
        make_group(id=2, signature="b" * 12),
        already,
    ]
    tracker = FakeTracker()

    result = await service.push_groups(groups, tracker)

    assert result.total_groups == 3
    assert result.pushed_count == 2
    assert result.failed_count == 0
    assert result.skipped_count == 1
    assert sorted(p.signature for p in tracker.payloads) == ["a" * 12, "b" * 12]


@pytest.mark.asyncio
async def test_push_groups_empty(service: IssuePushService) -> None:
    result = await service.push_groups([], FakeTracker())
    assert result.total_groups == 0


def test_fake_tracker_satisfies_protocol() -> None:
    assert isinstance(FakeTracker(), IssueTrackerClient)


# ---------------------------------------------------------------------------
# format_issue_payload
# ---------------------------------------------------------------------------


def test_format_issue_payload() -> None:
    group = make_group(
        id=5,
        primary_class=PrimaryClass.ENVIRONMENT_ISSUE,
        sub_class="Connection_Refused",
        representative_error="Error: connect ECONNREFUSED 127.0.0.1:5432\n    at TCPConnectWrap",
        occurrence_count=4,
    )

    payload = format_issue_payload(group, labels_prefix="qa")

    assert payload.summary == "[Environment Issue] Error: connect ECONNREFUSED 127.0.0.1:5432"
    assert payload.labels == ["qa", "qa:environment-issue", "qa:connection-refused"]
    assert payload.signature == group.signature
    assert payload.group_id == 5
    assert "Вхождений: 4" in payload.description


def test_format_issue_payload_truncates_long_headline() -> None:
    group = make_group(representative_error="TimeoutError: " + "x" * 300)

    payload = format_issue_payload(group)

    headline = payload.summary.split("] ", 1)[1]
    assert len(headline) == 120
    assert headline.endswith("...")
