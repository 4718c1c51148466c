from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import update

import analytics
import ledger
import registry
import returns
from models import AssignmentTarget
from orm import AssignmentORM

NOW = datetime(2025, 4, 11, tzinfo=timezone.utc)


def test_usage_percentage_basic():
    since = NOW - timedelta(days=100)
    assert analytics.usage_percentage(40, since, now=NOW) == 40


def test_usage_percentage_rounds_half_up():
    # 1 / 8 = 12.5%
    assert analytics.usage_percentage(1, NOW - timedelta(days=8), now=NOW) == 13
    assert analytics.round_half_up(2.5) == 3
    assert analytics.round_half_up(0.49) == 0


def test_total_usage_days_rounds_half_up(db_session, make_tool, make_person, admin):
    tool = make_tool(purchase_date=date(2025, 1, 1))
    a = ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=make_person().id), actor=admin)
    db_session.execute(
        update(AssignmentORM).where(AssignmentORM.id == a.id).values(assigned_at=datetime(2025, 4, 8, 12))
    )
    db_session.commit()

    # 2.5日
    assert analytics.tool_usage(db_session, tool.id, now=NOW).total_usage_days == 3


@pytest.mark.parametrize(
    "total_days, since, expected",
    [
        (250, NOW - timedelta(days=100), 100),
        (-5, NOW - timedelta(days=100), 0),
        (3, NOW, 0),
        (3, NOW + timedelta(days=2), 0),
    ],
)
def test_usage_percentage_is_clamped(total_days, since, expected):
    assert analytics.usage_percentage(total_days, since, now=NOW) == expected


def test_usage_days_counts_open_periods_to_now():
    periods = [
        (datetime(2025, 4, 1), datetime(2025, 4, 3)),
        (datetime(2025, 4, 10, tzinfo=timezone.utc), None),
    ]
    assert analytics.usage_days(periods, now=NOW) == pytest.approx(3.0)


def test_as_utc_accepts_dates():
    assert analytics.as_utc(date(2025, 1, 1)) == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_tool_usage_from_assignments(db_session, make_tool, make_person, admin):
    tool = make_tool(purchase_date=date(2025, 1, 1))
    a = ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=make_person().id), actor=admin)
    db_session.execute(
        update(AssignmentORM).where(AssignmentORM.id == a.id).values(assigned_at=datetime(2025, 2, 10))
    )
    db_session.commit()

    usage = analytics.tool_usage(db_session, tool.id, now=NOW)
    assert usage.total_usage_days == 60
    assert usage.usage_percentage == 60

    assert [u.tool_id for u in analytics.usage_report(db_session, now=NOW)] == [tool.id]


def test_status_summary(db_session, make_tool, make_person, admin):
    make_tool("A")
    broken = make_tool("B")
    busy = make_tool("C")
    registry.set_status(db_session, broken.id, "damaged", actor=admin)
    ledger.create_assignment(db_session, busy.id, AssignmentTarget(person_id=make_person().id), actor=admin)

    summary = analytics.status_summary(db_session)
    assert summary["available"] == 1
    assert summary["damaged"] == 1
    assert summary["in_use"] == 1
    assert summary["retired"] == 0
    assert summary["total"] == 3


def test_damage_costs_use_most_recent_assignment(db_session, make_tool, make_person, make_location, admin):
    first = make_person("First holder")
    site = make_location("Site M")
    saw = make_tool("Saw", purchase_price=200.0)
    drill = make_tool("Drill", purchase_price=50.5)

    a1 = ledger.create_assignment(db_session, saw.id, AssignmentTarget(person_id=first.id), actor=admin)
    returns.request_return(db_session, a1.id, actor=admin, condition="good")
    a2 = ledger.create_assignment(db_session, saw.id, AssignmentTarget(location_id=site.id), actor=admin)
    returns.request_return(db_session, a2.id, actor=admin, condition="damaged", notes="bent blade")

    a3 = ledger.create_assignment(db_session, drill.id, AssignmentTarget(person_id=first.id), actor=admin)
    returns.request_return(db_session, a3.id, actor=admin, condition="lost", notes="never came back")

    report = analytics.damage_costs(db_session)

    assert report.total_cost == 250.5
    assert [(e.name, e.total, e.count) for e in report.by_location] == [("Site M", 200.0, 1)]
    assert [(e.name, e.total, e.count) for e in report.by_person] == [("First holder", 50.5, 1)]


def test_damage_costs_include_unattributed_tools(db_session, make_tool, admin):
    tool = make_tool("Orphan", purchase_price=30.0)
    registry.set_status(db_session, tool.id, "damaged", actor=admin)

    report = analytics.damage_costs(db_session)
    assert report.by_person == []
    assert report.by_location == []
    assert report.total_cost == 30.0


def test_damage_costs_empty(db_session, make_tool):
    make_tool()
    report = analytics.damage_costs(db_session)
    assert report.total_cost == 0.0
