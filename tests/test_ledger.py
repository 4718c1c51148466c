import pytest
from sqlalchemy import func, select

import crud
import event_log
import ledger
import registry
from errors import InvalidTarget, NotFound, ToolUnavailable
from models import Actor, AssignmentFilter, AssignmentTarget
from orm import AssignmentORM


def _open_count(db, tool_id):
    stmt = select(func.count()).select_from(AssignmentORM).where(
        AssignmentORM.tool_id == tool_id, AssignmentORM.returned_at.is_(None)
    )
    return int(db.execute(stmt).scalar_one())


def test_assign_to_person(db_session, make_tool, make_person, admin):
    tool = make_tool()
    person = make_person("Peeter")

    before = len(list(event_log.query(db_session, tool_id=tool.id)))
    a = ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=person.id), actor=admin)
    assert len(list(event_log.query(db_session, tool_id=tool.id))) == before + 1

    assert a.return_status == "active"
    assert a.person_id == person.id
    assert a.location_id is None
    assert a.returned_at is None

    t = crud.get_tool(db_session, tool.id)
    assert t.status == "in_use"
    assert t.person_id == person.id

    latest = list(event_log.query(db_session, tool_id=tool.id))[0]
    assert latest.event_type == "assigned"
    assert latest.to_person_id == person.id
    assert (latest.old_status, latest.new_status) == ("available", "in_use")


def test_assign_to_user_at_location(db_session, make_tool, make_location, admin):
    site = make_location("Site B")
    tool = make_tool()

    a = ledger.create_assignment(
        db_session, tool.id, AssignmentTarget(location_id=site.id, user_id="user-7"), actor=admin, notes="for roofing"
    )

    assert a.assigned_to == "user-7"
    assert a.location_id == site.id
    assert a.notes == "for roofing"
    assert crud.get_tool(db_session, tool.id).location_id == site.id
    assert registry.current_custody(db_session, tool.id).kind == "user"


def test_second_assignment_is_rejected(db_session, make_tool, make_person, admin):
    tool = make_tool()
    first = make_person("A")
    second = make_person("B")

    ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=first.id), actor=admin)
    with pytest.raises(ToolUnavailable):
        ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=second.id), actor=admin)

    assert _open_count(db_session, tool.id) == 1


@pytest.mark.parametrize("status", ["maintenance", "damaged", "lost", "retired"])
def test_unavailable_tool_cannot_be_assigned(db_session, make_tool, make_person, admin, status):
    tool = make_tool()
    registry.set_status(db_session, tool.id, status, actor=admin)

    with pytest.raises(ToolUnavailable):
        ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=make_person().id), actor=admin)

    assert _open_count(db_session, tool.id) == 0


@pytest.mark.parametrize(
    "target",
    [
        {},
        {"user_id": "user-1"},
        {"person_id": "p", "location_id": "l"},
        {"person_id": "p", "user_id": "user-1"},
    ],
)
def test_malformed_target(db_session, make_tool, admin, target):
    tool = make_tool()
    with pytest.raises(InvalidTarget):
        ledger.create_assignment(db_session, tool.id, AssignmentTarget(**target), actor=admin)
    assert crud.get_tool(db_session, tool.id).status == "available"


def test_unknown_person_is_invalid_target(db_session, make_tool, admin):
    tool = make_tool()
    with pytest.raises(InvalidTarget):
        ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id="ghost"), actor=admin)


def test_unknown_tool(db_session, make_person, admin):
    with pytest.raises(NotFound):
        ledger.create_assignment(db_session, "missing", AssignmentTarget(person_id=make_person().id), actor=admin)


def test_list_active_filters_and_scopes(db_session, make_tool, make_location, make_person, admin):
    north = make_location("North")
    south = make_location("South")
    person = make_person("Mari", user_id="user-9")

    t1, t2, t3 = make_tool("T1"), make_tool("T2"), make_tool("T3")
    a1 = ledger.create_assignment(db_session, t1.id, AssignmentTarget(location_id=north.id), actor=admin)
    a2 = ledger.create_assignment(db_session, t2.id, AssignmentTarget(location_id=south.id), actor=admin)
    a3 = ledger.create_assignment(db_session, t3.id, AssignmentTarget(person_id=person.id), actor=admin)

    assert {a.id for a in ledger.list_active(db_session)} == {a1.id, a2.id, a3.id}
    assert [a.id for a in ledger.list_active(db_session, AssignmentFilter(location_id=south.id))] == [a2.id]

    member = Actor(user_id="user-9", location_ids=frozenset({north.id}), person_id=person.id)
    visible = ledger.list_active(db_session, scope=ledger.scope_for(member))
    assert {a.id for a in visible} == {a1.id, a3.id}

    stranger = Actor(user_id="user-x")
    assert ledger.list_active(db_session, scope=ledger.scope_for(stranger)) == []
    assert ledger.scope_for(admin) is None


def test_get_open_assignment(db_session, make_tool, make_person, admin):
    tool = make_tool()
    assert ledger.get_open_assignment(db_session, tool.id) is None

    a = ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=make_person().id), actor=admin)
    assert ledger.get_open_assignment(db_session, tool.id).id == a.id
    assert ledger.get_assignment(db_session, a.id).tool_id == tool.id
    assert ledger.get_assignment(db_session, "nope") is None


def test_get_assignment_respects_scope(db_session, make_tool, make_location, admin):
    north = make_location("North")
    south = make_location("South")
    a = ledger.create_assignment(db_session, make_tool().id, AssignmentTarget(location_id=north.id), actor=admin)

    inside = Actor(user_id="user-1", location_ids=frozenset({north.id}))
    outside = Actor(user_id="user-2", location_ids=frozenset({south.id}))

    assert ledger.get_assignment(db_session, a.id, scope=ledger.scope_for(inside)).id == a.id
    assert ledger.get_assignment(db_session, a.id, scope=ledger.scope_for(outside)) is None
    assert ledger.get_assignment(db_session, a.id, scope=ledger.scope_for(admin)).id == a.id
