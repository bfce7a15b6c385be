from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_associations import (
    VETO,
    CallbackDispatcher,
    ConfigurationError,
    HookFailed,
    Model,
    ReadOnlyAssociationError,
    many_to_one,
    one_to_many,
)
from sqla_associations.node import Node, get_node, init_node

from ..models import Category, Post, Tag


calls: list[tuple[str, Any, Any]] = []


def _recorder(event: str) -> Any:
    def hook(record: Model, other: Any) -> Any:
        calls.append((event, record, other))
        if other is not None and other.get_value("name") == "blocked":
            return VETO
        return None

    return hook


class Hooked(Model, orm.DeclarativeBase):
    pass


class Team(Hooked):
    __tablename__ = "teams"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50))

    members = one_to_many(
        "Member",
        key="team_id",
        before_add=_recorder("before_add"),
        after_add=_recorder("after_add"),
        before_remove=_recorder("before_remove"),
        after_remove=_recorder("after_remove"),
    )
    captains = one_to_many(
        "Member",
        key="team_id",
        reciprocal="team",
        adder=lambda team, member: calls.append(("adder", team, member)),
    )


class Member(Hooked):
    __tablename__ = "members"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50))
    team_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("teams.id"))

    team = many_to_one(
        Team,
        key="team_id",
        before_set=[_recorder("before_set_1"), _recorder("before_set_2")],
        after_set=_recorder("after_set"),
    )


@pytest.fixture
def hooked(reset_node_singleton: None) -> Iterator[None]:
    Node.reset()
    init_node(get_node(Hooked))
    calls.clear()
    yield
    calls.clear()


def _team(team_id: int, *members: Member) -> Team:
    team = Team(id=team_id, name=f"team-{team_id}")
    team._associations["members"] = list(members)  # noqa: SLF001
    return team


@pytest.mark.usefixtures("hooked")
class TestAdd:
    def test_links_both_sides(self) -> None:
        team = _team(1)
        member = Member(id=10, name="ann")

        assert team.add_association("members", member) is member
        assert member.team_id == 1
        assert team.members == [member]
        assert member.associations["team"] is team
        assert [event for event, _, _ in calls] == ["before_add", "after_add"]

    def test_veto_raises_and_changes_nothing(self) -> None:
        team = _team(1)
        member = Member(id=10, name="blocked", team_id=None)

        with pytest.raises(HookFailed) as exc_info:
            team.add_association("members", member)

        assert exc_info.value.association == "members"
        assert exc_info.value.event == "add"
        assert member.team_id is None
        assert team.members == []
        assert [event for event, _, _ in calls] == ["before_add"]

    def test_veto_returns_false_when_not_raising(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(Team, "raise_on_hook_failure", False)
        team = _team(1)

        assert team.add_association("members", Member(id=10, name="blocked")) is False
        assert team.members == []

    def test_adder_override(self) -> None:
        team = _team(1)
        team._associations["captains"] = []  # noqa: SLF001
        member = Member(id=10, name="ann")

        team.add_association("captains", member)

        assert calls == [("adder", team, member)]
        # keys are left to the adder
        assert member.team_id is None
        assert team.captains == [member]

    def test_to_one_rejects_add(self) -> None:
        with pytest.raises(ConfigurationError, match="does not support add"):
            Member(id=1).add_association("team", Team(id=1))


@pytest.mark.usefixtures("hooked")
class TestRemove:
    def test_remove_clears_key(self) -> None:
        member = Member(id=10, name="ann", team_id=1)
        team = _team(1, member)

        team.remove_association("members", member)

        assert member.team_id is None
        assert team.members == []
        assert [event for event, _, _ in calls] == ["before_remove", "after_remove"]

    def test_remove_all(self) -> None:
        members = [Member(id=i, name=f"m{i}", team_id=1) for i in (1, 2, 3)]
        team = _team(1, *members)

        assert team.remove_all_association("members") == members
        assert team.members == []
        assert all(member.team_id is None for member in members)
        events = [event for event, _, _ in calls]
        assert events == ["before_remove"] * 3 + ["after_remove"] * 3

    def test_remove_all_single_veto_keeps_everything(self) -> None:
        members = [
            Member(id=1, name="ann", team_id=1),
            Member(id=2, name="blocked", team_id=1),
            Member(id=3, name="cid", team_id=1),
        ]
        team = _team(1, *members)

        with pytest.raises(HookFailed):
            team.remove_all_association("members")

        assert team.members == members
        assert all(member.team_id == 1 for member in members)
        assert "after_remove" not in [event for event, _, _ in calls]


@pytest.mark.usefixtures("hooked")
class TestSet:
    def test_set_moves_between_owners(self) -> None:
        member = Member(id=10, name="ann", team_id=1)
        old, new = _team(1, member), _team(2)
        member._associations["team"] = old  # noqa: SLF001

        member.team = new

        assert member.team_id == 2
        assert member.team is new
        assert old.members == []
        assert new.members == [member]
        assert [event for event, _, _ in calls] == ["before_set_1", "before_set_2", "after_set"]

    def test_set_none_clears_key(self) -> None:
        member = Member(id=10, name="ann", team_id=1)

        member.set_association("team", None)

        assert member.team_id is None
        assert member.team is None

    def test_first_veto_stops_later_hooks(self) -> None:
        member = Member(id=10, name="ann", team_id=1)

        with pytest.raises(HookFailed):
            member.set_association("team", Team(id=2, name="blocked"))

        assert member.team_id == 1
        assert [event for event, _, _ in calls] == ["before_set_1"]


class TestDispatcher:
    def test_after_hooks_run_only_after_action(self) -> None:
        order: list[str] = []
        dispatcher = CallbackDispatcher(Team.members, raise_on_failure=False)
        calls.clear()

        result = dispatcher.dispatch(
            "add", Team(id=1), Member(id=2, name="ann"), lambda: order.append("action") or "done"
        )

        assert result == "done"
        assert order == ["action"]
        assert [event for event, _, _ in calls] == ["before_add", "after_add"]

    def test_veto_skips_action(self) -> None:
        dispatcher = CallbackDispatcher(Team.members, raise_on_failure=False)

        result = dispatcher.dispatch(
            "add", Team(id=1), Member(id=2, name="blocked"), lambda: pytest.fail("ran")
        )

        assert result is False

    def test_veto_is_falsy(self) -> None:
        assert not VETO
        assert repr(VETO) == "VETO"


class TestMainModels:
    def test_read_only(self) -> None:
        post = Post(id=1)
        with pytest.raises(ReadOnlyAssociationError):
            post.add_association("latest_comments", Post(id=2))
        with pytest.raises(ReadOnlyAssociationError):
            Category(id=1).remove_all_association("descendants")

    def test_many_to_many_links_in_memory(self) -> None:
        post, tag = Post(id=1), Tag(id=7)
        post._associations["tags"] = []  # noqa: SLF001
        tag._associations["posts"] = []  # noqa: SLF001

        post.add_association("tags", tag)

        assert post.tags == [tag]
        assert tag.posts == [post]

        post.remove_association("tags", tag)

        assert post.tags == []
        assert tag.posts == []
