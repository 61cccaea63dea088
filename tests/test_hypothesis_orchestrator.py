from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, or_, select

from why_stack.db.models import (
    EvidenceModel,
    HypothesisEdgeModel,
    HypothesisModel,
    RefutationModel,
    UserModel,
    WatcherModel,
)
from why_stack.orchestrator import (
    Actor,
    ExecutiveSummary,
    HypothesisForm,
    HypothesisOrchestrator,
    HypothesisUpdateForm,
    NodePosition,
    RefutationForm,
    parse_tags,
)
from why_stack.types import ActivityType, ConfidenceMode, RefutationType


async def _create(orchestrator: HypothesisOrchestrator, statement: str, parent: UUID | None = None, **fields) -> UUID:
    form = HypothesisForm(statement=statement, **fields)
    if parent is None:
        result = await orchestrator.create_hypothesis(form)
    else:
        result = await orchestrator.create_child_hypothesis_and_edge(parent, form)
    assert result.ok, result.error
    return result.data.id


async def _edges(session_factory) -> set[tuple[UUID, UUID]]:
    async with session_factory() as session:
        rows = (await session.execute(select(HypothesisEdgeModel.parent_id, HypothesisEdgeModel.child_id))).all()
    return {(row.parent_id, row.child_id) for row in rows}


async def _add_user(session_factory, name: str) -> UUID:
    async with session_factory() as session, session.begin():
        user = UserModel(name=name, email=f"{name.lower()}@example.com")
        session.add(user)
    return user.id


def test_parse_tags_dedups_case_insensitively() -> None:
    assert parse_tags("A, a, B, A") == ["A", "B"]
    assert parse_tags(" growth ,, Pricing,GROWTH ") == ["growth", "Pricing"]
    assert parse_tags(["x", "X ", ""]) == ["x"]
    assert parse_tags("") == []
    assert parse_tags(None) == []


@pytest.mark.asyncio
async def test_create_hypothesis_normalises_input_and_appends_roots(orchestrator) -> None:
    first = await orchestrator.create_hypothesis(
        HypothesisForm(statement="  Users want dark mode  ", description="  ", confidence=150, tags="A, a, B, A")
    )
    second = await orchestrator.create_hypothesis(HypothesisForm(statement="Second"))

    assert first.ok and second.ok
    assert first.data.statement == "Users want dark mode"
    assert first.data.description is None
    assert first.data.confidence == 100
    assert first.data.tags == ["A", "B"]
    assert first.data.confidence_mode is ConfidenceMode.AUTO
    assert (first.data.order, second.data.order) == (0, 1)

    activities = await orchestrator.get_activities(first.data.id)
    assert [a.type for a in activities] == [ActivityType.HYPOTHESIS_CREATED]
    assert activities[0].summary == "Created hypothesis: Users want dark mode"


@pytest.mark.asyncio
async def test_create_hypothesis_requires_statement(orchestrator, session_factory) -> None:
    result = await orchestrator.create_hypothesis(HypothesisForm(statement="   "))

    assert not result.ok
    assert result.error == "Statement is required"
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(HypothesisModel)) == 0


@pytest.mark.asyncio
async def test_create_hypothesis_resolves_owner_name(orchestrator, session_factory) -> None:
    owner_id = await _add_user(session_factory, "Ada")

    result = await orchestrator.create_hypothesis(HypothesisForm(statement="Owned", owner_id=owner_id))

    assert result.data.owner_id == owner_id
    assert result.data.owner_name == "Ada"
    activities = await orchestrator.get_activities(result.data.id)
    assert activities[0].actor_id == str(owner_id)
    assert activities[0].actor_name == "Ada"


@pytest.mark.asyncio
async def test_create_child_appends_edges_and_logs_on_parent(orchestrator, session_factory) -> None:
    parent = await _create(orchestrator, "Parent")
    c1 = await _create(orchestrator, "Child one", parent)
    c2 = await _create(orchestrator, "Child two", parent)

    async with session_factory() as session:
        edges = (
            await session.execute(select(HypothesisEdgeModel).order_by(HypothesisEdgeModel.order))
        ).scalars().all()
    assert [(e.child_id, e.order, e.label) for e in edges] == [(c1, 0, "depends on"), (c2, 1, "depends on")]

    parent_feed = await orchestrator.get_activities(parent)
    child_added = [a for a in parent_feed if a.type is ActivityType.CHILD_ADDED]
    assert len(child_added) == 2
    assert {a.metadata["childId"] for a in child_added} == {str(c1), str(c2)}


@pytest.mark.asyncio
async def test_create_child_of_missing_parent_is_rejected(orchestrator, session_factory) -> None:
    result = await orchestrator.create_child_hypothesis_and_edge(uuid4(), HypothesisForm(statement="Orphan"))

    assert not result.ok
    assert result.error == "Parent hypothesis not found"
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(HypothesisModel)) == 0


@pytest.mark.asyncio
async def test_move_rejects_cycles_and_leaves_edges_unchanged(orchestrator, session_factory) -> None:
    a = await _create(orchestrator, "A")
    b = await _create(orchestrator, "B", a)
    c = await _create(orchestrator, "C", b)
    before = await _edges(session_factory)

    cycle = await orchestrator.move_hypothesis_to_parent(a, c)
    self_parent = await orchestrator.move_hypothesis_to_parent(a, a)
    duplicate = await orchestrator.move_hypothesis_to_parent(b, a)

    assert cycle.error == "Cannot move: would create a cycle (target is a descendant)"
    assert self_parent.error == "Cannot make hypothesis a child of itself"
    assert duplicate.error == "This relationship already exists"
    assert await _edges(session_factory) == before


@pytest.mark.asyncio
async def test_move_replaces_all_parents(orchestrator, session_factory) -> None:
    p1 = await _create(orchestrator, "P1")
    p2 = await _create(orchestrator, "P2")
    p3 = await _create(orchestrator, "P3")
    existing = await _create(orchestrator, "Existing", p3)
    x = await _create(orchestrator, "X", p1)
    assert (await orchestrator.link_existing_hypothesis(p2, x)).ok

    result = await orchestrator.move_hypothesis_to_parent(x, p3)

    assert result.ok
    assert await _edges(session_factory) == {(p3, existing), (p3, x)}
    async with session_factory() as session:
        order = await session.scalar(
            select(HypothesisEdgeModel.order).where(
                HypothesisEdgeModel.parent_id == p3,
                HypothesisEdgeModel.child_id == x,
            )
        )
    assert order == 1


@pytest.mark.asyncio
async def test_link_is_additive_and_null_parent_detaches(orchestrator, session_factory) -> None:
    p1 = await _create(orchestrator, "P1")
    p2 = await _create(orchestrator, "P2")
    x = await _create(orchestrator, "X", p1)

    linked = await orchestrator.link_existing_hypothesis(p2, x, Actor(id="u1", name="Uma"))
    assert linked.ok
    assert await _edges(session_factory) == {(p1, x), (p2, x)}
    assert set(await orchestrator.get_ancestor_ids(x)) == {p1, p2}

    feed = await orchestrator.get_activities(p2)
    assert feed[0].type is ActivityType.CHILD_ADDED
    assert feed[0].summary == 'Linked "X" as sub-hypothesis'
    assert feed[0].actor_name == "Uma"

    cycle = await orchestrator.link_existing_hypothesis(x, p2)
    assert cycle.error == "Cannot link: would create a cycle (target is a descendant)"

    detached = await orchestrator.link_existing_hypothesis(None, x)
    assert detached.ok
    assert await _edges(session_factory) == set()


@pytest.mark.asyncio
async def test_reorder_children_only_touches_one_parent(orchestrator, session_factory) -> None:
    parent = await _create(orchestrator, "Parent")
    other = await _create(orchestrator, "Other")
    c1 = await _create(orchestrator, "c1", parent)
    c2 = await _create(orchestrator, "c2", parent)
    c3 = await _create(orchestrator, "c3", parent)
    await _create(orchestrator, "o1", other)
    assert (await orchestrator.link_existing_hypothesis(other, c3)).ok

    result = await orchestrator.reorder_hypotheses([c2, c1, c3], parent)

    assert result.ok
    async with session_factory() as session:
        rows = (
            await session.execute(
                select(HypothesisEdgeModel.parent_id, HypothesisEdgeModel.child_id, HypothesisEdgeModel.order)
            )
        ).all()
    orders = {(r.parent_id, r.child_id): r.order for r in rows}
    assert [orders[(parent, c)] for c in (c2, c1, c3)] == [0, 1, 2]
    assert sorted(o for (p, _), o in orders.items() if p == other) == [0, 1]


@pytest.mark.asyncio
async def test_reorder_roots(orchestrator) -> None:
    a = await _create(orchestrator, "A")
    b = await _create(orchestrator, "B")
    c = await _create(orchestrator, "C")

    assert (await orchestrator.reorder_hypotheses([c, a, b])).ok

    listed = await orchestrator.get_hypotheses_with_relations()
    assert [h.id for h in listed] == [c, a, b]


@pytest.mark.asyncio
async def test_archive_does_not_cascade_and_logs_only_archiving(orchestrator) -> None:
    parent = await _create(orchestrator, "Parent")
    child = await _create(orchestrator, "Child", parent)

    archived = await orchestrator.archive_hypothesis(parent, True)
    assert archived.ok and archived.data.is_archived

    listed = await orchestrator.get_hypotheses_with_relations()
    assert [h.id for h in listed] == [child]
    assert listed[0].parent_ids == [parent]

    assert (await orchestrator.archive_hypothesis(parent, False)).ok
    feed = await orchestrator.get_activities(parent)
    assert [a.type for a in feed].count(ActivityType.HYPOTHESIS_ARCHIVED) == 1


@pytest.mark.asyncio
async def test_delete_removes_every_reference(orchestrator, session_factory) -> None:
    user_id = await _add_user(session_factory, "Watcher")
    p1 = await _create(orchestrator, "P1")
    p2 = await _create(orchestrator, "P2")
    target = await _create(orchestrator, "Doomed", p1)
    assert (await orchestrator.link_existing_hypothesis(p2, target)).ok
    grandchild = await _create(orchestrator, "Grandchild", target)
    assert (await orchestrator.add_evidence_simple(target, "first")).ok
    assert (await orchestrator.add_challenge_simple(target, "second")).ok
    assert (
        await orchestrator.add_refutation(target, RefutationForm(type=RefutationType.COUNTEREXAMPLE, summary="No"))
    ).ok
    assert (await orchestrator.watch(target, user_id)).ok

    result = await orchestrator.delete_hypothesis(target, Actor(id="u9", name="Del"))

    assert result.ok
    async with session_factory() as session:
        for model, column in (
            (EvidenceModel, EvidenceModel.hypothesis_id),
            (RefutationModel, RefutationModel.hypothesis_id),
            (WatcherModel, WatcherModel.hypothesis_id),
            (HypothesisModel, HypothesisModel.id),
        ):
            count = await session.scalar(select(func.count()).select_from(model).where(column == target))
            assert count == 0, model.__name__
        edge_count = await session.scalar(
            select(func.count())
            .select_from(HypothesisEdgeModel)
            .where(or_(HypothesisEdgeModel.parent_id == target, HypothesisEdgeModel.child_id == target))
        )
        assert edge_count == 0
        assert await session.get(HypothesisModel, grandchild) is not None

    deleted_events = []
    for parent in (p1, p2):
        feed = await orchestrator.get_activities(parent)
        deleted_events += [a for a in feed if a.type is ActivityType.HYPOTHESIS_DELETED]
    assert len(deleted_events) == 2
    assert {a.metadata["deletedStatement"] for a in deleted_events} == {"Doomed"}
    assert all(a.summary == "Deleted sub-hypothesis: Doomed" for a in deleted_events)


@pytest.mark.asyncio
async def test_delete_missing_hypothesis(orchestrator) -> None:
    result = await orchestrator.delete_hypothesis(uuid4())

    assert result.error == "Hypothesis not found"


@pytest.mark.asyncio
async def test_update_logs_one_event_per_changed_category(orchestrator) -> None:
    h = await _create(orchestrator, "Original", tags="a")

    result = await orchestrator.update_hypothesis(
        h,
        HypothesisUpdateForm(statement="Reworded", confidence=70, tags="a, b"),
        Actor(id="u1", name="Uma"),
    )

    assert result.ok
    assert result.data.confidence == 70
    assert result.data.confidence_mode is ConfidenceMode.MANUAL

    feed = await orchestrator.get_activities(h)
    by_type = {a.type: a for a in feed}
    assert by_type[ActivityType.HYPOTHESIS_UPDATED].summary == "Updated hypothesis: Reworded"
    assert by_type[ActivityType.CONFIDENCE_CHANGED].summary == "Changed confidence from 50% to 70%"
    assert by_type[ActivityType.CONFIDENCE_CHANGED].metadata == {"oldConfidence": 50, "newConfidence": 70}
    assert by_type[ActivityType.TAGS_CHANGED].metadata == {"oldTags": ["a"], "newTags": ["a", "b"]}


@pytest.mark.asyncio
async def test_update_without_changes_emits_nothing_and_stays_auto(orchestrator) -> None:
    h = await _create(orchestrator, "Same", tags="x")

    result = await orchestrator.update_hypothesis(h, HypothesisUpdateForm(statement="Same", confidence=50, tags="x"))

    assert result.ok
    assert result.data.confidence_mode is ConfidenceMode.AUTO
    feed = await orchestrator.get_activities(h)
    assert [a.type for a in feed] == [ActivityType.HYPOTHESIS_CREATED]


@pytest.mark.asyncio
async def test_update_validation(orchestrator) -> None:
    h = await _create(orchestrator, "Valid")

    blank = await orchestrator.update_hypothesis(h, HypothesisUpdateForm(statement=" ", confidence=50))
    missing = await orchestrator.update_hypothesis(uuid4(), HypothesisUpdateForm(statement="x", confidence=50))

    assert blank.error == "Statement is required"
    assert missing.error == "Hypothesis not found"


@pytest.mark.asyncio
async def test_executive_summary_goes_stale_when_descendant_changes(orchestrator) -> None:
    root = await _create(orchestrator, "Root")
    child = await _create(orchestrator, "Child", root)

    assert (await orchestrator.is_executive_summary_stale(root)).data is True

    saved = await orchestrator.save_executive_summary(
        root, ExecutiveSummary(validation_plan="plan", progress_summary="progress")
    )
    assert saved.ok
    assert (await orchestrator.is_executive_summary_stale(root)).data is False

    assert (await orchestrator.add_evidence_simple(child, "Interviews confirm it")).ok
    assert (await orchestrator.is_executive_summary_stale(root)).data is True

    assert (await orchestrator.delete_executive_summary(root)).ok
    assert (await orchestrator.is_executive_summary_stale(root)).data is True


@pytest.mark.asyncio
async def test_validation_suggestion_cache(orchestrator, session_factory) -> None:
    h = await _create(orchestrator, "Cached")
    suggestions = [{"statement": "one"}, {"statement": "two"}, {"statement": "three"}]

    assert (await orchestrator.save_validation_suggestions(h, suggestions)).ok
    assert (await orchestrator.remove_validation_suggestion(h, 1)).ok
    async with session_factory() as session:
        stored = await session.get(HypothesisModel, h)
        assert stored.validation_suggestions == [{"statement": "one"}, {"statement": "three"}]

    assert (await orchestrator.delete_validation_suggestions(h)).ok
    missing = await orchestrator.remove_validation_suggestion(h, 0)
    assert missing.error == "No suggestions found"


@pytest.mark.asyncio
async def test_owner_and_watchers(orchestrator, session_factory) -> None:
    ada = await _add_user(session_factory, "Ada")
    bob = await _add_user(session_factory, "Bob")
    h = await _create(orchestrator, "Shared")

    owned = await orchestrator.set_owner(h, ada, Actor(id=str(bob), name="Bob"))
    assert owned.data.owner_name == "Ada"
    feed = await orchestrator.get_activities(h)
    assert feed[0].type is ActivityType.OWNER_CHANGED
    assert feed[0].summary == "Assigned to Ada"

    assert (await orchestrator.watch(h, bob)).ok
    assert (await orchestrator.watch(h, bob)).ok
    assert (await orchestrator.is_watching(h, bob)).data is True
    watchers = await orchestrator.get_watchers(h)
    assert [u.name for u in watchers.data] == ["Bob"]

    users = await orchestrator.get_all_users()
    assert [u.name for u in users.data] == ["Ada", "Bob"]

    listed = await orchestrator.get_hypotheses_with_relations()
    assert listed[0].owner.name == "Ada"
    assert [w.name for w in listed[0].watchers] == ["Bob"]

    assert (await orchestrator.unwatch(h, bob)).ok
    assert (await orchestrator.is_watching(h, bob)).data is False

    cleared = await orchestrator.set_owner(h, None)
    assert cleared.data.owner_name is None


@pytest.mark.asyncio
async def test_node_positions_are_saved_atomically(orchestrator, session_factory) -> None:
    a = await _create(orchestrator, "A")
    b = await _create(orchestrator, "B")

    assert (await orchestrator.save_node_position(a, 10.0, 20.0)).ok
    failed = await orchestrator.save_node_positions(
        [NodePosition(id=b, x=1.0, y=2.0), NodePosition(id=uuid4(), x=3.0, y=4.0)]
    )

    assert failed.error == "Hypothesis not found"
    async with session_factory() as session:
        stored_a = await session.get(HypothesisModel, a)
        stored_b = await session.get(HypothesisModel, b)
        assert (stored_a.graph_x, stored_a.graph_y) == (10.0, 20.0)
        assert stored_b.graph_x is None
