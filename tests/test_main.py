import pytest

from why_stack.main import build_parser, render_tree
from why_stack.orchestrator import HypothesisForm, HypothesisUpdateForm


def test_parser_requires_a_command() -> None:
    parser = build_parser()

    args = parser.parse_args(["--database-url", "sqlite+aiosqlite:///x.db", "recalculate-all"])

    assert args.command == "recalculate-all"
    assert args.database_url == "sqlite+aiosqlite:///x.db"
    with pytest.raises(SystemExit):
        parser.parse_args([])


@pytest.mark.asyncio
async def test_render_tree_repeats_shared_children(orchestrator) -> None:
    root = (await orchestrator.create_hypothesis(HypothesisForm(statement="Root"))).data.id
    a = (await orchestrator.create_child_hypothesis_and_edge(root, HypothesisForm(statement="A"))).data.id
    b = (await orchestrator.create_child_hypothesis_and_edge(root, HypothesisForm(statement="B"))).data.id
    d = (await orchestrator.create_child_hypothesis_and_edge(a, HypothesisForm(statement="D"))).data.id
    await orchestrator.link_existing_hypothesis(b, d)
    await orchestrator.update_hypothesis(b, HypothesisUpdateForm(statement="B", confidence=80))

    lines = render_tree(await orchestrator.get_hypotheses_with_relations())

    assert lines == [
        "- [ 50%] Root",
        "  - [ 50%] A",
        "    - [ 50%] D",
        "  - [ 80% (manual)] B",
        "    - [ 50%] D",
    ]
