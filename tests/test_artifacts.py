import pytest

from pulseflow import artifacts, workflows
from pulseflow.errors import InvalidTransitionError, JsonFieldError
from pulseflow.json_fields import KeyFile
from pulseflow.states import ArtifactStatus, ArtifactType


@pytest.fixture
async def workflow(session):
    return await workflows.create_workflow(session, "Artifacts")


async def test_research_card_fields_are_parsed(session, workflow) -> None:
    card = await artifacts.create_research_card(
        session,
        workflow.id,
        summary="Reports live in reports/",
        key_files=[{"path": "reports/export.py", "purpose": "entry point"}],
        challenges=[{"issue": "large files", "mitigation": "stream rows"}],
        recommendations=["reuse the csv writer"],
    )

    assert isinstance(card.key_files[0], KeyFile)
    assert card.key_files[0].path == "reports/export.py"
    assert card.challenges[0].mitigation == "stream rows"
    assert card.status == ArtifactStatus.PENDING


async def test_research_card_rejects_malformed_entries(session, workflow) -> None:
    with pytest.raises(JsonFieldError) as exc_info:
        await artifacts.create_research_card(
            session, workflow.id, summary="x", key_files=[{"path": "a.py"}]
        )
    assert exc_info.value.field_name == "key_files"


async def test_plan_rejects_unknown_pulse_fields(session, workflow) -> None:
    with pytest.raises(JsonFieldError):
        await artifacts.create_plan(
            session,
            workflow.id,
            approach_summary="x",
            pulses=[{"id": "p1", "title": "t", "description": "d", "owner": "me"}],
        )


async def test_generic_status_update(session, workflow) -> None:
    card = await artifacts.create_scope_card(
        session,
        workflow.id,
        title="Scope",
        description="Scope it",
        in_scope=["a"],
        out_of_scope=["b"],
        constraints=["no new deps"],
    )

    pending = await artifacts.get_pending_artifact(session, workflow.id, ArtifactType.SCOPE_CARD)
    assert pending.id == card.id

    await artifacts.set_artifact_status(session, "scope_card", card.id, "denied")
    assert (await artifacts.get_latest_scope_card(session, workflow.id)).status == "denied"
    assert await artifacts.get_pending_artifact(session, workflow.id, None) is None


async def test_status_update_for_missing_artifact(session) -> None:
    with pytest.raises(InvalidTransitionError):
        await artifacts.update_plan_status(session, "plan_missing", ArtifactStatus.APPROVED)


async def test_review_rounds_increase(session, workflow) -> None:
    first = await artifacts.create_review_card(session, workflow.id, diff_content="diff --git")
    second = await artifacts.create_review_card(session, workflow.id)

    assert (first.round_number, second.round_number) == (1, 2)
    latest = await artifacts.get_latest_review_card(session, workflow.id)
    assert latest.id == second.id
    assert [c.id for c in await artifacts.get_all_review_cards(session, workflow.id)] == [
        first.id,
        second.id,
    ]


async def test_complete_and_reset_review(session, workflow) -> None:
    card = await artifacts.create_review_card(session, workflow.id)

    await artifacts.complete_review(
        session,
        card.id,
        recommendation="approve",
        summary="Looks good",
        suggested_commit_message="Add CSV export",
    )
    assert card.recommendation == "approve"

    await artifacts.update_review_card_status(session, card.id, ArtifactStatus.APPROVED)
    with pytest.raises(InvalidTransitionError):
        await artifacts.complete_review(session, card.id, recommendation="deny", summary="late")

    reset = await artifacts.reset_review_card(session, card.id)
    assert reset.status == ArtifactStatus.PENDING
    assert reset.recommendation is None
    assert reset.summary is None


async def test_review_comments(session, workflow) -> None:
    card = await artifacts.create_review_card(session, workflow.id)
    line = await artifacts.create_review_comment(
        session,
        card.id,
        type="line",
        description="Off by one",
        file_path="export.py",
        start_line=10,
        end_line=12,
        severity="High",
        category="correctness",
    )
    general = await artifacts.create_review_comment(
        session, card.id, type="review", description="Nice work", author="user"
    )

    assert general.severity is None
    assert general.author == "user"
    reloaded = await artifacts.get_review_card(session, card.id)
    assert {c.id for c in reloaded.comments} == {line.id, general.id}
    assert [c.id for c in await artifacts.get_comments_by_ids(session, [line.id])] == [line.id]
    assert await artifacts.get_comments_by_ids(session, []) == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"type": "line", "file_path": "a.py"},
        {"type": "line", "file_path": "a.py", "start_line": 5, "end_line": 3},
        {"type": "file"},
    ],
)
async def test_review_comment_location_rules(session, workflow, kwargs) -> None:
    card = await artifacts.create_review_card(session, workflow.id)
    with pytest.raises(JsonFieldError):
        await artifacts.create_review_comment(session, card.id, description="x", **kwargs)


async def test_delete_review_cards_takes_comments(session, workflow) -> None:
    card = await artifacts.create_review_card(session, workflow.id)
    comment = await artifacts.create_review_comment(
        session, card.id, type="file", file_path="a.py", description="x"
    )

    assert await artifacts.delete_review_cards(session, workflow.id) == 1
    assert await artifacts.get_comments_by_ids(session, [comment.id]) == []
    assert await artifacts.get_latest_review_card(session, workflow.id) is None


async def test_all_scope_and_research_cards_oldest_first(session, workflow) -> None:
    first = await artifacts.create_scope_card(
        session, workflow.id, title="v1", description="d", in_scope=["a"], out_of_scope=[]
    )
    second = await artifacts.create_scope_card(
        session, workflow.id, title="v2", description="d", in_scope=["a", "b"], out_of_scope=[]
    )
    await artifacts.create_research_card(session, workflow.id, summary="notes")

    scope_cards = await artifacts.get_all_scope_cards(session, workflow.id)
    assert {c.id for c in scope_cards} == {first.id, second.id}
    assert len(await artifacts.get_all_research_cards(session, workflow.id)) == 1


async def test_delete_review_comments_for_card(session, workflow) -> None:
    card = await artifacts.create_review_card(session, workflow.id)
    for text in ("one", "two"):
        await artifacts.create_review_comment(session, card.id, type="review", description=text)

    comments = await artifacts.get_comments_by_review_card(session, card.id)
    assert sorted(c.description for c in comments) == ["one", "two"]

    assert await artifacts.delete_review_comments(session, card.id) == 2
    assert await artifacts.get_comments_by_review_card(session, card.id) == []
