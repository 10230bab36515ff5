"""Unit tests for structural proposal validation."""

from __future__ import annotations

import pytest

from omnireflect.errors import ProposalStateError
from omnireflect.errors import ProposalValidationError
from omnireflect.proposals import ALLOWED_ACTIONS
from omnireflect.proposals import Proposal
from omnireflect.proposals import ProposalAction
from omnireflect.proposals import ProposalStatus
from omnireflect.proposals import ProposalType
from omnireflect.proposals import ensure_valid
from omnireflect.proposals import proposal_problems
from omnireflect.proposals.validation import proposed_title
from omnireflect.proposals.validation import title_from_rationale


def _proposal(**fields) -> Proposal:
    fields.setdefault("rationale", "Because it matters.")
    return Proposal.model_validate(fields)


class TestActionMatrix:
    def test_every_type_has_an_entry(self):
        assert set(ALLOWED_ACTIONS) == set(ProposalType)

    @pytest.mark.parametrize(
        "kind",
        [
            ProposalType.app_setting,
            ProposalType.conversation,
            ProposalType.instructional_prompt,
        ],
    )
    @pytest.mark.parametrize("action", [ProposalAction.add, ProposalAction.delete])
    def test_edit_only_types_refuse_add_and_delete(self, kind, action):
        problems = proposal_problems(_proposal(type=kind, action=action, targetId="x"))
        assert len(problems) == 1
        assert "not allowed" in problems[0]

    def test_instructional_prompt_add_is_refused(self):
        with pytest.raises(ProposalValidationError) as exc_info:
            ensure_valid(
                _proposal(
                    type="instructionalPrompt",
                    action="add",
                    updatedFields={"name": "New"},
                )
            )
        assert "allowed: edit" in exc_info.value.issues[0]


class TestRequiredFields:
    def test_valid_memory_add(self):
        assert proposal_problems(
            _proposal(type="memory", action="add", content="Likes tea", scope="global")
        ) == []

    def test_memory_add_needs_scope_and_content(self):
        problems = proposal_problems(_proposal(type="memory", action="add"))
        assert "content is required for a memory." in problems
        assert "scope is required when adding a memory." in problems

    def test_rationale_is_required(self):
        problems = proposal_problems(
            _proposal(
                type="memory", action="add", content="x", scope="global", rationale="  "
            )
        )
        assert problems == ["rationale is required."]

    def test_edit_and_delete_need_target(self):
        assert proposal_problems(_proposal(type="persona", action="delete")) == [
            "targetId is required to delete a persona."
        ]
        problems = proposal_problems(
            _proposal(type="persona", action="edit", updatedFields={"name": "x"})
        )
        assert problems == ["targetId is required to edit a persona."]

    def test_delete_needs_nothing_but_target(self):
        assert proposal_problems(_proposal(type="memory", action="delete", targetId="f1")) == []

    def test_character_target_falls_back_to_character_id(self):
        proposal = _proposal(type="character", action="delete", characterId="c1")
        assert proposal.effective_target_id == "c1"
        assert proposal_problems(proposal) == []

    def test_lorebook_entry_add_requirements(self):
        problems = proposal_problems(_proposal(type="lorebookEntry", action="add"))
        assert len(problems) == 3

    def test_lorebook_entry_edit_needs_content_or_keywords(self):
        bare = _proposal(type="lorebookEntry", action="edit", targetId="e1")
        assert proposal_problems(bare) == [
            "an edit to a lorebookEntry needs content or keywords."
        ]
        keywords_only = _proposal(
            type="lorebookEntry", action="edit", targetId="e1", keywords=["dock"]
        )
        assert proposal_problems(keywords_only) == []

    def test_app_setting_needs_key_and_value(self):
        problems = proposal_problems(_proposal(type="appSetting", action="edit"))
        assert problems == [
            "key is required for an appSetting.",
            "value is required for an appSetting.",
        ]

    def test_structured_types_need_updated_fields(self):
        problems = proposal_problems(_proposal(type="world", action="add"))
        assert problems == ["updatedFields is required to add a world."]


class TestConversationTitle:
    def test_title_from_updated_fields(self):
        proposal = _proposal(
            type="conversation",
            action="edit",
            targetId="v1",
            updatedFields={"preview": "  Harbor Nights "},
        )
        assert proposed_title(proposal) == "Harbor Nights"

    def test_title_recovered_from_rationale(self):
        assert (
            title_from_rationale("The chat drifted, so I suggest changing it to 'Storm Watch'.")
            == "Storm Watch"
        )
        assert title_from_rationale('I propose a new title: "Lanterns"') == "Lanterns"
        assert title_from_rationale("No title here.") is None

    def test_conversation_without_title_is_invalid(self):
        problems = proposal_problems(
            _proposal(type="conversation", action="edit", targetId="v1")
        )
        assert problems == ["updatedFields.preview (the new title) is required."]


class TestDecide:
    def test_decide_once(self):
        proposal = _proposal(type="memory", action="delete", targetId="f1")
        rejected = proposal.decide(ProposalStatus.rejected, "nope")

        assert rejected.status is ProposalStatus.rejected
        assert rejected.rejection_reason == "nope"
        with pytest.raises(ProposalStateError):
            rejected.decide(ProposalStatus.approved)

    def test_approval_drops_reason(self):
        proposal = _proposal(type="memory", action="delete", targetId="f1")
        assert proposal.decide(ProposalStatus.approved, "ignored").rejection_reason is None

    def test_cannot_decide_back_to_pending(self):
        proposal = _proposal(type="memory", action="delete", targetId="f1")
        with pytest.raises(ProposalStateError):
            proposal.decide(ProposalStatus.pending)
