from __future__ import annotations

import pytest

from fakes import FailingGenerator, FakeGenerator
from symptrack_agent_core import StatusNotifier
from symptrack_memory.models import SymptomDetails
from symptrack_workflows import AssessmentWorkflow, FindingExtractor, SymptomTrackingWorkflow
from symptrack_workflows.assessment import episode_links, more_urgent, rule_confidence
from symptrack_workflows.extraction import RuleBasedExtractor, findings_from_json


@pytest.fixture
def tracking(store, linker):
    return SymptomTrackingWorkflow(store=store, linker=linker, extractor=FindingExtractor())


@pytest.fixture
def assessment(store):
    return AssessmentWorkflow(store=store)


def _types(notifier: StatusNotifier) -> list[str]:
    return [update.type for update in notifier.updates]


def test_rules_pick_up_symptom_with_sentence_details():
    findings = RuleBasedExtractor().extract("I have a headache, about 7/10, and it's worse in the morning.")

    assert [item.name for item in findings.mentions] == ["headache"]
    details = findings.mentions[0].details
    assert details.severity == 7
    assert details.pattern == "worse in the morning"


def test_rules_separate_denials_from_mentions():
    findings = RuleBasedExtractor().extract("No fever, but I do have a cough.")

    assert [item.name for item in findings.mentions] == ["cough"]
    assert findings.denied == ["fever"]


def test_rules_detect_resolution():
    findings = RuleBasedExtractor().extract("My headache is gone.")

    assert findings.resolved == ["headache"]
    assert findings.mentions == []


def test_follow_up_sentence_attaches_to_last_symptom():
    findings = RuleBasedExtractor().extract("I have a headache. It's about 8/10.")

    assert findings.mentions[0].details.severity == 8


def test_rules_recognise_body_part_pain_and_relievers():
    findings = RuleBasedExtractor().extract("My back hurts but rest helps. My knee hurts too.")

    names = [item.name for item in findings.mentions]
    assert names == ["back pain", "knee pain"]
    assert findings.mentions[0].details.relievers == ["rest"]


def test_json_findings_are_clamped_and_validated():
    findings = findings_from_json(
        {
            "symptoms": [
                {"name": "Migraine", "severity": 14, "frequency": "weekly"},
                {"name": "migraine", "severity": 2},
                "not-an-object",
            ],
            "denied": ["Fever"],
            "resolved": [],
        }
    )

    assert len(findings.mentions) == 1
    assert findings.mentions[0].name == "migraine"
    assert findings.mentions[0].details.severity == 10
    assert findings.mentions[0].details.frequency is None
    assert findings.denied == ["fever"]


def test_tracking_creates_episodes_and_asks_follow_ups(tracking, hydrator):
    context = hydrator.hydrate("user-a", "conv-1")
    notifier = StatusNotifier()

    result = tracking.run("I have a headache and a cough.", context, notifier)

    assert sorted(result.episode_names.values()) == ["cough", "headache"]
    assert len(result.created_episode_ids) == 2
    assert _types(notifier) == ["symptom-gathering", "symptom-added", "symptom-added"]
    assert len(context.pending_questions) == 3
    assert result.response_text.startswith("I've started tracking your headache, cough.")
    assert result.state["assessment_suggested"] is False


def test_tracking_updates_existing_episode(tracking, hydrator):
    tracking.run("I have a cough.", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())
    notifier = StatusNotifier()

    result = tracking.run("The cough is constant, about 6/10.", hydrator.hydrate("user-a", "conv-1"), notifier)

    assert result.created_episode_ids == []
    assert len(result.updated_episode_ids) == 1
    assert _types(notifier)[-1] == "symptom-updated"
    assert notifier.updates[-1].stage == "explored"


def test_tracking_records_negative_findings(tracking, store, hydrator):
    context = hydrator.hydrate("user-a", "conv-1")

    result = tracking.run("I don't have a fever.", context, StatusNotifier())

    assert result.state["negative_findings_recorded"] == ["fever"]
    assert [item.symptom_name for item in store.get_negative_findings("user-a")] == ["fever"]
    assert context.negative_findings[0].symptom_name == "fever"


def test_denial_of_active_symptom_keeps_the_episode(tracking, store, hydrator, linker):
    linker.link_or_create("fever", SymptomDetails(), hydrator.hydrate("user-a"))

    tracking.run("I don't have a fever.", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert store.get_negative_findings("user-a") == []
    assert len(store.get_active_episodes("user-a")) == 1


def test_tracking_resolves_episode(tracking, store, hydrator, linker):
    created = linker.link_or_create("headache", SymptomDetails(), hydrator.hydrate("user-a"))
    notifier = StatusNotifier()

    result = tracking.run("My headache is gone.", hydrator.hydrate("user-a", "conv-1"), notifier)

    assert result.resolved_episode_ids == [created.episode.id]
    assert "symptom-resolved" in _types(notifier)
    assert store.get_episode("user-a", created.episode.id).status == "resolved"


def test_tracking_suggests_assessment_at_threshold(tracking, hydrator, linker):
    context = hydrator.hydrate("user-a")
    for name in ("headache", "nausea", "fatigue"):
        linker.link_or_create(name, SymptomDetails(), context)

    result = tracking.run("I also have a sore throat.", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert result.state["assessment_suggested"] is True
    assert "generate an assessment" in result.response_text


def test_tracking_uses_generator_for_extraction_and_reply(store, linker, hydrator):
    generator = FakeGenerator(
        [
            {"symptoms": [{"name": "Migraine", "severity": 12}], "denied": ["Fever"], "resolved": []},
            "Thanks, I've noted that.",
        ]
    )
    workflow = SymptomTrackingWorkflow(
        store=store,
        linker=linker,
        extractor=FindingExtractor(generator),
        generator=generator,
    )

    result = workflow.run("bad migraine, no fever", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert result.response_text == "Thanks, I've noted that."
    episode = store.get_episode("user-a", result.created_episode_ids[0])
    assert episode.symptom_name == "migraine"
    assert episode.severity == 10
    assert result.state["negative_findings_recorded"] == ["fever"]


def test_tracking_falls_back_to_rules_when_generator_fails(store, linker, hydrator):
    workflow = SymptomTrackingWorkflow(
        store=store,
        linker=linker,
        extractor=FindingExtractor(FailingGenerator()),
        generator=FailingGenerator(),
    )

    result = workflow.run("I have a cough.", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert list(result.episode_names.values()) == ["cough"]
    assert result.response_text.startswith("I've started tracking your cough.")


def test_assessment_without_episodes_is_skipped(assessment, store, hydrator):
    notifier = StatusNotifier()

    result = assessment.run("generate assessment", hydrator.hydrate("user-a", "conv-1"), notifier)

    assert result.assessment_id is None
    assert result.state["assessment_skipped"] is True
    assert store.get_recent_assessments("user-a") == []
    assert _types(notifier) == ["assessment-generating"]


def test_assessment_requires_conversation(assessment, hydrator, linker):
    context = hydrator.hydrate("user-a")
    linker.link_or_create("cough", SymptomDetails(), context)

    with pytest.raises(ValueError):
        assessment.run("assess", context, StatusNotifier())


def test_assessment_links_episodes_and_revises_in_place(assessment, store, hydrator, linker):
    seed = hydrator.hydrate("user-a")
    headache = linker.link_or_create("headache", SymptomDetails(severity=6, location="forehead"), seed).episode
    nausea = linker.link_or_create("nausea", SymptomDetails(), seed).episode
    notifier = StatusNotifier()
    context = hydrator.hydrate("user-a", "conv-1")

    first = assessment.run("generate assessment", context, notifier)

    assert _types(notifier) == [
        "assessment-generating",
        "assessment-analyzing",
        "assessment-created",
        "assessment-complete",
    ]
    saved = store.get_assessment("user-a", first.assessment_id)
    assert saved.hypothesis == "Migraine"
    assert saved.status == "completed"
    assert saved.recommended_action == "self-care"
    assert saved.confidence == pytest.approx(0.55)
    assert context.phase == "assessing"
    weights = {link.episode_id: link.weight for link in saved.linked_episodes}
    assert weights == {headache.id: pytest.approx(0.625), nausea.id: pytest.approx(0.375)}
    assert sum(weights.values()) == pytest.approx(1.0)
    assert {episode.stage for episode in store.get_active_episodes("user-a")} == {"linked"}
    assert sorted(first.updated_episode_ids) == sorted([headache.id, nausea.id])

    revisit = hydrator.hydrate("user-a", "conv-1")
    second = assessment.run("evaluate again", revisit, StatusNotifier())

    assert second.assessment_id == first.assessment_id
    assert second.assessment_confidence == pytest.approx(0.8)
    assert revisit.phase == "recommending"
    assert second.updated_episode_ids == []
    assert len(store.get_recent_assessments("user-a")) == 1


def test_red_flag_symptom_escalates_to_emergency(assessment, store, hydrator, linker):
    linker.link_or_create("chest pain", SymptomDetails(severity=4), hydrator.hydrate("user-a"))

    result = assessment.run("assess", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert store.get_assessment("user-a", result.assessment_id).recommended_action == "emergency"
    assert "emergency" in result.response_text


def test_generated_assessment_is_clamped_and_never_less_urgent(store, hydrator, linker):
    generator = FakeGenerator(
        [
            {
                "hypothesis": "Cluster headache",
                "confidence": 1.7,
                "differentials": ["Migraine"],
                "reasoning": "One-sided pain around the eye.",
                "recommendedAction": "self-care",
            },
            "Here is what I think is going on.",
        ]
    )
    workflow = AssessmentWorkflow(store=store, generator=generator)
    linker.link_or_create("headache", SymptomDetails(severity=9), hydrator.hydrate("user-a"))
    context = hydrator.hydrate("user-a", "conv-1")

    result = workflow.run("assess", context, StatusNotifier())

    saved = store.get_assessment("user-a", result.assessment_id)
    assert saved.hypothesis == "Cluster headache"
    assert saved.confidence == 1.0
    assert saved.recommended_action == "urgent-care"
    assert saved.differentials == ["Migraine"]
    assert context.phase == "recommending"
    assert result.response_text == "Here is what I think is going on."


def test_assessment_uses_rules_when_generator_fails(store, hydrator, linker):
    workflow = AssessmentWorkflow(store=store, generator=FailingGenerator())
    linker.link_or_create("fever", SymptomDetails(), hydrator.hydrate("user-a"))
    linker.link_or_create("cough", SymptomDetails(), hydrator.hydrate("user-a"))

    result = workflow.run("assess", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert result.state["hypothesis"] == "Viral respiratory infection"
    assert "This is not a diagnosis" in result.response_text


def test_scoring_helpers():
    assert rule_confidence([], True, 0, 0) == 0.0
    assert more_urgent("self-care", "see-gp") == "see-gp"
    assert more_urgent("emergency", "see-gp") == "emergency"
    assert episode_links([], set()) == []


def test_message_without_findings_reports_general_status(tracking, hydrator):
    notifier = StatusNotifier()

    result = tracking.run("Thanks for the help!", hydrator.hydrate("user-a", "conv-1"), notifier)

    assert _types(notifier) == ["symptom-gathering", "general"]
    assert result.created_episode_ids == []
    assert result.response_text.startswith("Tell me about any symptoms")


def test_rules_understand_head_still_hurts(tracking, hydrator):
    assert [item.name for item in RuleBasedExtractor().extract("my head still hurts").mentions] == ["headache"]

    result = tracking.run("my head still hurts", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert list(result.episode_names.values()) == ["headache"]


def test_repeated_denial_is_recorded_once(tracking, store, hydrator):
    tracking.run("I don't have a fever.", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    result = tracking.run("I don't have a fever.", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert result.state["negative_findings_recorded"] == []
    assert len(store.get_negative_findings("user-a")) == 1


@pytest.mark.parametrize(
    "reply",
    [
        {"symptoms": [{"name": "x" * 150}]},
        {"symptoms": 5},
        {"symptoms": "cough", "denied": "fever"},
    ],
)
def test_unusable_generated_findings_fall_back_to_rules(store, linker, hydrator, reply):
    workflow = SymptomTrackingWorkflow(store=store, linker=linker, extractor=FindingExtractor(FakeGenerator([reply])))

    result = workflow.run("I have a cough.", hydrator.hydrate("user-a", "conv-1"), StatusNotifier())

    assert list(result.episode_names.values()) == ["cough"]


def test_over_long_generated_names_are_dropped():
    findings = findings_from_json(
        {
            "symptoms": [{"name": "y" * 121}, {"name": "Sore throat"}],
            "denied": ["z" * 121, "fever"],
            "resolved": ["w" * 200],
        }
    )

    assert [item.name for item in findings.mentions] == ["sore throat"]
    assert findings.denied == ["fever"]
    assert findings.resolved == []
