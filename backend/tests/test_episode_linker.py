from __future__ import annotations

from symptrack_memory.episode_linker import advance_stage
from symptrack_memory.models import SymptomDetails


def test_first_mention_creates_symptom_and_episode(hydrator, linker):
    context = hydrator.hydrate("user-a")

    result = linker.link_or_create("Headache", SymptomDetails(severity=5), context)

    assert result.action == "created"
    assert result.symptom_created is True
    assert result.episode.stage == "mentioned"
    assert result.episode.status == "active"
    assert context.recent_episode_by_symptom["headache"].id == result.episode.id
    assert [item.name for item in context.active_symptoms] == ["Headache"]


def test_repeat_mention_updates_same_episode_case_insensitively(store, hydrator, linker):
    context = hydrator.hydrate("user-a")
    created = linker.link_or_create("headache", SymptomDetails(), context)

    fresh = hydrator.hydrate("user-a")
    updated = linker.link_or_create("HEADACHE", SymptomDetails(severity=7, notes="worse today"), fresh)

    assert updated.action == "updated"
    assert updated.episode.id == created.episode.id
    assert updated.episode.severity == 7
    assert updated.episode.stage == "explored"
    assert updated.episode.timeline[-1].notes == "worse today"
    assert len(store.get_active_episodes("user-a")) == 1


def test_missing_details_never_erase_existing_values(hydrator, linker):
    context = hydrator.hydrate("user-a")
    linker.link_or_create("cough", SymptomDetails(), context)
    linker.link_or_create("cough", SymptomDetails(severity=4, location="chest", triggers=["cold air"]), context)

    result = linker.link_or_create("cough", SymptomDetails(), context)

    assert result.episode.severity == 4
    assert result.episode.location == "chest"
    assert result.episode.triggers == ["cold air"]
    assert result.episode.stage == "characterized"
    assert len(result.episode.timeline) == 2


def test_stage_never_moves_backwards():
    assert advance_stage("mentioned", 0) == "mentioned"
    assert advance_stage("mentioned", 2) == "explored"
    assert advance_stage("explored", 3) == "characterized"
    assert advance_stage("characterized", 1) == "characterized"
    assert advance_stage("linked", 6) == "linked"


def test_linked_episode_stays_linked_after_update(store, hydrator, linker):
    context = hydrator.hydrate("user-a")
    created = linker.link_or_create("fever", SymptomDetails(), context)
    store.set_episode_stage("user-a", created.episode.id, "linked")

    fresh = hydrator.hydrate("user-a")
    result = linker.link_or_create("fever", SymptomDetails(severity=3), fresh)

    assert result.action == "updated"
    assert result.episode.stage == "linked"


def test_resolved_episode_is_not_reused(store, hydrator, linker):
    context = hydrator.hydrate("user-a")
    first = linker.link_or_create("nausea", SymptomDetails(), context)
    store.resolve_episode("user-a", first.episode.id)

    fresh = hydrator.hydrate("user-a")
    second = linker.link_or_create("nausea", SymptomDetails(), fresh)

    assert second.action == "created"
    assert second.symptom_created is False
    assert second.episode.id != first.episode.id
    assert second.episode.symptom_id == first.episode.symptom_id


def test_synonyms_are_tracked_separately(hydrator, linker):
    context = hydrator.hydrate("user-a")

    first = linker.link_or_create("stomach ache", SymptomDetails(), context)
    second = linker.link_or_create("abdominal pain", SymptomDetails(), context)

    assert first.episode.id != second.episode.id
    assert second.action == "created"


def test_resolve_removes_episode_from_working_memory(hydrator, linker):
    context = hydrator.hydrate("user-a")
    created = linker.link_or_create("rash", SymptomDetails(), context)

    resolved = linker.resolve("Rash", context)

    assert resolved.id == created.episode.id
    assert resolved.status == "resolved"
    assert "rash" not in context.recent_episode_by_symptom
    assert context.active_episodes == []
    assert linker.resolve("rash", context) is None
