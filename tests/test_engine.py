"""Tests for intentweave.engine — ingestion, matching decisions and follow-up scheduling."""

from __future__ import annotations

import pytest
from conftest import make_page

from intentweave.config import IntentweaveConfig, SchedulerSectionConfig
from intentweave.engine import MatchDecision
from intentweave.errors import EntityNotFoundError, PageNotFoundError
from intentweave.scheduler.models import REFRESH_TASK_TYPES, TaskType
from intentweave.similarity.embedding import create_embedding
from intentweave.store.models import IntentStatus

T = TaskType


def _types(service, entity_id: str) -> set[TaskType]:
    return {t.type for t in service.scheduler.tasks_for_entity(entity_id)}


def _embedded(url: str = "https://docs.python.org/3/library/asyncio.html", **kwargs):
    page = make_page(url, concepts=kwargs.pop("concepts", ["python", "asyncio"]), **kwargs)
    page.embedding = create_embedding(page)
    return page


def _seed_intent(service, n: int = 1, *, concepts: list[str] | None = None, title: str = "asyncio tutorial"):
    """An intent built directly in the store, bypassing the queue."""
    store = service.store
    pages = [
        store.upsert_page(
            make_page(f"https://docs.python.org/p{i}", title, concepts=concepts or ["python", "asyncio"])
        )
        for i in range(n)
    ]
    intent = store.create_intent(pages[0].id)
    for page in pages[1:]:
        store.assign_primary_intent(page.id, intent.id, 0.8)
    return store.get_intent(intent.id), pages


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class TestIngest:
    def test_queues_page_enrichment(self, make_service):
        service = make_service()
        page = service.ingest(make_page())

        tasks = {t.type: t for t in service.scheduler.tasks_for_entity(page.id)}

        assert set(tasks) == {T.SEMANTIC_EXTRACTION, T.INTENT_MATCHING, T.CLASSIFY_BEHAVIOR}
        matching = tasks[T.INTENT_MATCHING]
        assert [d.task_id for d in matching.depends_on] == [tasks[T.SEMANTIC_EXTRACTION].id]

    def test_long_content_is_summarized(self, make_service):
        service = make_service()
        page = service.ingest(make_page(content="word " * 1100))
        assert T.SUMMARIZATION in _types(service, page.id)

    def test_enriched_page_matches_immediately(self, make_service):
        service = make_service()
        page = service.ingest(make_page(concepts=["python"]))

        tasks = {t.type: t for t in service.scheduler.tasks_for_entity(page.id)}

        assert T.SEMANTIC_EXTRACTION not in tasks
        assert tasks[T.INTENT_MATCHING].depends_on == []

    def test_error_page_not_enriched(self, make_service):
        service = make_service()
        page = service.ingest(make_page(title="404 Not Found"))

        assert service.store.get_page(page.id) is not None
        assert service.scheduler.tasks_for_entity(page.id) == []

    def test_duplicate_visit_reuses_queued_work(self, make_service):
        service = make_service()
        first = service.ingest(make_page())
        second = service.ingest(make_page())

        assert first.id == second.id
        assert len(service.scheduler.tasks()) == 3

    def test_accepts_raw_records(self, make_service):
        service = make_service()
        page = service.ingest({"url": "https://www.example.com/a", "title": "Example"})
        assert page.domain == "example.com"


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestScorePage:
    def test_no_intents_means_create(self, make_service):
        service = make_service()
        decision = service.engine.score_page(_embedded())
        assert decision.action == "create"
        assert decision.score == 0.0

    def test_identical_page_auto_assigned(self, make_service):
        service = make_service()
        seed = service.store.upsert_page(_embedded("https://docs.python.org/a"))
        intent = service.store.create_intent(seed.id)

        decision = service.engine.score_page(_embedded("https://docs.python.org/b"))

        assert decision.action == "assign"
        assert decision.intent_id == intent.id
        assert decision.auto_assigned
        assert decision.score == pytest.approx(1.0)
        assert set(decision.components) == {
            "semantic",
            "keyword",
            "entity",
            "temporal",
            "domain",
            "behavioral",
        }

    def test_related_page_needs_confirmation(self, make_service):
        service = make_service()
        _seed_intent(service)
        # No embedding, so the semantic component contributes nothing
        page = make_page("https://docs.python.org/c", concepts=["python", "asyncio", "tasks", "queues"])

        decision = service.engine.score_page(page)

        assert decision.action == "assign"
        assert not decision.auto_assigned
        assert decision.components["keyword"] == pytest.approx(0.5)
        assert decision.reason == "needs confirmation"

    def test_unrelated_page_creates(self, make_service):
        service = make_service()
        _seed_intent(service)
        page = make_page("https://bakery.example/bread", concepts=["sourdough", "bread"])

        decision = service.engine.score_page(page)

        assert decision.action == "create"
        assert decision.score == pytest.approx(0.25)

    def test_error_page_skipped(self, make_service):
        decision = make_service().engine.score_page(make_page(title="Error: page unavailable"))
        assert decision.action == "skip"

    def test_terminal_intents_not_considered(self, make_service):
        service = make_service()
        intent, _pages = _seed_intent(service)
        service.discard(intent.id)
        assert service.engine.score_page(_embedded("https://docs.python.org/z")).action == "create"


# ---------------------------------------------------------------------------
# Applying decisions
# ---------------------------------------------------------------------------


class TestApplyMatch:
    def test_create_seeds_intent_and_queues_enrichment(self, make_service):
        service = make_service()
        page = service.store.upsert_page(_embedded())

        intent_id = service.engine.apply_match(page.id, {"action": "create"})

        assert service.store.get_page(page.id).primary_intent_id == intent_id
        assert _types(service, intent_id) == set(REFRESH_TASK_TYPES)
        assert T.VERIFY_INTENT_MATCHING in _types(service, page.id)

    def test_unconfirmed_assignment_is_verified(self, make_service):
        service = make_service()
        intent, _pages = _seed_intent(service)
        page = service.store.upsert_page(_embedded("https://docs.python.org/new"))

        decision = MatchDecision(action="assign", intent_id=intent.id, score=0.6)
        assert service.engine.apply_match(page.id, decision) == intent.id

        stored = service.store.get_page(page.id)
        assert stored.assignments.primary.needs_confirmation
        assert T.VERIFY_INTENT_MATCHING in _types(service, page.id)

    def test_auto_assignment_skips_verification(self, make_service):
        service = make_service()
        intent, _pages = _seed_intent(service)
        page = service.store.upsert_page(_embedded("https://docs.python.org/new"))

        decision = MatchDecision(action="assign", intent_id=intent.id, score=0.9, auto_assigned=True)
        service.engine.apply_match(page.id, decision)

        assert T.VERIFY_INTENT_MATCHING not in _types(service, page.id)

    def test_verification_disabled_by_preset(self, make_service):
        config = IntentweaveConfig(scheduler=SchedulerSectionConfig(preset="light"))
        service = make_service(config=config)
        page = service.store.upsert_page(_embedded())

        service.engine.apply_match(page.id, {"action": "create"})

        assert T.VERIFY_INTENT_MATCHING not in _types(service, page.id)

    def test_terminal_target_falls_back_to_create(self, make_service):
        service = make_service()
        intent, _pages = _seed_intent(service)
        service.discard(intent.id)
        page = service.store.upsert_page(_embedded("https://docs.python.org/new"))

        new_id = service.engine.apply_match(page.id, {"action": "assign", "intent_id": intent.id, "score": 0.9})

        assert new_id != intent.id
        assert service.store.get_intent(new_id).page_ids == [page.id]

    def test_already_assigned_page_untouched(self, make_service):
        service = make_service()
        intent, pages = _seed_intent(service)
        assert service.engine.apply_match(pages[0].id, {"action": "create"}) == intent.id
        assert len(service.store.list_intents()) == 1

    def test_skip(self, make_service):
        service = make_service()
        page = service.store.upsert_page(make_page(title="404"))
        assert service.engine.apply_match(page.id, {"action": "skip"}) is None
        assert service.store.list_intents() == []

    def test_unknown_page(self, make_service):
        with pytest.raises(PageNotFoundError):
            make_service().engine.apply_match("ghost", {"action": "create"})


# ---------------------------------------------------------------------------
# Follow-up work
# ---------------------------------------------------------------------------


class TestAfterAssignment:
    def test_refresh_on_cadence(self, make_service):
        service = make_service()
        intent, pages = _seed_intent(service, 3)

        service.engine.after_assignment(pages[-1].id, intent.id)

        tasks = {t.type: t for t in service.scheduler.tasks_for_entity(intent.id)}
        assert set(tasks) == set(REFRESH_TASK_TYPES) | {T.ANALYZE_KNOWLEDGE_GAPS}
        assert tasks[T.GENERATE_INTENT_LABEL].priority == 25

    def test_no_refresh_between_cadence_points(self, make_service):
        service = make_service()
        intent, pages = _seed_intent(service, 2)

        service.engine.after_assignment(pages[-1].id, intent.id)

        assert service.scheduler.tasks_for_entity(intent.id) == []

    def test_milestone_predicted_for_larger_intents(self, make_service):
        config = IntentweaveConfig(scheduler=SchedulerSectionConfig(refresh_every_pages=5))
        service = make_service(config=config)
        intent, pages = _seed_intent(service, 5)

        service.engine.after_assignment(pages[-1].id, intent.id)

        assert T.PREDICT_MILESTONE in _types(service, intent.id)

    def test_completion_detected(self, make_service):
        service = make_service()
        intent, pages = _seed_intent(service, 5)
        assert intent.status == IntentStatus.ACTIVE
        receipt = service.store.upsert_page(
            make_page("https://shop.example/done", "Thank you for your order", concepts=["python"])
        )
        service.store.assign_primary_intent(receipt.id, intent.id, 0.9)

        service.engine.after_assignment(receipt.id, intent.id)

        completed = service.store.get_intent(intent.id)
        assert completed.status == IntentStatus.COMPLETED
        assert completed.status_reason.startswith("inferred:")

    def test_emerging_intent_never_completed(self, make_service):
        service = make_service()
        intent, pages = _seed_intent(service, 1, title="Thank you for your order")
        service.engine.after_assignment(pages[0].id, intent.id)
        assert service.store.get_intent(intent.id).status == IntentStatus.EMERGING


class TestMergeScanScheduling:
    def test_needs_two_intents(self, make_service):
        service = make_service()
        _seed_intent(service)
        assert not service.engine.maybe_schedule_merge_scan()
        assert service.scheduler.tasks() == []

    def test_second_intent_triggers_scan(self, make_service):
        service = make_service()
        _seed_intent(service)
        page = service.store.upsert_page(make_page("https://other.dev/x", concepts=["rust"]))
        service.store.create_intent(page.id)

        assert [t.type for t in service.scheduler.tasks()] == [T.SCAN_MERGE_OPPORTUNITIES]

    def test_rate_limited(self, make_service, clock):
        service = make_service()
        for i in range(2):
            page = service.store.upsert_page(make_page(f"https://site{i}.dev/", concepts=["x"]))
            service.store.create_intent(page.id)

        assert not service.engine.maybe_schedule_merge_scan()
        clock.advance(seconds=11)
        assert service.engine.maybe_schedule_merge_scan()

    def test_disabled_by_preset(self, make_service):
        config = IntentweaveConfig(scheduler=SchedulerSectionConfig(preset="light"))
        service = make_service(config=config)
        for i in range(2):
            page = service.store.upsert_page(make_page(f"https://site{i}.dev/", concepts=["x"]))
            service.store.create_intent(page.id)
        assert not service.engine.maybe_schedule_merge_scan()


class TestMaintenance:
    def test_sweep_applies_dormancy(self, make_service, clock):
        service = make_service()
        intent, _pages = _seed_intent(service)
        clock.advance(hours=25)

        assert service.sweep() == [(intent.id, IntentStatus.DORMANT)]

    def test_reenrich_page_clears_features(self, make_service):
        service = make_service()
        page = service.store.upsert_page(_embedded())

        task_ids = service.reenrich(page.id)

        stored = service.store.get_page(page.id)
        assert stored.semantic_features is None
        assert stored.embedding == []
        assert [service.scheduler.get(t).type for t in task_ids] == [
            T.SEMANTIC_EXTRACTION,
            T.CLASSIFY_BEHAVIOR,
        ]

    def test_reenrich_intent_refreshes(self, make_service):
        service = make_service()
        intent, _pages = _seed_intent(service)
        assert len(service.reenrich(intent.id)) == len(REFRESH_TASK_TYPES)

    def test_reenrich_unknown(self, make_service):
        with pytest.raises(EntityNotFoundError, match="No page or intent"):
            make_service().reenrich("ghost")
