from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from incidentflow.jobs.cluster import merge_reason, run_cluster_job
from incidentflow.jobs.errors import JobNotFoundError
from incidentflow.jobs.executor import execute_job
from support import FakeCapability, cluster_envelope, extract_envelope, make_extraction


def test_near_duplicate_is_merged_into_earlier_event(make_context, repository) -> None:
    primary = repository.add_event(source_count=2, confidence_extraction=0.8, severity_level=2)
    duplicate = repository.add_event(latitude=34.48, severity_level=4, source_id=11)

    result = asyncio.run(run_cluster_job(cluster_envelope(duplicate.event_id), make_context()))

    assert result["action"] == "merged"
    assert result["primary_event_id"] == primary.event_id
    assert result["merged_event_ids"] == [duplicate.event_id]
    assert result["score"] >= 0.7
    stored_primary = repository.events[primary.event_id]
    stored_duplicate = repository.events[duplicate.event_id]
    assert stored_primary.source_count == 3
    assert stored_primary.confidence_extraction == pytest.approx(0.85)
    assert stored_primary.severity_level == 4
    assert stored_duplicate.status == "merged"
    assert stored_duplicate.merged_into_id == primary.event_id
    assert (primary.event_id, 11, "supporting") in repository.event_sources
    assert (duplicate.event_id, 11, "primary") in repository.event_sources
    assert len(repository.merges) == 1
    assert repository.merges[0]["merge_reason"].startswith("similarity match (event_type=1.00")


def test_redelivered_cluster_job_does_not_merge_twice(make_context, repository) -> None:
    primary = repository.add_event()
    duplicate = repository.add_event(latitude=34.48)
    envelope = cluster_envelope(duplicate.event_id)
    context = make_context()

    asyncio.run(run_cluster_job(envelope, context))
    again = asyncio.run(run_cluster_job(envelope, context))

    assert again["action"] == "merged"
    assert again["reason"] == "already_merged"
    assert again["primary_event_id"] == primary.event_id
    assert again["merged_event_ids"] == []
    assert repository.events[primary.event_id].source_count == 2
    assert len(repository.merges) == 1


def test_dissimilar_event_stays_new(make_context, repository) -> None:
    repository.add_event()
    other = repository.add_event(
        title="Brush blaze threatens ranch homes",
        summary_short="Crews battle brush blaze near ranches",
        latitude=34.75,
        start_date=datetime(2024, 7, 7, tzinfo=timezone.utc),
    )

    result = asyncio.run(run_cluster_job(cluster_envelope(other.event_id), make_context()))

    assert result["action"] == "new"
    assert result["reason"] == "below_threshold"
    assert result["primary_event_id"] == other.event_id
    assert result["score"] < 0.7
    assert repository.merges == []


def test_only_earlier_events_of_same_type_and_country_are_candidates(make_context, repository) -> None:
    first = repository.add_event()
    repository.add_event(event_type_primary="flood")
    repository.add_event(country="Mexico")
    context = make_context()

    # The later duplicates of the first event never absorb it.
    repository.add_event()
    result = asyncio.run(run_cluster_job(cluster_envelope(first.event_id), context))

    assert result["action"] == "new"
    assert result["reason"] == "no_candidates"


def test_candidates_outside_window_are_ignored(make_context, repository) -> None:
    repository.add_event(created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
    recent = repository.add_event()

    result = asyncio.run(run_cluster_job(cluster_envelope(recent.event_id, window_hours=72), make_context()))

    assert result["reason"] == "no_candidates"


def test_far_away_candidates_are_narrowed_out(make_context, repository) -> None:
    repository.add_event(latitude=36.5)
    event = repository.add_event()

    result = asyncio.run(run_cluster_job(cluster_envelope(event.event_id), make_context()))

    assert result["reason"] == "no_candidates"


def test_missing_event_is_not_found(make_context) -> None:
    with pytest.raises(JobNotFoundError):
        asyncio.run(run_cluster_job(cluster_envelope(404), make_context()))


def test_inactive_event_is_left_alone(make_context, repository) -> None:
    repository.add_event()
    archived = repository.add_event(status="archived")

    result = asyncio.run(run_cluster_job(cluster_envelope(archived.event_id), make_context()))

    assert result["action"] == "new"
    assert result["reason"] == "event_archived"
    assert repository.merges == []


def test_batch_mode_clusters_recent_active_events(make_context, repository) -> None:
    first = repository.add_event()
    second = repository.add_event(latitude=34.42)
    repository.add_event(event_type_primary="flood", title="River flooding")

    result = asyncio.run(run_cluster_job(cluster_envelope(), make_context()))

    assert result["mode"] == "batch"
    assert result["evaluated"] == 3
    assert result["merged_event_ids"] == [second.event_id]
    assert repository.events[second.event_id].merged_into_id == first.event_id


def test_chain_merges_are_flattened_to_the_root(make_context, repository) -> None:
    root = repository.add_event()
    middle = repository.add_event(latitude=34.40)
    repository.add_event(latitude=34.41)
    context = make_context()

    # Merge the newest report into the middle one first, then the middle into the root.
    newest_id = max(repository.events)
    asyncio.run(
        repository.merge_events(
            primary_id=middle.event_id,
            absorbed_id=newest_id,
            similarity_score=0.9,
            merge_reason="similarity match",
            boost_per_source=0.05,
            max_confidence=0.98,
        )
    )
    result = asyncio.run(run_cluster_job(cluster_envelope(middle.event_id), context))

    assert result["primary_event_id"] == root.event_id
    assert repository.events[newest_id].merged_into_id == root.event_id
    assert repository.events[root.event_id].source_count == 3


def test_merge_reason_lists_components() -> None:
    assert merge_reason({"event_type": 1.0, "geo": 0.8}) == "similarity match (event_type=1.00, geo=0.80)"


def test_two_reports_of_one_wildfire_end_as_one_active_event(make_context, repository, queue) -> None:
    repository.add_source(1)
    repository.add_source(2, url="https://news.example.org/articles/2", publisher="Valley Times")
    second_report = make_extraction(
        location={
            "geometry": {"type": "Point", "coordinates": [-118.54, 34.48], "precision": "approximate"},
            "admin": {"country": "United States", "admin1": "California", "locality": "Castaic"},
        }
    )
    context = make_context(FakeCapability(make_extraction(), second_report))

    async def pipeline() -> list[dict]:
        results = []
        for source_id in (1, 2):
            await execute_job(extract_envelope(source_id), context)
            _, cluster_job = queue.enqueued[-1]
            results.append(await execute_job(cluster_job, context))
        return results

    first_cluster, second_cluster = asyncio.run(pipeline())

    active = [event for event in repository.events.values() if event.status == "active"]
    merged = [event for event in repository.events.values() if event.status == "merged"]
    assert first_cluster["action"] == "new"
    assert second_cluster["action"] == "merged"
    assert len(active) == 1
    assert len(merged) == 1
    assert active[0].source_count == 2
    assert merged[0].merged_into_id == active[0].event_id
    assert {source_id for event_id, source_id, _ in repository.event_sources if event_id == active[0].event_id} == {1, 2}


def test_batch_clustering_reaches_event_whose_cluster_job_was_lost(make_context, repository, queue, caplog) -> None:
    earlier = repository.add_event()
    repository.add_source(1)
    context = make_context(FakeCapability(make_extraction()))
    envelope = extract_envelope(1)

    async def queue_down(queue_name, cluster_job) -> str:
        raise ConnectionResetError("queue connection reset")

    queue.enqueue = queue_down
    with pytest.raises(ConnectionResetError):
        asyncio.run(execute_job(envelope, context))
    redelivered = asyncio.run(execute_job(envelope, context))
    orphan_id = repository.extractions[1]["event_id"]
    batch = asyncio.run(execute_job(cluster_envelope(), context))

    assert "event awaits batch clustering" in caplog.text
    assert redelivered["reason"] == "already_extracted"
    assert batch["merged_event_ids"] == [orphan_id]
    assert repository.events[orphan_id].merged_into_id == earlier.event_id


def test_forced_reextraction_merge_does_not_recount_the_source(make_context, repository, queue) -> None:
    repository.add_source(1)
    context = make_context(FakeCapability(make_extraction(), make_extraction()))

    async def extract_twice_then_cluster() -> dict:
        await execute_job(extract_envelope(1), context)
        await execute_job(extract_envelope(1, force_reextract=True), context)
        _, cluster_job = queue.enqueued[-1]
        return await execute_job(cluster_job, context)

    result = asyncio.run(extract_twice_then_cluster())

    primary = repository.events[result["primary_event_id"]]
    assert result["action"] == "merged"
    assert primary.source_count == 1
    assert primary.confidence_extraction == pytest.approx(0.8)
