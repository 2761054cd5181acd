import asyncio

import pytest

from conftest import (
    CountingPrimaryStore,
    FailingSecondaryStore,
    RecordingLogger,
    SequentialIds,
    UndeletablePrimaryStore,
    make_engine,
    make_primary,
    make_repository,
)
from planforge.domains.project.domain.entities import ProjectStatus
from planforge.infrastructure.stores import InMemorySecondaryStore
from planforge.schemas.project import ProjectListOptions, StoryInput
from planforge.services.cache_service import RepositoryCache
from planforge.shared_kernel.exceptions import PrimaryStoreError, SecondaryStoreError, ValidationError


class FlakyTouchStore(CountingPrimaryStore):
    """Partial updates fail once ``broken`` is set."""

    broken = False

    async def update(self, table, key, fields):
        if self.broken:
            raise PrimaryStoreError("primary unavailable", code="PRIMARY_STORE_ERROR")
        return await super().update(table, key, fields)


class SlowPrimaryStore(CountingPrimaryStore):
    """Every call yields to the loop first, so background work interleaves."""

    async def find_by_id(self, table, key):
        await asyncio.sleep(0.01)
        return await super().find_by_id(table, key)

    async def update(self, table, key, fields):
        await asyncio.sleep(0.01)
        return await super().update(table, key, fields)

    async def upsert(self, table, key, row):
        await asyncio.sleep(0.01)
        return await super().upsert(table, key, row)


class BrokenQueryStore(CountingPrimaryStore):
    async def find_many(self, table, filters=None, **kwargs):
        raise PrimaryStoreError("query failed", code="PRIMARY_STORE_ERROR")


async def create(repository, title="Demo", user_id="u1"):
    response = await repository.create_project({"title": title, "user_id": user_id})
    assert response.success, response.error
    return response.data


@pytest.mark.asyncio
async def test_create_project_under_required_with_failing_secondary_leaves_nothing():
    primary = make_primary()
    secondary = FailingSecondaryStore()
    repository = make_repository(make_engine("production", primary=primary, secondary=secondary))

    response = await repository.create_project({"title": "Demo", "user_id": "u1"})

    assert response.success is False
    assert response.code == "DUAL_STORAGE_ERROR"
    assert await primary.find_by_id("projects", "id-1") is None
    # One attempt per configured retry, no more.
    assert len(secondary.attempts) == 3
    assert repository.cache.project_key("id-1") not in repository.cache


@pytest.mark.asyncio
async def test_create_project_sets_defaults_and_caches(repository, primary_store):
    project = await create(repository)

    assert project.owner_id == "u1"
    assert project.status == ProjectStatus.DRAFT
    assert project.pipeline["story"] == {"id": None, "completed": False}
    assert [c.role.value for c in project.collaborators] == ["owner"]
    assert repository.cache.project_key(project.id) in repository.cache
    assert await primary_store.find_by_id("projects", project.id) is not None


@pytest.mark.asyncio
async def test_duplicate_title_maps_to_user_facing_error(repository):
    await create(repository)

    response = await repository.create_project({"title": "Demo", "user_id": "u1"})

    assert response.success is False
    assert response.code == "DUPLICATE_PROJECT"
    assert response.error == "A project with this name already exists."


@pytest.mark.asyncio
async def test_create_project_rejects_invalid_input(repository):
    response = await repository.create_project({"title": "", "user_id": "u1"})

    assert response.success is False
    assert response.code == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_preferred_strategy_creates_despite_secondary_failure():
    primary = make_primary()
    repository = make_repository(make_engine("staging", primary=primary, secondary=FailingSecondaryStore()))

    project = await create(repository)

    assert await primary.find_by_id("projects", project.id) is not None


@pytest.mark.asyncio
async def test_get_user_projects_is_cached_per_options():
    primary = make_primary(CountingPrimaryStore)
    repository = make_repository(make_engine("production", primary=primary))
    await create(repository, "Demo")
    await create(repository, "Second")
    options = {"page": 1, "limit": 20, "sort_by": "updated_at"}

    first = await repository.get_user_projects("u1", options)
    second = await repository.get_user_projects("u1", options)

    assert primary.count("find_many") == 1
    assert first.data["total"] == 2
    assert [p.title for p in second.data["projects"]] == [p.title for p in first.data["projects"]]

    await repository.get_user_projects("u1", ProjectListOptions(page=1, limit=20, sort_by="title"))
    assert primary.count("find_many") == 2


@pytest.mark.asyncio
async def test_get_user_projects_cache_expires():
    now = [0.0]
    primary = make_primary(CountingPrimaryStore)
    cache = RepositoryCache(clock=lambda: now[0])
    repository = make_repository(make_engine("production", primary=primary), cache=cache)
    await create(repository)

    await repository.get_user_projects("u1")
    now[0] = 61.0
    await repository.get_user_projects("u1")

    assert primary.count("find_many") == 2


@pytest.mark.asyncio
async def test_get_user_projects_filters_and_paginates(repository):
    for title in ("Alpha", "Beta", "Gamma"):
        await create(repository, title)
    await create(repository, "Other", user_id="u2")

    response = await repository.get_user_projects(
        "u1", {"page": 2, "limit": 2, "sort_by": "title", "sort_order": "asc"}
    )

    assert response.data["total"] == 3
    assert [p.title for p in response.data["projects"]] == ["Gamma"]

    response = await repository.get_user_projects("u1", {"search": "alp"})
    assert [p.title for p in response.data["projects"]] == ["Alpha"]


@pytest.mark.asyncio
async def test_creating_a_project_invalidates_owner_listings(repository):
    await create(repository, "Alpha")
    first = await repository.get_user_projects("u1")
    await create(repository, "Beta")

    second = await repository.get_user_projects("u1")

    assert first.data["total"] == 1
    assert second.data["total"] == 2


@pytest.mark.asyncio
async def test_workspace_miss_reads_through_and_refreshes_last_access(repository, clock, primary_store):
    project = await create(repository)
    repository.clear_cache()
    clock.advance(minutes=5)

    response = await repository.get_project_workspace(project.id)

    assert response.success is True
    assert response.metadata["cached"] is False
    assert response.data.last_accessed_at == clock.now
    stored = await primary_store.find_by_id("projects", project.id)
    assert stored["last_accessed_at"] == clock.now.isoformat()


@pytest.mark.asyncio
async def test_workspace_hit_refreshes_last_access_in_background(repository, clock, primary_store):
    project = await create(repository)
    clock.advance(minutes=1)

    response = await repository.get_project_workspace(project.id)
    await repository.wait_for_background_tasks()

    assert response.metadata["cached"] is True
    stored = await primary_store.find_by_id("projects", project.id)
    assert stored["last_accessed_at"] == clock.now.isoformat()


@pytest.mark.asyncio
async def test_background_refresh_failure_does_not_fail_the_read():
    primary = make_primary(FlakyTouchStore)
    logger = RecordingLogger()
    repository = make_repository(make_engine("production", primary=primary), logger=logger)
    project = await create(repository)
    primary.broken = True

    response = await repository.get_project_workspace(project.id)
    await repository.wait_for_background_tasks()

    assert response.success is True
    assert "last_accessed_update_failed" in logger.events("warning")


@pytest.mark.asyncio
async def test_missing_project_returns_failure(repository):
    response = await repository.get_project_workspace("nope")

    assert response.success is False
    assert response.code == "PROJECT_NOT_FOUND"


@pytest.mark.asyncio
async def test_update_project_workspace_applies_patch_and_invalidates(repository):
    project = await create(repository)
    await repository.get_project_workspace(project.id)

    response = await repository.update_project_workspace(
        project.id, {"title": "Renamed", "status": "in_progress", "metadata": {"genre": "drama"}}
    )

    assert response.success is True
    assert response.data.status == ProjectStatus.IN_PROGRESS
    assert repository.cache.project_key(project.id) not in repository.cache
    reread = await repository.get_project_workspace(project.id)
    assert reread.data.title == "Renamed"
    assert reread.data.metadata["genre"] == "drama"


@pytest.mark.asyncio
async def test_background_access_refresh_never_reverts_a_concurrent_update():
    primary = make_primary(SlowPrimaryStore)
    repository = make_repository(make_engine("production", primary=primary))
    project = await create(repository)

    hit = await repository.get_project_workspace(project.id)
    updated = await repository.update_project_workspace(project.id, {"title": "Renamed"})
    await repository.wait_for_background_tasks()

    assert hit.metadata["cached"] is True
    assert updated.success is True
    stored = await primary.find_by_id("projects", project.id)
    assert stored["title"] == "Renamed"
    assert stored["last_accessed_at"] is not None


@pytest.mark.asyncio
async def test_failed_update_still_invalidates(repository):
    project = await create(repository)
    await repository.update_project_workspace(project.id, {"status": "in_progress"})
    await repository.update_project_workspace(project.id, {"status": "completed"})
    await repository.get_project_workspace(project.id)

    response = await repository.update_project_workspace(project.id, {"status": "draft"})

    assert response.success is False
    assert response.code == "VALIDATION_ERROR"
    assert repository.cache.project_key(project.id) not in repository.cache


@pytest.mark.asyncio
async def test_failed_update_under_required_restores_previous_row(primary_store, clock, ids):
    repository = make_repository(make_engine("production", primary=primary_store), clock=clock, ids=ids)
    project = await create(repository)
    repository.engine.secondary = FailingSecondaryStore()

    response = await repository.update_project_workspace(project.id, {"title": "Renamed"})

    assert response.success is False
    stored = await primary_store.find_by_id("projects", project.id)
    assert stored["title"] == "Demo"


@pytest.mark.asyncio
async def test_save_story_links_stage_and_tag(repository, secondary_store):
    project = await create(repository)

    response = await repository.save_story_to_project(
        project.id, StoryInput(title="Opening", content="Once", genre="drama")
    )

    assert response.success is True
    ack = response.data
    assert set(ack) == {"entity_id", "project_id", "saved"}
    assert ack["saved"] is True
    workspace = (await repository.get_project_workspace(project.id)).data
    assert workspace.pipeline["story"] == {"id": ack["entity_id"], "completed": True}
    assert "story" in workspace.tags
    document = await secondary_store.find_by_id("stories", ack["entity_id"])
    assert document["content"] == "Once"
    assert (await secondary_store.find_by_id("projects", project.id))["tags"] == ["story"]


@pytest.mark.asyncio
async def test_save_each_stage(repository):
    project = await create(repository)

    scenario = await repository.save_scenario_to_project(project.id, {"title": "Act", "content": "Scene"})
    prompt = await repository.save_prompt_to_project(
        project.id, {"final_prompt": "wide shot", "keywords": ["sunset"]}
    )
    video = await repository.save_video_to_project(project.id, {"prompt": "wide shot", "job_id": "job-9"})

    assert scenario.success and prompt.success and video.success
    assert video.data["job_id"] == "job-9"
    workspace = (await repository.get_project_workspace(project.id)).data
    assert workspace.tags == {"scenario", "prompt", "video"}
    assert workspace.pipeline["video"]["job_id"] == "job-9"
    assert workspace.pipeline["video"]["completed"] is False
    assert workspace.pipeline["prompt"]["completed"] is True


@pytest.mark.asyncio
async def test_save_stage_for_missing_project_fails(repository):
    response = await repository.save_story_to_project("missing", {"title": "x"})

    assert response.success is False
    assert response.code == "PROJECT_NOT_FOUND"


@pytest.mark.asyncio
async def test_stage_save_invalidates_cached_workspace(repository):
    project = await create(repository)
    await repository.get_project_workspace(project.id)

    await repository.save_story_to_project(project.id, {"title": "x"})

    assert repository.cache.project_key(project.id) not in repository.cache


@pytest.mark.asyncio
async def test_pipeline_transaction_stamps_rows(repository, primary_store):
    project = await create(repository)

    response = await repository.save_pipeline_transaction(
        project.id,
        {"story": {"title": "S", "content": "c"}, "scenario": {"title": "Sc", "content": "c"}},
    )

    assert response.success is True
    data = response.data
    story = await primary_store.find_by_id("stories", data["story_id"])
    assert story["transaction_id"] == data["transaction_id"]
    workspace = (await repository.get_project_workspace(project.id)).data
    assert workspace.pipeline["scenario"]["id"] == data["scenario_id"]

    recovered = await repository.recover_partial_transaction(data["transaction_id"])
    assert recovered.data["recovered"] is True
    assert set(recovered.data["partial_data"]) == {"story", "scenario"}


@pytest.mark.asyncio
async def test_pipeline_transaction_rolls_back_partial_writes(repository, primary_store):
    project = await create(repository)
    repository.engine.secondary = FailingSecondaryStore(collections={"prompts", "projects"})

    response = await repository.save_pipeline_transaction(
        project.id,
        {"story": {"title": "S"}, "prompt": {"final_prompt": "p"}},
    )

    assert response.success is False
    transaction_id = response.metadata["transaction_id"]
    recovered = await repository.recover_partial_transaction(transaction_id)
    assert recovered.data == {"recovered": False, "partial_data": {}}
    rows, total = await primary_store.find_many("stories", {"project_id": project.id})
    assert total == 0
    workspace = (await repository.get_project_workspace(project.id)).data
    assert workspace.pipeline["story"]["id"] is None


@pytest.mark.asyncio
async def test_story_rejected_by_its_collection_is_rolled_back(repository, primary_store):
    project = await create(repository)
    repository.engine.secondary = FailingSecondaryStore(collections={"stories"})

    response = await repository.save_story_to_project(project.id, {"title": "S"})

    assert response.success is False
    assert response.code == "DUAL_STORAGE_ERROR"
    _, total = await primary_store.find_many("stories", {"project_id": project.id})
    assert total == 0
    workspace = (await repository.get_project_workspace(project.id)).data
    assert workspace.pipeline["story"]["id"] is None


@pytest.mark.asyncio
async def test_pipeline_transaction_fails_when_one_entity_collection_fails(repository, primary_store):
    project = await create(repository)
    repository.engine.secondary = FailingSecondaryStore(collections={"scenarios"})

    response = await repository.save_pipeline_transaction(
        project.id,
        {"story": {"title": "S"}, "scenario": {"title": "Sc"}},
    )

    assert response.success is False
    for table in ("stories", "scenarios"):
        _, total = await primary_store.find_many(table, {"project_id": project.id})
        assert total == 0


@pytest.mark.asyncio
async def test_pipeline_transaction_rollback_failure_is_critical(clock):
    primary = make_primary(UndeletablePrimaryStore)
    logger = RecordingLogger()
    repository = make_repository(make_engine("production", primary=primary, clock=clock), logger=logger)
    project = await create(repository)
    repository.engine.secondary = FailingSecondaryStore(collections={"prompts", "projects"})

    response = await repository.save_pipeline_transaction(
        project.id,
        {"story": {"title": "S"}, "prompt": {"final_prompt": "p"}},
    )

    assert response.success is False
    critical = logger.find("pipeline_transaction_rollback_failed")
    assert critical and critical[0]["requires_manual_intervention"] is True


@pytest.mark.asyncio
async def test_empty_pipeline_transaction_is_rejected(repository):
    project = await create(repository)

    response = await repository.save_pipeline_transaction(project.id, {})

    assert response.success is False
    assert response.code == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_recover_partial_transaction_never_raises():
    repository = make_repository(make_engine("production", primary=make_primary(BrokenQueryStore)))

    response = await repository.recover_partial_transaction("tx-1")

    assert response.success is True
    assert response.data == {"recovered": False, "partial_data": {}}


@pytest.mark.asyncio
async def test_add_collaborator(repository):
    project = await create(repository)

    response = await repository.add_collaborator(project.id, {"user_id": "u2", "role": "viewer"})

    assert response.success is True
    assert response.data["permissions"] == ["read"]
    duplicate = await repository.add_collaborator(project.id, {"user_id": "u2"})
    assert duplicate.success is False
    second_owner = await repository.add_collaborator(project.id, {"user_id": "u3", "role": "owner"})
    assert second_owner.success is False
    workspace = (await repository.get_project_workspace(project.id)).data
    assert [c.user_id for c in workspace.collaborators] == ["u1", "u2"]


@pytest.mark.asyncio
async def test_create_share_link(repository, primary_store):
    project = await create(repository)

    response = await repository.create_share_link(project.id, {"permissions": ["read"], "password": "secret"})

    assert response.success is True
    token = response.data["share_token"]
    assert response.data["share_url"] == f"https://videoplanet.app/share/{token}"
    row = await primary_store.find_by_id("share_links", token)
    assert row["project_id"] == project.id
    assert row["password_hash"] != "secret"
    assert len(row["password_hash"]) == 64


@pytest.mark.asyncio
async def test_create_version_bumps_patch(repository):
    project = await create(repository)

    first = await repository.create_version(project.id, {"description": "v1", "created_by": "u1"})
    second = await repository.create_version(project.id, {"description": "v2", "created_by": "u1"})

    assert first.data["version"] == "1.0.0"
    assert second.data["version"] == "1.0.1"
    assert repository.cache.project_key(project.id) not in repository.cache


@pytest.mark.asyncio
async def test_check_and_repair_data_consistency(repository, secondary_store):
    project = await create(repository)
    await repository.save_story_to_project(project.id, {"title": "S"})
    workspace = (await repository.get_project_workspace(project.id)).data
    await secondary_store.delete("stories", workspace.pipeline["story"]["id"])

    check = await repository.check_data_consistency(project.id)

    assert check.data["is_consistent"] is False
    assert check.data["reports"]["project"].is_consistent is True
    assert check.data["inconsistencies"][0]["kind"] == "story"

    repair = await repository.repair_data_inconsistency(project.id)
    assert repair.data == {"repaired": 1}
    check = await repository.check_data_consistency(project.id)
    assert check.data["is_consistent"] is True


@pytest.mark.asyncio
async def test_delete_project_requires_cascade_with_entities(repository, primary_store):
    project = await create(repository)
    await repository.save_story_to_project(project.id, {"title": "S"})

    rejected = await repository.delete_project(project.id)
    assert rejected.success is False
    assert rejected.code == "VALIDATION_ERROR"

    deleted = await repository.delete_project(project.id, cascade=True)
    assert deleted.success is True
    assert len(deleted.data["entities_removed"]) == 1
    assert await primary_store.find_by_id("projects", project.id) is None
    _, total = await primary_store.find_many("stories", {"project_id": project.id})
    assert total == 0


@pytest.mark.asyncio
async def test_complete_pipeline_stage(repository, primary_store):
    project = await create(repository)
    saved = await repository.save_scenario_to_project(project.id, {"title": "Sc", "status": "pending"})
    scenario_id = saved.data["entity_id"]
    assert (await repository.get_project_workspace(project.id)).data.pipeline["scenario"]["completed"] is False

    response = await repository.complete_pipeline_stage(project.id, "scenario", scenario_id)

    assert response.success is True
    assert response.data == {
        "entity_id": scenario_id,
        "project_id": project.id,
        "status": "completed",
        "completed": True,
    }
    assert (await primary_store.find_by_id("scenarios", scenario_id))["status"] == "completed"
    workspace = (await repository.get_project_workspace(project.id)).data
    assert workspace.pipeline["scenario"] == {"id": scenario_id, "completed": True}

    again = await repository.complete_pipeline_stage(project.id, "scenario", scenario_id)
    assert again.success is True


@pytest.mark.asyncio
async def test_complete_pipeline_stage_rejects_videos_and_unknown_entities(repository):
    project = await create(repository)
    video = await repository.save_video_to_project(project.id, {"prompt": "p"})

    as_stage = await repository.complete_pipeline_stage(project.id, "video", video.data["entity_id"])
    missing = await repository.complete_pipeline_stage(project.id, "story", "nope")

    assert as_stage.code == "VALIDATION_ERROR"
    assert missing.code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_update_video_generation_follows_job_lifecycle(repository, primary_store):
    project = await create(repository)
    video_id = (await repository.save_video_to_project(project.id, {"prompt": "p"})).data["entity_id"]

    processing = await repository.update_video_generation(
        project.id, video_id, {"status": "processing", "job_id": "job-1"}
    )
    completed = await repository.update_video_generation(
        project.id, video_id, {"status": "completed", "video_url": "https://cdn.example/v.mp4", "duration": 8}
    )

    assert processing.data["status"] == "processing"
    assert completed.data["completed"] is True
    row = await primary_store.find_by_id("video_generations", video_id)
    assert (row["status"], row["job_id"], row["duration"]) == ("completed", "job-1", 8)
    workspace = (await repository.get_project_workspace(project.id)).data
    assert workspace.pipeline["video"] == {
        "id": video_id,
        "completed": True,
        "job_id": "job-1",
        "video_url": "https://cdn.example/v.mp4",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "update, field",
    [
        ({"status": "completed", "video_url": "https://cdn.example/v.mp4"}, "status"),
        ({"duration": -1}, "duration"),
    ],
)
async def test_update_video_generation_rejects_invalid_changes(repository, primary_store, update, field):
    project = await create(repository)
    video_id = (await repository.save_video_to_project(project.id, {"prompt": "p"})).data["entity_id"]

    response = await repository.update_video_generation(project.id, video_id, update)

    assert response.success is False
    assert response.code == "VALIDATION_ERROR"
    assert field in response.error
    assert (await primary_store.find_by_id("video_generations", video_id))["status"] == "queued"


@pytest.mark.asyncio
async def test_completed_video_needs_a_url(repository):
    project = await create(repository)
    video_id = (await repository.save_video_to_project(project.id, {"prompt": "p"})).data["entity_id"]
    await repository.update_video_generation(project.id, video_id, {"status": "processing"})

    response = await repository.update_video_generation(project.id, video_id, {"status": "completed"})

    assert response.code == "VALIDATION_ERROR"
    assert "video_url" in response.error


@pytest.mark.asyncio
async def test_video_update_rejected_by_secondary_restores_previous_row(repository, primary_store):
    project = await create(repository)
    video_id = (await repository.save_video_to_project(project.id, {"prompt": "p"})).data["entity_id"]
    repository.engine.secondary = FailingSecondaryStore(collections={"video_generations"})

    response = await repository.update_video_generation(project.id, video_id, {"status": "processing"})

    assert response.success is False
    assert response.code == "DUAL_STORAGE_ERROR"
    assert (await primary_store.find_by_id("video_generations", video_id))["status"] == "queued"


@pytest.mark.asyncio
async def test_delete_pipeline_entity_keeps_tag(repository):
    project = await create(repository)
    saved = await repository.save_story_to_project(project.id, {"title": "S"})

    response = await repository.delete_pipeline_entity(project.id, "story", saved.data["entity_id"])

    assert response.success is True
    workspace = (await repository.get_project_workspace(project.id)).data
    assert workspace.pipeline["story"] == {"id": None, "completed": False}
    assert "story" in workspace.tags


@pytest.mark.asyncio
async def test_retry_operation_bounds_attempts_and_reraises_last_error(repository):
    errors = [SecondaryStoreError(f"fail {n}", code="X") for n in range(5)]
    calls = []

    async def flaky():
        calls.append(1)
        raise errors[len(calls) - 1]

    with pytest.raises(SecondaryStoreError) as excinfo:
        await repository.retry_operation(flaky, attempts=3)

    assert len(calls) == 3
    assert excinfo.value is errors[2]


@pytest.mark.asyncio
async def test_retry_operation_does_not_retry_validation_errors(repository):
    calls = []

    async def invalid():
        calls.append(1)
        raise ValidationError("bad", field="title")

    with pytest.raises(ValidationError):
        await repository.retry_operation(invalid)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_cache_stats_and_clear():
    repository = make_repository(
        make_engine("test", secondary=InMemorySecondaryStore()),
        ids=SequentialIds("p"),
    )
    project = await create(repository)
    await repository.get_project_workspace(project.id)
    await repository.wait_for_background_tasks()

    stats = repository.get_cache_stats()
    assert stats["size"] == 1
    assert stats["hits"] == 1

    repository.clear_cache()
    assert repository.get_cache_stats()["size"] == 0
