from __future__ import annotations

import asyncio

import pytest

from patch_sync.core.config import get_settings
from patch_sync.services.repository import (
    PostgresRepository,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)


def _repository(**overrides) -> PostgresRepository:
    params = {
        "database_url": None,
        "min_pool_size": 1,
        "max_pool_size": 2,
        "reconcile_mode": "queue",
        "job_max_attempts": 3,
        "job_retry_base_seconds": 10,
        "job_retry_max_seconds": 60,
    }
    params.update(overrides)
    return PostgresRepository(**params)


def test_retry_delay_grows_exponentially_and_caps() -> None:
    repository = _repository()

    assert repository._compute_retry_delay_seconds(attempt=1) == 10
    assert repository._compute_retry_delay_seconds(attempt=2) == 20
    assert repository._compute_retry_delay_seconds(attempt=3) == 40
    assert repository._compute_retry_delay_seconds(attempt=4) == 60


def test_retry_delay_is_zero_without_base() -> None:
    assert _repository(job_retry_base_seconds=0)._compute_retry_delay_seconds(attempt=3) == 0


def test_unknown_reconcile_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        _repository(reconcile_mode="eventually")


def test_missing_database_url_raises_unavailable() -> None:
    with pytest.raises(RepositoryUnavailableError):
        asyncio.run(_repository().compute_scope("00000000-0000-0000-0000-0000000000aa"))


def test_bulk_sweep_validates_actor_before_touching_database() -> None:
    with pytest.raises(RepositoryValidationError):
        asyncio.run(_repository().reconcile_all(actor_user_id="not-a-uuid"))


def test_hierarchy_write_validates_identifiers_before_touching_database() -> None:
    with pytest.raises(RepositoryValidationError):
        asyncio.run(
            _repository().create_supervision_edge(
                parent_user_id="lead",
                child_user_id="00000000-0000-0000-0000-000000000001",
                start_date=None,
                actor_user_id="00000000-0000-0000-0000-00000000ad01",
            )
        )


def test_provisional_lead_edge_rejects_two_targets() -> None:
    with pytest.raises(RepositoryValidationError):
        asyncio.run(
            _repository().create_provisional_lead_edge(
                draft_lead_pending_user_id="00000000-0000-0000-0000-0000000000bb",
                organiser_user_id="00000000-0000-0000-0000-000000000001",
                organiser_pending_user_id="00000000-0000-0000-0000-000000000003",
                start_date=None,
                actor_user_id="00000000-0000-0000-0000-00000000ad01",
            )
        )


def test_coerce_uuid_normalizes_and_rejects() -> None:
    assert PostgresRepository._coerce_uuid(" 00000000-0000-0000-0000-0000000000AA ") == "00000000-0000-0000-0000-0000000000aa"
    assert PostgresRepository._coerce_uuid("lead") is None
    assert PostgresRepository._coerce_uuid(None) is None


def test_get_repository_reads_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PS_RECONCILE_MODE", "inline")
    monkeypatch.setenv("PS_JOB_MAX_ATTEMPTS", "7")
    get_settings.cache_clear()
    get_repository.cache_clear()
    try:
        repository = get_repository()
        assert repository.reconcile_mode == "inline"
        assert repository.job_max_attempts == 7
    finally:
        get_repository.cache_clear()
        get_settings.cache_clear()
