"""
Unit tests for ImportRuntimeSettings (env loading and validation).
"""

import os

import pytest

from bulk_import.coordinator import ImportRuntimeSettings
from bulk_import.errors import FatalConfiguration


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)  # no stray .env
    for key in list(os.environ):
        if key.startswith("BULK_IMPORT_"):
            monkeypatch.delenv(key)


def test_defaults():
    s = ImportRuntimeSettings()
    assert s.batch_size == 100
    assert s.max_concurrent_batches == 4
    assert s.max_in_flight is None
    assert s.min_time_between_batches_ms == 50
    assert s.max_attempts == 6
    assert s.smaller_batch_size == 25
    assert s.max_batch_bytes == 2_000_000
    assert s.max_batch_count == 100
    assert s.min_batch_size_for_merge == 25
    assert s.ru_capacity is None
    assert s.partition_cooldown_ms == 100
    assert s.buffered_bytes_threshold == 1024**3
    assert s.requeue_on_shrink is True
    assert s.effective_queue_capacity == 400


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("BULK_IMPORT_MAX_CONCURRENT_BATCHES", "8")
    monkeypatch.setenv("BULK_IMPORT_RU_CAPACITY", "12000")
    monkeypatch.setenv("BULK_IMPORT_REQUEUE_ON_SHRINK", "false")
    monkeypatch.setenv("BULK_IMPORT_QUEUE_CAPACITY", "64")

    s = ImportRuntimeSettings()
    assert s.max_concurrent_batches == 8
    assert s.ru_capacity == 12000
    assert s.requeue_on_shrink is False
    assert s.effective_queue_capacity == 64


def test_dotenv_file(tmp_path):
    (tmp_path / ".env").write_text("BULK_IMPORT_BATCH_SIZE=250\n")
    assert ImportRuntimeSettings().batch_size == 250


def test_cross_field_validation():
    with pytest.raises(FatalConfiguration):
        ImportRuntimeSettings.load(max_batch_count=10, smaller_batch_size=20)
    with pytest.raises(FatalConfiguration):
        ImportRuntimeSettings.load(max_batch_count=10, min_batch_size_for_merge=11)


def test_invalid_values_surface_as_fatal_configuration():
    with pytest.raises(FatalConfiguration):
        ImportRuntimeSettings.load(max_concurrent_batches=0)
    with pytest.raises(FatalConfiguration):
        ImportRuntimeSettings.load(ru_capacity=-5)


def test_load_applies_overrides():
    s = ImportRuntimeSettings.load(batch_size=10, smaller_batch_size=5)
    assert s.batch_size == 10
    assert s.effective_queue_capacity == 40
