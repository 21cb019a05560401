"""
Configuration Tests
===================
Dataclass defaults, file/env/override layering and deep copies.
"""

import json
from datetime import datetime, timezone

import pytest
import yaml

from nocturne_migrate.config import (
    BackupOptions,
    ConnectionSettings,
    MigrationEngineConfig,
    RetentionPolicy,
    RetryPolicy,
    StateStoreType,
    load_config,
    parse_datetime,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep the developer's environment and any .env file out of these tests"""
    monkeypatch.chdir(tmp_path)
    for name in ("MONGO_CONNECTION_STRING", "MONGO_DATABASE_NAME", "POSTGRES_CONNECTION_STRING"):
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# Dataclasses
# =============================================================================

class TestConfigDataclasses:
    """Tests for configuration dataclasses"""

    def test_defaults(self):
        config = MigrationEngineConfig()

        assert config.batch_size == 1000
        assert config.max_memory_mb == 512
        assert config.skip_duplicates is True
        assert config.continue_on_error is True
        assert config.backup.create_pre_migration_backup is False
        assert config.rollback.auto_rollback_triggers == ["data_corruption"]
        assert config.recovery.enable_auto_recovery is True

    def test_collections_string_is_split(self):
        config = MigrationEngineConfig(collections="entries, treatments,,profile")
        assert config.collections == ["entries", "treatments", "profile"]

    def test_dates_are_parsed_to_utc(self):
        config = MigrationEngineConfig(start_date="2024-01-01", end_date="2024-02-01T12:00:00Z")

        assert config.start_date == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert config.end_date == datetime(2024, 2, 1, 12, tzinfo=timezone.utc)

    def test_nested_dicts_become_dataclasses(self):
        config = MigrationEngineConfig.from_dict({
            "backup": {"compress": False, "retention_policy": {"max_count": 5}},
            "retry": {"max_retries": 7},
            "unknown_key": "ignored",
        })

        assert isinstance(config.backup, BackupOptions)
        assert config.backup.compress is False
        assert isinstance(config.backup.retention_policy, RetentionPolicy)
        assert config.backup.retention_policy.max_count == 5
        assert config.retry.max_retries == 7

    def test_copy_is_deep(self):
        """Test that copies never share nested option objects"""
        original = MigrationEngineConfig(batch_size=10)
        copied = original.copy(batch_size=20)
        copied.index_optimization.skip_index_creation = True

        assert copied.batch_size == 20
        assert original.batch_size == 10
        assert original.index_optimization.skip_index_creation is False

    def test_to_dict_can_hide_secrets(self):
        config = MigrationEngineConfig(postgres_connection_string="postgresql://u:p@h/db")
        data = config.to_dict(include_secrets=False)

        assert "postgres_connection_string" not in data
        assert "mongo_connection_string" not in data

    def test_retry_policy_rejects_bad_values(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(backoff_multiplier=0.5)

    def test_retry_delays_are_capped(self):
        policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=5.0, backoff_multiplier=2.0)
        assert [policy.delay_for(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_state_store_from_string(self):
        assert StateStoreType.from_string(" Postgres ") == StateStoreType.POSTGRES
        assert StateStoreType.default() == StateStoreType.FILE
        with pytest.raises(ValueError):
            StateStoreType.from_string("redis")

    def test_parse_datetime_passthrough(self):
        assert parse_datetime(None) is None
        assert parse_datetime("") is None
        aware = datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert parse_datetime(aware) == aware


# =============================================================================
# Loading
# =============================================================================

class TestLoadConfig:
    """Tests for load_config layering"""

    def test_environment_supplies_connections(self, monkeypatch):
        monkeypatch.setenv("MONGO_CONNECTION_STRING", "mongodb://localhost:27017/nightscout")
        monkeypatch.setenv("POSTGRES_CONNECTION_STRING", "postgresql://localhost/nocturne")

        config = load_config()

        assert config.mongo_connection_string == "mongodb://localhost:27017/nightscout"
        assert config.mongo_database_name == "nightscout"
        assert config.postgres_connection_string == "postgresql://localhost/nocturne"

    def test_yaml_file_overrides_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("POSTGRES_CONNECTION_STRING", "postgresql://env/db")
        path = tmp_path / "migration.yaml"
        path.write_text(yaml.safe_dump({
            "postgres_connection_string": "postgresql://file/db",
            "batch_size": 250,
            "index_optimization": {"defer_index_creation": True},
        }))

        config = load_config(str(path))

        assert config.postgres_connection_string == "postgresql://file/db"
        assert config.batch_size == 250
        assert config.index_optimization.defer_index_creation is True

    def test_overrides_win_and_none_is_ignored(self, tmp_path):
        path = tmp_path / "migration.json"
        path.write_text(json.dumps({"batch_size": 250, "max_memory_mb": 1024}))

        config = load_config(str(path), batch_size=50, max_memory_mb=None)

        assert config.batch_size == 50
        assert config.max_memory_mb == 1024

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_non_mapping_file_raises(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_connection_settings_from_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MONGO_CONNECTION_STRING", "mongodb://env:27017/envdb")
        settings = ConnectionSettings.from_env(mongo_connection_string="mongodb://cli:27017/clidb")

        assert settings.mongo_connection_string == "mongodb://cli:27017/clidb"
        assert settings.mongo_database_name == "clidb"
