"""Tests for the storage collaborators and settings loading."""

from __future__ import annotations

import json
import threading

import pytest

from conftest import rule_fields

from services.criteria.config_loader import Settings, load_config, load_settings
from services.criteria.errors import DependencyError
from services.criteria.service import build_service, service_from_settings
from services.criteria.store import (
    InMemoryStore,
    JsonFileStore,
    RecordConflict,
    RecordNotFound,
    StoreUnavailable,
)


def _seed(store) -> str:
    procedure = store.insert_procedure(
        {"procedure_number": "DC-1", "procedure_name": "Seed", "effective_date": "2024-01-01"}
    )
    return procedure.id


def _rule(procedure_id: str, **extra):
    return {
        "procedure_id": procedure_id,
        "structure_group": "Jacket",
        "priority_id": "P1",
        "defect_code_id": "CORR",
        "defect_type_id": "PITTING",
        "alert_message": "x",
        **extra,
    }


class TestInMemoryStore:
    def test_ids_are_unique_across_records(self):
        store = InMemoryStore()
        pid = _seed(store)
        rule = store.insert_rule(_rule(pid))
        assert pid != rule.id

    def test_missing_records(self):
        store = InMemoryStore()
        with pytest.raises(RecordNotFound):
            store.get_procedure("1")
        with pytest.raises(RecordNotFound):
            store.insert_rule(_rule("1"))
        with pytest.raises(RecordNotFound):
            store.delete_rule("1")

    def test_revision_check(self):
        store = InMemoryStore()
        pid = _seed(store)
        rule = store.insert_rule(_rule(pid))
        store.patch_rule(rule.id, {"alert_message": "y"}, expected_revision=1)
        with pytest.raises(RecordConflict):
            store.patch_rule(rule.id, {"alert_message": "z"}, expected_revision=1)

    def test_failed_write_leaves_no_partial_state(self):
        store = InMemoryStore()
        pid = _seed(store)
        with pytest.raises(Exception):
            store.insert_rule(_rule(pid, alert_message=None))
        assert store.get_rules(pid) == []
        assert store.insert_rule(_rule(pid)).rule_order == 1

    def test_concurrent_inserts_get_distinct_orders(self):
        store = InMemoryStore()
        pid = _seed(store)

        def worker():
            for _ in range(25):
                store.insert_rule(_rule(pid))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        orders = sorted(r.rule_order for r in store.get_rules(pid))
        assert orders == list(range(1, 101))

    def test_snapshot_restore_keeps_counters(self):
        store = InMemoryStore()
        pid = _seed(store)
        store.insert_rule(_rule(pid))
        doomed = store.insert_rule(_rule(pid))
        store.delete_rule(doomed.id)
        restored = InMemoryStore(store.snapshot())
        rule = restored.insert_rule(_rule(pid))
        assert rule.rule_order == 3
        assert rule.id not in {doomed.id, pid}


class TestJsonFileStore:
    def test_persists_across_instances(self, tmp_path, library_source):
        path = tmp_path / "store.json"
        svc = build_service(JsonFileStore(path), library_source)
        p = svc.procedures.create_procedure({"procedureNumber": "DC-1", "procedureName": "Jacket"})
        rule = svc.rules.create_rule(p.id, rule_fields(thresholdOperator=">", thresholdValue=2))
        assert path.exists()

        reopened = build_service(JsonFileStore(path), library_source)
        assert reopened.rules.get_rule(rule.id) == rule
        assert reopened.rules.create_rule(p.id, rule_fields()).rule_order == 2

    def test_corrupt_file_is_unavailable(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StoreUnavailable):
            JsonFileStore(path)

    def test_write_failure_is_a_dependency_error(self, tmp_path, library_source, monkeypatch):
        store = JsonFileStore(tmp_path / "store.json")
        svc = build_service(store, library_source)

        def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("services.criteria.store.os.replace", broken)
        with pytest.raises(DependencyError):
            svc.procedures.create_procedure({"procedureNumber": "DC-1", "procedureName": "Jacket"})
        assert store.get_procedures() == []

    def test_transaction_rolls_back_every_call(self, tmp_path):
        path = tmp_path / "store.json"
        store = JsonFileStore(path)
        pid = _seed(store)
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert_rule(_rule(pid))
                store.set_active_selection("platform", pid)
                raise RuntimeError("abort")
        assert store.get_rules(pid) == []
        assert store.get_active_selections() == {}

        reopened = JsonFileStore(path)
        assert reopened.get_rules(pid) == []
        assert reopened.insert_rule(_rule(pid)).rule_order == 1

    def test_transaction_commits_nested_calls(self, tmp_path):
        path = tmp_path / "store.json"
        store = JsonFileStore(path)
        pid = _seed(store)
        with store.transaction():
            store.insert_rule(_rule(pid))
            store.insert_rule(_rule(pid))
        assert [r.rule_order for r in JsonFileStore(path).get_rules(pid)] == [1, 2]


class TestSettings:
    def test_missing_default_config_yields_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CRITERIA_CONFIG", raising=False)
        monkeypatch.setattr("services.criteria.config_loader.DEFAULT_CONFIG_PATH", tmp_path / "none.yaml")
        settings = load_settings()
        assert settings.store.backend == "memory"
        assert settings.logging.level == "INFO"

    def test_missing_explicit_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_relative_paths_resolve_against_config(self, tmp_path):
        (tmp_path / "conf").mkdir()
        library = {"items": {"AMLY_COD": [{"lib_id": "CORR", "lib_desc": "Corrosion"}]}, "combos": {}}
        (tmp_path / "library.json").write_text(json.dumps(library), encoding="utf-8")
        config = tmp_path / "conf" / "criteria.yaml"
        config.write_text(
            "logging:\n  level: debug\n"
            "store:\n  backend: json\n  path: ../store.json\n"
            "library:\n  path: ../library.json\n",
            encoding="utf-8",
        )
        settings = load_settings(config)
        assert settings.store.path == str((tmp_path / "store.json").resolve())

        svc = service_from_settings(settings)
        assert isinstance(svc.store, JsonFileStore)
        assert svc.resolver().resolve_label("AMLY_COD", "CORR") == "Corrosion"

    def test_env_var_selects_config(self, tmp_path, monkeypatch):
        config = tmp_path / "alt.yaml"
        config.write_text("api:\n  title: Alt\n", encoding="utf-8")
        monkeypatch.setenv("CRITERIA_CONFIG", str(config))
        assert load_settings().api.title == "Alt"

    def test_json_backend_requires_path(self):
        settings = Settings.model_validate({"store": {"backend": "json"}})
        with pytest.raises(ValueError):
            service_from_settings(settings)
