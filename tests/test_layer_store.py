"""Tests for the single-layer store."""

from __future__ import annotations

import re
import shutil
from pathlib import Path

import pytest
import yaml

from decision_os.errors import NoActiveCaseError, NotFoundError, ValidationFailure
from decision_os.store.layer import LayerStore


@pytest.fixture
def root(tmp_path: Path) -> Path:
    return tmp_path / "proj" / ".decision-os"


@pytest.fixture
def layer(root: Path) -> LayerStore:
    s = LayerStore(root)
    s.initialize()
    return s


def _reopen(root: Path) -> LayerStore:
    s = LayerStore(root)
    s.initialize()
    return s


def _log(layer: LayerStore, tags: list[str] | None = None, **kwargs) -> str:
    event = layer.log_pressure(
        expected="API returns 200",
        actual="API returns 403",
        adaptation="added auth header",
        remember="auth is required everywhere",
        context_tags=tags,
        **kwargs,
    )
    return event.id


class TestInitialize:
    def test_creates_directory_structure(self, layer: LayerStore):
        assert (layer.root / "cases").is_dir()
        assert (layer.root / "defaults").is_dir()
        assert layer.config_path.exists()

    def test_default_config(self, layer: LayerStore):
        config = layer.get_config()
        assert config.project == "proj"
        assert config.scope == "PROJECT"
        assert config.version == 1

    def test_global_scope_default_config(self, tmp_path: Path):
        g = LayerStore(tmp_path / ".decision-os", scope="GLOBAL")
        g.initialize()
        config = g.get_config()
        assert config.project == "_global"
        assert config.scope == "GLOBAL"

    def test_existing_config_untouched(self, root: Path):
        root.mkdir(parents=True)
        (root / "config.yaml").write_text("project: tiles\nversion: 1\n", encoding="utf-8")
        s = _reopen(root)
        assert s.get_config().project == "tiles"

    def test_idempotent(self, layer: LayerStore):
        layer.create_case("first")
        layer.initialize()
        layer.initialize()
        assert layer.create_case("second").id.startswith("0002-")

    def test_corrupt_config_raises(self, layer: LayerStore):
        layer.config_path.write_text("version: 1\n", encoding="utf-8")
        with pytest.raises(ValidationFailure) as exc:
            layer.get_config()
        assert exc.value.issues[0][0] == "project"

    def test_update_config_keeps_extensions(self, layer: LayerStore):
        layer.update_config(project="tiles", extensions={"gis": True})
        data = yaml.safe_load(layer.config_path.read_text(encoding="utf-8"))
        assert data["project"] == "tiles"
        assert data["extensions"] == {"gis": True}


class TestActiveCase:
    def test_create_sets_active_and_marker(self, layer: LayerStore):
        case = layer.create_case("Add tile caching")
        assert layer.active_case == case.id
        assert layer.active_case_path.read_text(encoding="utf-8") == case.id

    def test_restored_on_reinitialize(self, layer: LayerStore, root: Path):
        case = layer.create_case("Persist me")
        assert _reopen(root).active_case == case.id

    def test_clear_removes_marker(self, layer: LayerStore):
        layer.create_case("temp")
        layer.set_active_case(None)
        assert layer.active_case is None
        assert not layer.active_case_path.exists()

    def test_stale_marker_cleared(self, layer: LayerStore, root: Path):
        case = layer.create_case("Will vanish")
        shutil.rmtree(root / "cases" / case.id)
        reopened = _reopen(root)
        assert reopened.active_case is None
        assert not reopened.active_case_path.exists()

    def test_set_unknown_case_raises(self, layer: LayerStore):
        with pytest.raises(NotFoundError):
            layer.set_active_case("9999-nope")

    def test_switch_active_case(self, layer: LayerStore):
        first = layer.create_case("first")
        layer.create_case("second")
        layer.set_active_case(first.id)
        assert layer.active_case_path.read_text(encoding="utf-8") == first.id


class TestCases:
    def test_id_format(self, layer: LayerStore):
        case = layer.create_case("Add tile caching")
        assert case.id == "0001-add-tile-caching"
        assert re.match(r"^\d{4}-[a-z0-9-]+$", case.id)
        assert case.status == "ACTIVE"

    def test_ids_strictly_increasing(self, layer: LayerStore):
        ids = [layer.create_case(f"case {i}").id for i in range(3)]
        seqs = [int(i.split("-")[0]) for i in ids]
        assert seqs == [1, 2, 3]

    def test_slug_rules(self, layer: LayerStore):
        assert layer._slugify("  Hello,   World!! ") == "hello-world"
        assert layer._slugify("Fix  OAuth2 / SSO -- flow") == "fix-oauth2-sso-flow"
        assert len(layer._slugify("x" * 80)) == 50
        assert layer._slugify("!!!") == "untitled"

    def test_sequence_widens_past_9999(self, layer: LayerStore):
        layer._next_case = 10000
        assert layer.create_case("big").id == "10000-big"

    def test_blank_title_rejected(self, layer: LayerStore):
        with pytest.raises(ValidationFailure):
            layer.create_case("   ")

    def test_goal_defaults_to_title(self, layer: LayerStore):
        assert layer.create_case("Ship it", goal="  ").goal == "Ship it"
        assert layer.create_case("Ship it again", goal="done").goal == "done"

    def test_signals_and_touched_areas(self, layer: LayerStore):
        case = layer.create_case(
            "Migrate schema",
            signals={"risk_level": "HIGH", "affected_surface": ["DATA_MODEL", "GIS_SPATIAL"]},
            touched_areas=["backend"],
        )
        stored = layer.get_case(case.id)
        assert stored.signals.context.affected_surface == ["DATA_MODEL", "GIS_SPATIAL"]
        assert stored.context.touched_areas == ["backend"]

    def test_creates_empty_pressures_file(self, layer: LayerStore):
        case = layer.create_case("empty")
        data = yaml.safe_load((layer.root / "cases" / case.id / "pressures.yaml").read_text())
        assert data == {"events": []}

    def test_list_sorted(self, layer: LayerStore):
        layer.create_case("b case")
        layer.create_case("a case")
        assert [c.id for c in layer.list_cases()] == ["0001-b-case", "0002-a-case"]

    def test_list_skips_corrupt(self, layer: LayerStore):
        layer.create_case("good")
        bad = layer.create_case("bad")
        (layer.root / "cases" / bad.id / "case.yaml").write_text("title: [", encoding="utf-8")
        assert [c.id for c in layer.list_cases()] == ["0001-good"]

    def test_counter_seeded_from_disk(self, layer: LayerStore, root: Path):
        layer.create_case("one")
        layer.create_case("two")
        assert _reopen(root).create_case("three").id == "0003-three"

    def test_forgotten_case_number_not_reused(self, layer: LayerStore, root: Path):
        layer.create_case("one")
        newest = layer.create_case("two")
        assert layer.close_case(newest.id, regret=0).forgotten is True
        assert layer.get_config().last_case_seq == 2
        assert _reopen(root).create_case("three").id == "0003-three"

    def test_get_missing_case(self, layer: LayerStore):
        assert layer.get_case("0042-missing") is None

    def test_update_missing_case(self, layer: LayerStore):
        with pytest.raises(NotFoundError):
            layer.update_case("0042-missing", goal="x")


class TestCloseCase:
    def test_regret_one_keeps_case(self, layer: LayerStore):
        case = layer.create_case("Add tile caching")
        assert _log(layer) == "PE-0001"
        result = layer.close_case(case.id, regret=1)
        assert result.forgotten is False
        assert result.case.status == "COMPLETED"
        assert result.case.completed_at
        assert result.case.signals.outcome.regret == "1"
        assert layer.get_case(case.id).status == "COMPLETED"

    def test_clean_task_forgotten(self, layer: LayerStore):
        case = layer.create_case("clean task")
        result = layer.close_case(case.id, regret=0)
        assert result.forgotten is True
        assert not (layer.root / "cases" / case.id).exists()
        assert layer.active_case is None
        assert not layer.active_case_path.exists()

    def test_all_promoted_forgotten(self, layer: LayerStore):
        case = layer.create_case("promoted")
        pe = _log(layer, tags=["AUTH"])
        layer.promote_to_foundation("Send auth", "Always send auth", ["AUTH"], [pe])
        assert layer.close_case(case.id, regret="0").forgotten is True
        assert layer.get_case(case.id) is None

    def test_unpromoted_pressure_keeps_case(self, layer: LayerStore):
        case = layer.create_case("surprising")
        _log(layer)
        result = layer.close_case(case.id, regret="0")
        assert result.forgotten is False
        assert layer.get_case(case.id) is not None

    @pytest.mark.parametrize("regret", ["1", "2", "3", 2])
    def test_nonzero_regret_never_forgets(self, layer: LayerStore, regret):
        case = layer.create_case("regretful")
        assert layer.close_case(case.id, regret=regret).forgotten is False
        assert layer.get_case(case.id) is not None

    def test_outcome_fields_merged(self, layer: LayerStore):
        case = layer.create_case("noted", signals={"risk_level": "LOW"})
        result = layer.close_case(case.id, regret=2, notes="too slow", regressions="MINOR")
        assert result.case.signals.context.risk_level == "LOW"
        assert result.case.signals.outcome.notes == "too slow"
        assert result.case.signals.outcome.regressions == "MINOR"

    def test_closing_other_case_keeps_pointer(self, layer: LayerStore):
        first = layer.create_case("first")
        second = layer.create_case("second")
        layer.close_case(first.id, regret=1)
        assert layer.active_case == second.id

    def test_unknown_case(self, layer: LayerStore):
        with pytest.raises(NotFoundError):
            layer.close_case("0042-missing", regret=1)

    def test_reclose_after_promotion_forgets(self, layer: LayerStore):
        case = layer.create_case("blocked")
        pe = _log(layer, tags=["AUTH"])
        assert layer.close_case(case.id, regret=0).forgotten is False
        assert len(layer.suggest_review().blocking_forgetting) == 1

        layer.promote_to_foundation("Send auth", "Always send auth", ["AUTH"], [pe])
        assert layer.suggest_review().blocking_forgetting == []

        result = layer.close_case(case.id, regret=0)
        assert result.forgotten is True
        assert layer.get_case(case.id) is None

    def test_reclose_updates_outcome(self, layer: LayerStore):
        case = layer.create_case("twice")
        layer.close_case(case.id, regret=1)
        result = layer.close_case(case.id, regret=2, notes="worse than thought")
        assert result.forgotten is False
        assert result.case.status == "COMPLETED"
        assert result.case.signals.outcome.regret == "2"

    def test_invalid_regret(self, layer: LayerStore):
        case = layer.create_case("bad regret")
        with pytest.raises(ValidationFailure):
            layer.close_case(case.id, regret=7)


class TestPressureEvents:
    def test_logs_to_active_case(self, layer: LayerStore):
        case = layer.create_case("active")
        pe = _log(layer, tags=["AUTH"])
        events = layer.get_pressure_events(case.id)
        assert [e.id for e in events] == [pe]
        assert events[0].case_id == case.id
        assert events[0].context_tags == ["AUTH"]

    def test_back_reference_list(self, layer: LayerStore):
        case = layer.create_case("refs")
        first = _log(layer)
        second = _log(layer)
        assert layer.get_case(case.id).pressure_events == [first, second]

    def test_no_active_case(self, layer: LayerStore):
        with pytest.raises(NoActiveCaseError):
            _log(layer)

    def test_explicit_unknown_case(self, layer: LayerStore):
        with pytest.raises(NotFoundError):
            _log(layer, case_id="0042-missing")

    def test_explicit_case_over_active(self, layer: LayerStore):
        first = layer.create_case("first")
        layer.create_case("second")
        _log(layer, case_id=first.id)
        assert len(layer.get_pressure_events(first.id)) == 1

    def test_sequence_independent_of_cases(self, layer: LayerStore):
        layer.create_case("a")
        _log(layer)
        layer.create_case("b")
        assert _log(layer) == "PE-0002"

    def test_counter_seeded_from_disk(self, layer: LayerStore, root: Path):
        layer.create_case("a")
        _log(layer)
        _log(layer)
        reopened = _reopen(root)
        assert _log(reopened) == "PE-0003"

    def test_promoted_id_not_reused_after_forget(self, layer: LayerStore, root: Path):
        case = layer.create_case("gone")
        pe = _log(layer)
        layer.promote_to_foundation("Keep", "Always keep", ["X"], [pe])
        assert layer.close_case(case.id, regret=0).forgotten is True
        reopened = _reopen(root)
        reopened.create_case("next")
        assert _log(reopened) == "PE-0002"

    def test_search_case_insensitive(self, layer: LayerStore):
        layer.create_case("search")
        layer.log_pressure(
            expected="Tiles load fast",
            actual="Tiles took 9s",
            adaptation="added cache",
            remember="cache tiles",
            context_tags=["PERFORMANCE"],
        )
        _log(layer)
        assert len(layer.search_pressures("TILES")) == 1
        assert len(layer.search_pressures("perform")) == 1
        assert len(layer.search_pressures("api returns")) == 1
        assert layer.search_pressures("nothing-like-this") == []

    def test_search_across_cases(self, layer: LayerStore):
        layer.create_case("one")
        _log(layer)
        layer.create_case("two")
        _log(layer)
        assert len(layer.search_pressures("403")) == 2


class TestFoundations:
    def test_promote(self, layer: LayerStore):
        layer.create_case("src")
        pe = _log(layer)
        f = layer.promote_to_foundation(
            "Send auth",
            "Always send auth headers",
            ["AUTH"],
            [pe],
            origin_project="proj",
        )
        assert f.id == "F-0001"
        assert f.confidence == 1
        assert f.scope == "PROJECT"
        assert f.validated_in == ["proj"]
        assert [x.id for x in layer.get_foundations()] == ["F-0001"]

    def test_global_prefix(self, layer: LayerStore):
        f = layer.promote_to_foundation("G", "x", ["T"], ["PE-0001"], scope="GLOBAL")
        assert f.id == "GF-0001"
        assert layer.promote_to_foundation("P", "x", ["T"], ["PE-0001"]).id == "F-0002"

    def test_marks_pressure_promoted(self, layer: LayerStore):
        case = layer.create_case("src")
        pe1 = _log(layer)
        pe2 = _log(layer)
        f = layer.promote_to_foundation("Send auth", "x", ["AUTH"], [pe1, pe2])
        events = layer.get_pressure_events(case.id)
        assert all(e.promoted_to_foundation == f.id for e in events)

    def test_dangling_source_does_not_raise(self, layer: LayerStore):
        f = layer.promote_to_foundation("Dangling", "x", ["T"], ["PE-0404"])
        assert layer.get_foundation(f.id) is not None

    def test_counter_seeded_from_both_prefixes(self, layer: LayerStore, root: Path):
        layer.promote_to_foundation("a", "x", ["T"], ["PE-0001"])
        layer.promote_to_foundation("b", "x", ["T"], ["PE-0001"], scope="GLOBAL")
        reopened = _reopen(root)
        assert reopened.promote_to_foundation("c", "x", ["T"], ["PE-0001"]).id == "F-0003"

    def test_filter_by_tags(self, layer: LayerStore):
        layer.promote_to_foundation("db", "x", ["DATABASE"], ["PE-0001"])
        layer.promote_to_foundation("ui", "x", ["UI", "CSS"], ["PE-0001"])
        assert [f.title for f in layer.get_foundations(context_tags=["CSS", "NOPE"])] == ["ui"]

    def test_filter_by_min_confidence(self, layer: LayerStore):
        low = layer.promote_to_foundation("low", "x", ["T"], ["PE-0001"])
        high = layer.promote_to_foundation("high", "x", ["T"], ["PE-0001"])
        layer.update_foundation(high.id, confidence=3)
        layer.update_foundation(low.id, confidence=0)
        assert [f.title for f in layer.get_foundations(min_confidence=1)] == ["high"]
        assert len(layer.get_foundations(min_confidence=0)) == 2

    def test_no_file_means_empty(self, layer: LayerStore):
        assert layer.get_foundations() == []

    def test_update(self, layer: LayerStore):
        f = layer.promote_to_foundation("t", "x", ["T"], ["PE-0001"])
        updated = layer.update_foundation(f.id, confidence=2, validated_in=["a", "b"])
        assert updated.confidence == 2
        assert layer.get_foundation(f.id).validated_in == ["a", "b"]

    def test_update_missing(self, layer: LayerStore):
        with pytest.raises(NotFoundError):
            layer.update_foundation("F-0001", confidence=2)
        layer.promote_to_foundation("t", "x", ["T"], ["PE-0001"])
        with pytest.raises(NotFoundError):
            layer.update_foundation("F-0099", confidence=2)

    def test_update_invalid_rejected(self, layer: LayerStore):
        f = layer.promote_to_foundation("t", "x", ["T"], ["PE-0001"])
        with pytest.raises(ValidationFailure):
            layer.update_foundation(f.id, confidence=9)

    def test_remove(self, layer: LayerStore):
        f = layer.promote_to_foundation("t", "x", ["T"], ["PE-0001"])
        assert layer.remove_foundation(f.id) is True
        assert layer.get_foundations() == []
        assert layer.remove_foundation(f.id) is False

    def test_remove_without_file(self, layer: LayerStore):
        assert layer.remove_foundation("F-0001") is False

    def test_corrupt_file_raises(self, layer: LayerStore):
        layer.foundations_path.write_text("foundations:\n  - id: F-0001\n", encoding="utf-8")
        with pytest.raises(ValidationFailure) as exc:
            layer.get_foundations()
        assert any(field.startswith("foundations.0") for field, _ in exc.value.issues)


class TestContext:
    def test_context(self, layer: LayerStore):
        case = layer.create_case("ctx")
        for _ in range(7):
            _log(layer)
        layer.promote_to_foundation("t", "x", ["T"], ["PE-0001"])
        ctx = layer.get_context()
        assert ctx["project"] == "proj"
        assert ctx["active_case"].id == case.id
        assert [e.id for e in ctx["recent_pressures"]] == [f"PE-{i:04d}" for i in range(3, 8)]
        assert len(ctx["relevant_foundations"]) == 1

    def test_context_without_active_case(self, layer: LayerStore):
        ctx = layer.get_context()
        assert ctx["active_case"] is None
        assert ctx["recent_pressures"] == []
