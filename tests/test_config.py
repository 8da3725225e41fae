import ast
import json
import re
import sys
import tomllib
from pathlib import Path

import pytest
from pydantic import ValidationError

from surfacing_engine.settings import (
    FeedbackConfig,
    ThresholdBand,
    ThresholdConfig,
    UnifiedSettings,
    get_settings,
)

ROOT = Path(__file__).resolve().parents[1]


def test_defaults_match_documented_values() -> None:
    s = UnifiedSettings()
    assert s.retrieval.similarity_floor == pytest.approx(0.45)
    assert s.thresholds.min_threshold == pytest.approx(0.30)
    assert s.thresholds.max_threshold == pytest.approx(0.90)
    assert s.thresholds.band_for("critical").floor == pytest.approx(0.45)
    assert s.thresholds.band_for("unknown") == s.thresholds.band_for("standard")
    assert s.disambiguation.decisive_gap == pytest.approx(0.10)
    assert s.stitch.max_members == 5


def test_profiles() -> None:
    assert UnifiedSettings.for_testing().strict_invariants
    prod = UnifiedSettings.for_production()
    assert not prod.strict_invariants
    assert not prod.api.enable_cors
    assert get_settings("testing").profile == "testing"


def test_settings_are_frozen() -> None:
    s = UnifiedSettings()
    with pytest.raises(ValidationError):
        s.profile = "other"  # type: ignore[misc]


def test_threshold_validation() -> None:
    with pytest.raises(ValidationError):
        ThresholdConfig(min_threshold=0.8, max_threshold=0.5)
    with pytest.raises(ValidationError):
        ThresholdConfig(bands={"critical": ThresholdBand()})


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SURFACING_RETRIEVAL__TOP_K", "7")
    monkeypatch.setenv("SURFACING_CONTEXT__DEPARTMENTS", '["it", "legal"]')
    monkeypatch.setenv("SURFACING_PROFILE", "staging")
    s = UnifiedSettings()
    assert s.retrieval.top_k == 7
    assert s.context.departments == ["it", "legal"]
    assert s.profile == "staging"


def test_env_override_keeps_other_fields(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SURFACING_FEEDBACK__SHARDS", "3")
    s = UnifiedSettings.for_testing()
    assert s.feedback.shards == 3
    assert s.feedback.dedup_window == 1_000


def test_invalid_port_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SURFACING_API__PORT", "80")
    with pytest.raises(ValidationError):
        UnifiedSettings()


def test_roundtrip_file(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    original = UnifiedSettings.for_testing()
    original.save_to_file(path)
    assert json.loads(path.read_text())["profile"] == "testing"
    assert UnifiedSettings.load_from_file(path) == original


def test_summary_hides_pseudonym_key() -> None:
    summary = UnifiedSettings().get_config_summary()
    assert "pseudonym_key" not in summary["monitoring"]
    assert summary["retrieval"]["top_k"] == 20


# Import name -> distribution name where they differ.
DISTRIBUTIONS = {"prometheus_client": "prometheus-client", "sentence_transformers": "sentence-transformers"}


def _declared() -> set[str]:
    project = tomllib.loads((ROOT / "pyproject.toml").read_text(encoding="utf-8"))["project"]
    specs = [*project["dependencies"]]
    for extra in project.get("optional-dependencies", {}).values():
        specs.extend(extra)
    return {re.split(r"[<>=!~\[; ]", spec, maxsplit=1)[0].lower() for spec in specs}


def _imported() -> set[str]:
    names: set[str] = set()
    for path in (ROOT / "surfacing_engine").rglob("*.py"):
        tree = ast.parse(path.read_text(encoding="utf-8"))
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                names.update(alias.name.split(".")[0] for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                names.add(node.module.split(".")[0])
    return names - set(sys.stdlib_module_names) - {"surfacing_engine", "__future__"}


def test_every_third_party_import_is_declared() -> None:
    declared = _declared()
    missing = sorted(
        name for name in _imported() if DISTRIBUTIONS.get(name, name).lower() not in declared
    )
    assert missing == []
    assert "starlette" in declared


def test_feedback_sharding_and_fingerprint_window() -> None:
    cfg = FeedbackConfig()
    assert cfg.shards == 4
    assert cfg.fingerprint_window == 100_000
    with pytest.raises(ValidationError):
        FeedbackConfig(shards=0)
    with pytest.raises(ValidationError):
        FeedbackConfig(fingerprint_window=0)
