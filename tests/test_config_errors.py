# tests/test_config_errors.py
import pytest

from sigengine.builders.core import SignatureBuilder
from sigengine.builders.policies import liquid_policy
from sigengine.config import EngineConfig, EngineSettings, ReferenceTables, get_config
from sigengine.errors import ErrorCode, FractionalDoseError, SignatureError
from sigengine.types import DoseInput


def test_settings_defaults_and_env_override(monkeypatch):
    """Thresholds come from SIGENGINE_* environment variables when set."""
    assert EngineSettings().large_volume_ml == 1000.0
    monkeypatch.setenv("SIGENGINE_LARGE_VOLUME_ML", "250")
    monkeypatch.setenv("SIGENGINE_STRICT_DISPATCH", "true")
    settings = EngineSettings()
    assert settings.large_volume_ml == 250.0
    assert settings.strict_dispatch is True


def test_injected_settings_change_behavior(amoxicillin_suspension):
    config = EngineConfig(settings=EngineSettings(large_volume_ml=100))
    builder = SignatureBuilder(amoxicillin_suspension, liquid_policy(config), config)
    builder.add_dose(DoseInput(150, "mL"))
    assert [a.code for a in builder.warnings] == ["LARGE_VOLUME"]


def test_reference_tables_are_read_only():
    tables = ReferenceTables()
    with pytest.raises(TypeError):
        tables.route_codes["oral"] = ("0", "Nothing")
    assert tables.canonical_route("by mouth") == "oral"
    assert tables.canonical_route("IM") == "intramuscular"
    assert tables.canonical_route("through the looking glass") is None
    assert tables.has_form("Tablets, film coated", tables.solid_forms)
    assert not tables.has_form("Tabletop gel", tables.solid_forms)


def test_default_config_is_cached():
    assert get_config() is get_config()


def test_error_shape():
    err = FractionalDoseError("Fractional dose 1.5 not allowed for unscored tablet")
    assert isinstance(err, SignatureError) and isinstance(err, ValueError)
    assert str(err) == "[DOSE_003] Fractional dose 1.5 not allowed for unscored tablet"
    assert err.to_dict()["error_name"] == ErrorCode.DOSE_FRACTION_NOT_ALLOWED.name
