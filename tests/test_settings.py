import pytest

from settings import CleanupSettings, FBTSettings, MAX_BATCH_SIZE, MIN_BATCH_SIZE, clamp_batch_size


def test_defaults():
    settings = FBTSettings()
    assert settings.threshold_percent == 5.0
    assert settings.limit == 4
    assert settings.hide_if_in_cart is True


@pytest.mark.parametrize("kwargs", [{"threshold_percent": -1}, {"threshold_percent": 101}, {"limit": 0}, {"limit": 21}])
def test_out_of_range_values_are_rejected(kwargs):
    with pytest.raises(ValueError):
        FBTSettings(**kwargs)


def test_from_mapping_understands_legacy_keys():
    settings = FBTSettings.from_mapping({"min_order_threshold": "25", "max_products": "6", "hide_if_in_cart": "show"})
    assert settings == FBTSettings(threshold_percent=25.0, limit=6, hide_if_in_cart=False)

    camel = FBTSettings.from_mapping({"thresholdPercent": 10, "hideIfInCart": "hide"})
    assert camel.threshold_percent == 10.0
    assert camel.hide_if_in_cart is True
    assert camel.limit == 4


def test_fingerprint_tracks_output_affecting_settings():
    base = FBTSettings(threshold_percent=5)
    assert base.fingerprint() == FBTSettings(threshold_percent=5.0).fingerprint()
    assert base.fingerprint() != FBTSettings(threshold_percent=6).fingerprint()
    assert base.fingerprint() != FBTSettings(threshold_percent=5, hide_if_in_cart=False).fingerprint()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("FBT_THRESHOLD_PERCENT", "12.5")
    monkeypatch.setenv("FBT_MAX_PRODUCTS", "garbage")
    monkeypatch.setenv("FBT_MIN_PAIR_COUNT", "3")
    assert FBTSettings.from_env().threshold_percent == 12.5
    assert FBTSettings.from_env().limit == 4
    assert CleanupSettings.from_env().min_pair_count == 3


def test_clamp_batch_size():
    assert clamp_batch_size(None, 50) == 50
    assert clamp_batch_size("abc", 50) == 50
    assert clamp_batch_size(1) == MIN_BATCH_SIZE
    assert clamp_batch_size(10_000) == MAX_BATCH_SIZE
    assert clamp_batch_size(-5, 40) == 40
