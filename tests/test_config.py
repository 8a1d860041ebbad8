from app.config import AttributionStrategy, CommissionBasis, Settings, TransitionPolicy


def test_engine_config_defaults():
    config = Settings(_env_file=None).engine_config()
    assert config.default_commission_rate == 10.0
    assert config.min_payout_threshold == 10.0
    assert config.commission_holding_days == 14
    assert config.transition_policy == TransitionPolicy.STRICT


def test_affiliate_program_settings_from_env(monkeypatch):
    monkeypatch.setenv("AFFIL_DEFAULT_RATE", "12.5")
    monkeypatch.setenv("AFFIL_MIN_PAYOUT", "25")
    monkeypatch.setenv("AFFIL_HOLDING_DAYS", "30")
    monkeypatch.setenv("AFFIL_ATTRIBUTION", "FIRST_CLICK")
    monkeypatch.setenv("AFFIL_BASIS", "pre_discount")
    monkeypatch.setenv("AFFIL_COOKIE_DAYS", "60")

    config = Settings(_env_file=None).engine_config()

    assert config.default_commission_rate == 12.5
    assert config.min_payout_threshold == 25.0
    assert config.commission_holding_days == 30
    assert config.attribution_strategy == AttributionStrategy.FIRST_CLICK
    assert config.commission_basis == CommissionBasis.PRE_DISCOUNT
    assert config.attribution_window_days == 60


def test_postgres_url_is_normalized():
    settings = Settings(_env_file=None, database_url="postgres://u:p@db:5432/songs")
    assert settings.database_url == "postgresql://u:p@db:5432/songs"
