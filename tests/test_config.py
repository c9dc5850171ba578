import pytest

from config import Config, ConfigSnapshot, MIN_REFRESH_INTERVAL_SECONDS

TUNABLES = [
    "FEED_URL", "FEED_AUTH_TOKEN", "REFRESH_INTERVAL_SECONDS", "CACHE_SIZE", "INITIAL_LOAD_DAYS",
    "INCREMENTAL_HOURS", "INCREMENTAL_ENABLED", "EPSILON", "DIVERSITY_HALF_LIFE", "DISPLAY_MIN_SECONDS",
    "DISPLAY_MAX_SECONDS", "DEBUG_LOG", "DEBUG_LOG_PATH", "ACTUALIZE_URL", "ACTUALIZE_FEED_IDS",
    "CACHE_PATH", "DATA_PATH", "REDECAY_WEIGHTS", "SKIP_UNOPENABLE", "SECRETS_FILE",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in TUNABLES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TICKER_CONFIG_PATH", str(tmp_path / "ticker.yaml"))
    monkeypatch.setenv("DATA_PATH", str(tmp_path))
    return monkeypatch


def test_defaults(clean_env, tmp_path):
    snap = Config().snapshot()

    assert snap.feed_url is None
    assert snap.refresh_interval == 300
    assert snap.cache_size == 1000
    assert snap.initial_load_days == 30
    assert snap.incremental_hours == 6
    assert snap.incremental_enabled is True
    assert snap.epsilon == pytest.approx(0.15)
    assert snap.diversity_half_life == pytest.approx(1200)
    assert (snap.display_min, snap.display_max) == (6, 15)
    assert snap.avg_display_time == pytest.approx(10.5)
    assert snap.debug_log is False
    assert snap.cache_path == str(tmp_path / "feed-cache.json")


def test_non_http_feed_url_is_dropped(clean_env):
    clean_env.setenv("FEED_URL", "ftp://example.com/feed")

    assert Config().snapshot().feed_url is None


def test_valid_feed_url_is_kept(clean_env):
    clean_env.setenv("FEED_URL", " https://example.com/feed ")

    assert Config().snapshot().feed_url == "https://example.com/feed"


def test_refresh_interval_has_a_floor(clean_env):
    clean_env.setenv("REFRESH_INTERVAL_SECONDS", "5")

    assert Config().snapshot().refresh_interval == MIN_REFRESH_INTERVAL_SECONDS


@pytest.mark.parametrize("raw", ["1.5", "abc", "-0.2"])
def test_invalid_epsilon_falls_back_to_default(clean_env, raw):
    clean_env.setenv("EPSILON", raw)

    assert Config().snapshot().epsilon == pytest.approx(0.15)


def test_invalid_cache_size_falls_back_to_default(clean_env):
    clean_env.setenv("CACHE_SIZE", "0")

    assert Config().snapshot().cache_size == 1000


def test_inverted_display_bounds_are_swapped(clean_env):
    clean_env.setenv("DISPLAY_MIN_SECONDS", "20")
    clean_env.setenv("DISPLAY_MAX_SECONDS", "5")

    snap = Config().snapshot()

    assert (snap.display_min, snap.display_max) == (5, 20)


def test_actualize_feed_ids_are_split(clean_env):
    clean_env.setenv("ACTUALIZE_FEED_IDS", "12, 15,,  7 ")

    assert Config().snapshot().actualize_feed_ids == ("12", "15", "7")


def test_settings_file_overrides_environment(clean_env, tmp_path):
    clean_env.setenv("EPSILON", "0.3")
    (tmp_path / "ticker.yaml").write_text(
        "feed:\n"
        "  url: https://reader.example/stream\n"
        "  actualize_feed_ids: [1, 2]\n"
        "selection:\n"
        "  epsilon: 0.05\n"
        "  redecay_weights: true\n"
        "display:\n"
        "  min_seconds: 4\n"
        "debug:\n"
        "  enabled: yes\n",
        encoding="utf-8",
    )

    snap = Config().snapshot()

    assert snap.feed_url == "https://reader.example/stream"
    assert snap.actualize_feed_ids == ("1", "2")
    assert snap.epsilon == pytest.approx(0.05)
    assert snap.redecay_weights is True
    assert snap.display_min == 4
    assert snap.debug_log is True


def test_snapshot_is_read_fresh_each_time(clean_env):
    config = Config()
    clean_env.setenv("CACHE_SIZE", "10")
    first = config.snapshot()
    clean_env.setenv("CACHE_SIZE", "20")
    second = config.snapshot()

    assert (first.cache_size, second.cache_size) == (10, 20)


def test_snapshot_is_immutable():
    snap = ConfigSnapshot()
    with pytest.raises(AttributeError):
        snap.epsilon = 0.5


def test_secrets_file_populates_environment(clean_env, tmp_path):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  FEED_AUTH_TOKEN: user/abc\n", encoding="utf-8")
    clean_env.setenv("SECRETS_FILE", str(secrets))
    # registered so the value written by the secrets loader is removed afterwards
    clean_env.setenv("FEED_AUTH_TOKEN", "")

    assert Config().snapshot().auth_token == "user/abc"


def test_config_summary_hides_token(clean_env):
    clean_env.setenv("FEED_AUTH_TOKEN", "tok-XYZ987")

    summary = Config().get_config_summary()

    assert summary["has_auth_token"] is True
    assert "tok-XYZ987" not in str(summary)
