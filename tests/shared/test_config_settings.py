import pytest

from shared import config
from shared.testing.fakes import make_settings


@pytest.fixture
def config_tab(monkeypatch):
    values = {
        "st_webhook": "https://discord.com/api/webhooks/1/sheet-token",
        "DOWNTIME_MONTH": "April",
        "DOWNTIME_YEAR": "2025",
        "UNRELATED": "ignored",
    }
    monkeypatch.setattr(config.core, "get_config_dict", lambda *_a, **_k: dict(values))
    for key in config.PROPERTY_KEYS:
        monkeypatch.delenv(key, raising=False)
    config.invalidate_settings()
    yield values
    config.invalidate_settings()


def test_load_settings_reads_known_keys(config_tab):
    settings = config.load_settings(force=True)

    assert settings.st_webhook == "https://discord.com/api/webhooks/1/sheet-token"
    assert settings.active_sheet_name == "April 2025"
    assert "UNRELATED" not in settings.properties


def test_environment_overrides_sheet(config_tab, monkeypatch):
    monkeypatch.setenv("DOWNTIME_MONTH", "May")
    settings = config.load_settings(force=True)
    assert settings.active_sheet_name == "May 2025"


def test_active_sheet_falls_back_without_period():
    assert make_settings(DOWNTIME_MONTH="May").active_sheet_name == config.DEFAULT_SHEET_NAME


@pytest.mark.parametrize(
    "value, expected",
    [("", True), (None, True), ("https://x/YOUR_WEBHOOK_HERE", True), ("https://discord.com/api/webhooks/1/a", False)],
)
def test_is_placeholder(value, expected):
    assert config.is_placeholder(value) is expected


def test_require_st_webhook_raises_for_placeholder():
    with pytest.raises(config.ConfigError):
        make_settings(ST_WEBHOOK="YOUR_ST_WEBHOOK").require_st_webhook()


def test_test_webhook_only_active_in_test_mode():
    url = "https://discord.com/api/webhooks/9/t"
    assert make_settings(TEST_WEBHOOK=url).active_test_webhook() is None
    assert make_settings(DISCORD_TEST_MODE="TRUE", TEST_WEBHOOK=url).active_test_webhook() == url
    assert make_settings(DISCORD_TEST_MODE="true", TEST_WEBHOOK="").active_test_webhook() is None


def test_channel_webhooks_are_case_insensitive_and_skip_placeholders(settings):
    assert settings.channel_webhook("#Announcements") == "https://discord.com/api/webhooks/2/announce"
    assert settings.channel_webhook("#ic-chat") is None
    assert settings.channel_webhook("#general") is None
    assert set(settings.configured_channels()) == {"#announcements"}


def test_snapshot_masks_webhook_tokens(settings):
    snapshot = config.get_config_snapshot(settings)

    assert "st-token" not in snapshot["ST_WEBHOOK"]
    assert snapshot["ST_WEBHOOK"].startswith("https://discord.com/api/webhooks/1/")
    assert snapshot["IC_CHAT_WEBHOOK"].startswith("placeholder")
    assert snapshot["DISCORD_TOKEN"] != "test-token"


def test_set_property_rejects_unknown_keys():
    with pytest.raises(KeyError):
        config.set_property("NOT_A_KEY", "x")


def test_set_property_upserts_and_invalidates(monkeypatch, config_tab):
    calls = []

    def fake_upsert(sheet_id, tab, row, *, key_columns):
        calls.append((sheet_id, tab, dict(row), tuple(key_columns)))
        return "updated"

    monkeypatch.setattr(config.core, "upsert_row", fake_upsert)
    config.load_settings(force=True)

    assert config.set_property("discord_test_mode", True) == "updated"
    assert calls == [("test-sheet", "Config", {"Key": "DISCORD_TEST_MODE", "Value": "True"}, ("Key",))]
    assert config._SETTINGS is None


def test_narrator_role_ids_parse(monkeypatch):
    monkeypatch.setenv("NARRATOR_ROLE_IDS", "12, 34;abc 56")
    assert config.get_narrator_role_ids() == {12, 34, 56}


def test_unknown_timezone_falls_back_to_utc(monkeypatch):
    monkeypatch.setenv("TIMEZONE", "Mars/Olympus")
    assert config.get_timezone().key == "UTC"
