import config


def set_valid(monkeypatch):
    monkeypatch.setattr(config, "TWITCH_CLIENT_ID", "client")
    monkeypatch.setattr(config, "TWITCH_CALLBACK_URL", "http://localhost:4827")
    monkeypatch.setattr(config, "TWITCH_SCOPES", "chat:read")
    monkeypatch.setattr(config, "TWITCH_USERNAME", "keybot")
    monkeypatch.setattr(config, "TWITCH_CHANNELS", ["streamer"])
    monkeypatch.setattr(config, "USERNAMES_FILE", "usernames.txt")
    monkeypatch.setattr(config, "KEYS_FILE", "keys.txt")
    monkeypatch.setattr(config, "MESSAGE_TEMPLATE", "Your code: <STEAM_KEY>")
    monkeypatch.setattr(config, "SEND_DELAY_SECONDS", "20")


def test_valid_config_has_no_errors(monkeypatch):
    set_valid(monkeypatch)
    assert config.validate_config() == []
    assert config.send_delay() == 20.0


def test_missing_values_are_all_reported(monkeypatch):
    set_valid(monkeypatch)
    monkeypatch.setattr(config, "TWITCH_CLIENT_ID", "")
    monkeypatch.setattr(config, "TWITCH_USERNAME", "")
    monkeypatch.setattr(config, "TWITCH_CHANNELS", [])

    errors = config.validate_config()

    assert len(errors) == 3
    assert any("TWITCH_CLIENT_ID" in e for e in errors)
    assert any("TWITCH_USERNAME" in e for e in errors)
    assert any("channels" in e for e in errors)


def test_empty_channel_position_is_reported(monkeypatch):
    set_valid(monkeypatch)
    monkeypatch.setattr(config, "TWITCH_CHANNELS", ["streamer", ""])

    assert config.validate_config() == ["The channel value at position 2 appears to be invalid or empty"]


def test_template_and_delay_are_checked(monkeypatch):
    set_valid(monkeypatch)
    monkeypatch.setattr(config, "MESSAGE_TEMPLATE", "Your code")
    monkeypatch.setattr(config, "SEND_DELAY_SECONDS", "soon")
    monkeypatch.setattr(config, "TWITCH_CALLBACK_URL", "localhost")

    errors = config.validate_config()

    assert len(errors) == 3
    assert any("<STEAM_KEY>" in e for e in errors)
    assert any("SEND_DELAY_SECONDS" in e for e in errors)
    assert any("has no host" in e for e in errors)
