import pytest

from syncdesk.config import Config, _delays


@pytest.fixture
def production(monkeypatch):
    monkeypatch.setattr(Config, "ENVIRONMENT", "production")


def test_production_requires_oauth_client_and_fernet_key(production, monkeypatch):
    monkeypatch.setattr(Config, "GOOGLE_CLIENT_ID", "client")
    monkeypatch.setattr(Config, "GOOGLE_CLIENT_SECRET", "")
    monkeypatch.setattr(Config, "FERNET_KEY", "")

    with pytest.raises(RuntimeError, match="GOOGLE_CLIENT_SECRET, FERNET_KEY"):
        Config.validate()


def test_development_only_warns(monkeypatch):
    monkeypatch.setattr(Config, "ENVIRONMENT", "development")
    monkeypatch.setattr(Config, "GOOGLE_CLIENT_ID", "")
    monkeypatch.setattr(Config, "MISTRAL_API_KEY", "")

    warnings = Config.validate()

    assert any("GOOGLE_CLIENT_ID" in w for w in warnings)
    assert any("MISTRAL_API_KEY" in w for w in warnings)


@pytest.mark.parametrize("raw,expected", [
    ("0.1, 0.2", (0.1, 0.2)),
    ("", (1.0,)),
    ("soon", (1.0,)),
])
def test_retry_delays_parsing(raw, expected):
    assert _delays(raw, (1.0,)) == expected


def test_json_log_lines_carry_extra_fields():
    import json
    import logging

    from syncdesk.utils.logger import JSONFormatter

    record = logging.LogRecord("syncdesk.test", logging.INFO, __file__, 10, "Sync done", None, None)
    record.extra_fields = {"user_id": "user-1", "skipped": 2}

    line = json.loads(JSONFormatter().format(record))

    assert line["message"] == "Sync done"
    assert line["level"] == "INFO"
    assert line["skipped"] == 2


def test_json_log_lines_redact_tokens():
    import json
    import logging

    from syncdesk.utils.logger import JSONFormatter

    record = logging.LogRecord("syncdesk.test", logging.INFO, __file__, 10, "Refreshed", None, None)
    record.extra_fields = {"user_id": "user-1", "access_token": "ya29.secret"}

    line = json.loads(JSONFormatter().format(record))

    assert line["user_id"] == "user-1"
    assert line["access_token"] == "***"


def test_configure_logging_replaces_handlers():
    from syncdesk.utils.logger import JSONFormatter, configure_logging

    configure_logging("DEBUG", "json")
    package_logger = configure_logging("WARNING", "json")

    assert len(package_logger.handlers) == 1
    assert isinstance(package_logger.handlers[0].formatter, JSONFormatter)
    assert package_logger.level == 30
    configure_logging("INFO", "text")
