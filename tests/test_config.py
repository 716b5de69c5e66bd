import json
import logging
import os

import pytest

from ebs_backend.config import DEFAULT_ROOT, AgentConfig, load_config
from ebs_backend.errors import ValidationError
from ebs_backend.log import buffer_logging, configure_logging, parse_level


def write_json(path, data):
    with open(path, "w") as f:
        json.dump(data, f)
    return str(path)


def test_defaults():
    config = AgentConfig()

    assert config.log_level == "INFO"
    assert config.root == DEFAULT_ROOT
    assert config.wait_timeout is None
    assert config.driver_options == {}


def test_load_config_file(tmp_path):
    path = write_json(tmp_path / "agent.json", {
        "log_level": "DEBUG",
        "root": "/srv/ebs",
        "wait_timeout": 600,
        "driver_options": {"ebs.defaultvolumesize": "8G"},
    })

    config = load_config(path)

    assert config.log_level == "DEBUG"
    assert config.root == "/srv/ebs"
    assert config.wait_timeout == 600.0
    assert config.driver_options == {"ebs.defaultvolumesize": "8G"}
    assert config.files == [os.path.normpath(path)]


def test_load_config_dir_merges_in_order(tmp_path):
    write_json(tmp_path / "10-base.json", {
        "root": "/srv/ebs",
        "driver_options": {"ebs.defaultvolumesize": "8G", "ebs.defaultvolumetype": "gp2"},
    })
    write_json(tmp_path / "20-override.json", {
        "log_level": "WARN",
        "driver_options": {"ebs.defaultvolumetype": "st1"},
    })
    (tmp_path / "README").write_text("not a config file")

    config = load_config(str(tmp_path))

    assert config.root == "/srv/ebs"
    assert config.log_level == "WARN"
    assert config.driver_options == {"ebs.defaultvolumesize": "8G", "ebs.defaultvolumetype": "st1"}
    assert [os.path.basename(f) for f in config.files] == ["10-base.json", "20-override.json"]


def test_merge_keeps_values_not_set_in_other():
    base = AgentConfig(root="/srv/ebs", enable_syslog=True, endpoint_url="http://localhost:4566")

    merged = base.merge(AgentConfig(log_level="ERROR"))

    assert merged.root == "/srv/ebs"
    assert merged.enable_syslog is True
    assert merged.endpoint_url == "http://localhost:4566"
    assert merged.log_level == "ERROR"
    # merge returns a new config
    assert base.log_level == "INFO"


def test_unknown_key_rejected(tmp_path):
    path = write_json(tmp_path / "agent.json", {"rot": "/srv/ebs"})

    with pytest.raises(ValidationError) as e:
        load_config(path)
    assert e.value.error_code == "INVALID_CONFIG"


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_malformed_file_rejected(tmp_path, content):
    path = tmp_path / "agent.json"
    path.write_text(content)

    with pytest.raises(ValidationError):
        load_config(str(path))


# ------------------------
# Logging
# ------------------------

@pytest.mark.parametrize("name, level", [
    ("debug", logging.DEBUG),
    ("INFO", logging.INFO),
    ("warn", logging.WARNING),
    ("ERROR", logging.ERROR),
])
def test_parse_level(name, level):
    assert parse_level(name) == level


def test_parse_level_invalid():
    with pytest.raises(ValidationError) as e:
        parse_level("chatty")
    assert e.value.error_code == "INVALID_LOG_LEVEL"


def test_configure_logging_sets_package_level():
    logger = configure_logging("DEBUG")

    assert logger.name == "ebs_backend"
    assert logger.level == logging.DEBUG
    assert logging.getLogger("ebs_backend.ebs_driver").getEffectiveLevel() == logging.DEBUG


def test_configure_logging_rejects_unknown_facility():
    with pytest.raises(ValidationError):
        configure_logging("INFO", enable_syslog=True, syslog_facility="nowhere")


@pytest.fixture
def package_logger(monkeypatch):
    logger = logging.getLogger("ebs_backend")
    monkeypatch.setattr(logger, "handlers", [])
    monkeypatch.setattr(logger, "level", logger.level)
    return logger


def test_buffered_records_wait_for_configuration(package_logger, capsys):
    pending = buffer_logging()
    config_logger = logging.getLogger("ebs_backend.config")
    config_logger.debug("reading /etc/ebs")
    config_logger.warning("No configuration files found in /etc/ebs")

    assert capsys.readouterr().err == ""

    configure_logging("INFO", fmt="%(levelname)s %(message)s", buffered=pending)

    err = capsys.readouterr().err
    assert "WARNING No configuration files found in /etc/ebs" in err
    assert "reading /etc/ebs" not in err
    assert pending not in package_logger.handlers


def test_records_after_configuration_are_not_buffered(package_logger, capsys):
    pending = buffer_logging()
    configure_logging("DEBUG", fmt="%(message)s", buffered=pending)

    logging.getLogger("ebs_backend.ebs_driver").debug("attached")

    assert pending.buffer == []
    assert "attached" in capsys.readouterr().err
