"""Smoke tests for the meallog CLI commands."""

import yaml
from typer.testing import CliRunner

from meallog.cli.main import _render, app
from meallog.db.connection import create_db_engine, init_db, make_session_factory
from meallog.services.memory_service import SqlUserMemoryService

runner = CliRunner()


def write_config(tmp_path, data: dict) -> str:
    config_file = tmp_path / "meallog.yaml"
    config_file.write_text(yaml.dump(data))
    return str(config_file)


def test_chat_help():
    result = runner.invoke(app, ["chat", "--help"])
    assert result.exit_code == 0
    assert "--chat-id" in result.stdout


def test_config_show(tmp_path):
    path = write_config(tmp_path, {"session": {"inactivity_minutes": 7}})
    result = runner.invoke(app, ["--config", path, "config-show"])
    assert result.exit_code == 0
    assert "inactivity_minutes: 7" in result.stdout
    assert "CUSTOM: 3.0" in result.stdout


def test_missing_config_file_exits(tmp_path):
    result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "config-show"])
    assert result.exit_code == 1


def test_aliases_lists_stored_aliases(tmp_path):
    url = f"sqlite:///{tmp_path / 'meals.db'}"
    engine = create_db_engine(url)
    init_db(engine)
    memory = SqlUserMemoryService(make_session_factory(engine))
    memory.save_alias("ana", "pollo", "Chicken Breast, Raw", 42, "CUSTOM")
    engine.dispose()

    path = write_config(tmp_path, {"memory": {"database_url": url}})
    result = runner.invoke(app, ["--config", path, "aliases", "--user", "ana"])

    assert result.exit_code == 0
    assert "pollo" in result.stdout
    assert "42" in result.stdout


def test_aliases_empty(tmp_path):
    url = f"sqlite:///{tmp_path / 'meals.db'}"
    path = write_config(tmp_path, {"memory": {"database_url": url}})
    result = runner.invoke(app, ["--config", path, "aliases", "--user", "ana"])
    assert result.exit_code == 0
    assert "No aliases stored for ana" in result.stdout


def test_aliases_with_memory_disabled(tmp_path):
    path = write_config(tmp_path, {"memory": {"enabled": False}})
    result = runner.invoke(app, ["--config", path, "aliases", "--user", "ana"])
    assert result.exit_code == 1


def test_render_strips_chat_markup():
    assert _render("<b>Hora:</b> <i>8:30</i> <pre>x</pre>") == "Hora: 8:30 x"
