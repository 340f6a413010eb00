import sys
import os
import logging

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import terminal_academy as ta


def test_missing_file_gives_defaults(tmp_path):
    settings = ta.load_settings(str(tmp_path / "absent.yaml"))
    assert settings == ta.Settings()
    assert settings.step_xp == 25
    assert settings.quest_completion_chance == 0.4


def test_yaml_overrides(tmp_path):
    path = tmp_path / "terminal_academy.yaml"
    path.write_text(
        "step_xp: 10\n"
        "history_limit: 3\n"
        "user: trainee\n"
        "environment:\n"
        "  EDITOR: vim\n",
        encoding="utf-8",
    )
    settings = ta.load_settings(str(path))
    assert settings.step_xp == 10
    assert settings.user == "trainee"
    assert settings.environment == {"EDITOR": "vim"}

    session = ta.Engine(settings=settings).new_session()
    assert session.environment["EDITOR"] == "vim"
    assert session.environment["USER"] == "trainee"
    assert session.current_directory == "/home/trainee"
    assert session.history.maxlen == 3


def test_unknown_keys_are_ignored(tmp_path, caplog):
    path = tmp_path / "terminal_academy.yaml"
    path.write_text("colour: blue\nxp_per_level: 50\n", encoding="utf-8")
    with caplog.at_level(logging.WARNING, logger="terminal_academy"):
        settings = ta.load_settings(str(path))
    assert settings.xp_per_level == 50
    assert not hasattr(settings, "colour")
    assert "colour" in caplog.text


def test_non_mapping_file_is_ignored(tmp_path):
    path = tmp_path / "terminal_academy.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    assert ta.load_settings(str(path)) == ta.Settings()


def test_xp_per_level_drives_levels(tmp_path):
    path = tmp_path / "terminal_academy.yaml"
    path.write_text("xp_per_level: 50\n", encoding="utf-8")
    engine = ta.Engine(settings=ta.load_settings(str(path)))
    session = engine.new_session()
    session.apply_patch({"mode": ta.MODE_TERMINAL})
    engine.execute(session, "tutorial")
    engine.execute(session, "ls")
    engine.execute(session, "pwd")
    assert session.level == 2


def test_values_of_the_wrong_type_are_ignored(tmp_path, caplog):
    path = tmp_path / "terminal_academy.yaml"
    path.write_text(
        "quest_completion_chance: high\n"
        "step_xp: [1, 2]\n"
        "xp_per_level: 0\n"
        "history_limit: '7'\n"
        "environment: EDITOR\n",
        encoding="utf-8",
    )
    with caplog.at_level(logging.WARNING, logger="terminal_academy"):
        settings = ta.load_settings(str(path))
    assert settings.quest_completion_chance == 0.4
    assert settings.step_xp == 25
    assert settings.xp_per_level == 100
    assert settings.history_limit == 7
    assert settings.environment == {}
    for key in ("quest_completion_chance", "step_xp", "xp_per_level", "environment"):
        assert key in caplog.text


def test_chance_outside_unit_interval_is_ignored(tmp_path):
    path = tmp_path / "terminal_academy.yaml"
    path.write_text("quest_completion_chance: 4\n", encoding="utf-8")
    assert ta.load_settings(str(path)).quest_completion_chance == 0.4


def test_progression_failure_becomes_an_error_result(caplog):
    engine = ta.Engine(settings=ta.Settings(quest_completion_chance="high"))
    session = engine.new_session()
    session.apply_patch({"mode": ta.MODE_TERMINAL})
    engine.execute(session, "quest")
    with caplog.at_level(logging.ERROR, logger="terminal_academy"):
        result = engine.execute(session, "ls")
    assert result.exit_code == 1
    assert result.error.startswith("progression:")
    assert "mission_data" in result.output
    assert "progression failed" in caplog.text
