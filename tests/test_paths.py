import sys
import os
import random
from datetime import datetime

import pytest

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import terminal_academy as ta

HOME = ta.POSIX_HOME


def resolve(raw, shell=ta.BASH, drive="C", cwd=HOME):
    return ta.resolve_path(shell, drive, cwd, raw)


def test_empty_and_home_tokens():
    assert resolve("") == ("C", HOME)
    assert resolve("~") == ("C", HOME)
    assert resolve("~/Documents") == ("C", HOME + "/Documents")
    assert resolve("%USERPROFILE%", ta.CMD) == ("C", ta.WINDOWS_HOME)
    assert resolve("%userprofile%\\Desktop", ta.CMD) == ("C", ta.WINDOWS_HOME + "/Desktop")
    assert resolve("$HOME", ta.POWERSHELL) == ("C", ta.WINDOWS_HOME)
    assert resolve("~", ta.POWERSHELL) == ("C", ta.WINDOWS_HOME)


def test_dot_and_dotdot():
    assert resolve("..") == ("C", "/home")
    assert resolve(".") == ("C", HOME)
    assert resolve("..", cwd="/") == ("C", "/")
    assert resolve("../../..") == ("C", "/")


def test_explicit_drive():
    assert resolve("D:\\data\\x", ta.CMD) == ("D", "/data/x")
    assert resolve("d:", ta.CMD) == ("D", "/")
    assert resolve("e:/README.txt", ta.POWERSHELL) == ("E", "/README.txt")


def test_absolute_and_relative():
    assert resolve("/etc//hosts/") == ("C", "/etc/hosts")
    assert resolve("\\Users\\agent", ta.CMD) == ("C", "/Users/agent")
    assert resolve("a/./b/../c") == ("C", HOME + "/a/c")
    assert resolve("Documents", drive="D", cwd="/") == ("D", "/Documents")


@pytest.mark.parametrize("path", ["/", "/home", "/home/agent/Documents", "/Users/agent", "/etc/hosts"])
@pytest.mark.parametrize("shell", ta.SHELLS)
def test_resolving_canonical_absolute_path_is_identity(shell, path):
    assert resolve(path, shell, cwd="/tmp") == ("C", path)


def test_display_path():
    assert ta.display_path(ta.CMD, "C", "/Users/agent") == "C:\\Users\\agent"
    assert ta.display_path(ta.POWERSHELL, "D", "/") == "D:\\"
    assert ta.display_path(ta.BASH, "C", "/home/agent") == "/home/agent"


def test_prompts_per_dialect():
    session = ta.new_session(when=datetime(2024, 5, 1))
    assert ta.render_prompt(session) == "agent@terminal-academy:/home/agent$ "
    session.apply_patch({"shell": ta.MACOS})
    assert ta.render_prompt(session) == "terminal-academy:agent agent$ "
    session.apply_patch({"shell": ta.CMD})
    assert ta.render_prompt(session) == "C:\\home\\agent> "
    session.apply_patch({"shell": ta.POWERSHELL})
    assert ta.render_prompt(session) == "PS C:\\home\\agent> "


def test_home_path_per_family():
    assert ta.home_path(ta.BASH) == ta.POSIX_HOME
    assert ta.home_path(ta.MACOS) == ta.POSIX_HOME
    assert ta.home_path(ta.CMD) == ta.WINDOWS_HOME
    assert ta.home_path(ta.POWERSHELL) == ta.WINDOWS_HOME
    assert ta.home_path(ta.BASH, "bob") == "/home/bob"
    assert ta.home_path(ta.CMD, "bob") == "/Users/bob"


def _bob_session(shell=ta.BASH):
    engine = ta.Engine(settings=ta.Settings(user="bob"), rng=random.Random(0),
                       clock=lambda: datetime(2024, 5, 1, 12, 0, 0))
    session = engine.new_session()
    session.apply_patch({"shell": shell, "mode": ta.MODE_TERMINAL})
    return engine, session


@pytest.mark.parametrize("line", ["cd ~", "cd", "cd $HOME"])
def test_home_follows_the_configured_user(line):
    engine, session = _bob_session()
    engine.execute(session, "cd Documents")
    result = engine.execute(session, line)
    assert result.exit_code == 0
    assert session.current_directory == "/home/bob"


def test_windows_home_follows_the_configured_user():
    engine, session = _bob_session(ta.CMD)
    result = engine.execute(session, "cd %USERPROFILE%")
    assert result.exit_code == 0
    assert session.current_directory == "/Users/bob"
    engine, session = _bob_session(ta.POWERSHELL)
    engine.execute(session, "cd ~")
    assert session.current_directory == "/Users/bob"


def test_status_and_navigation_tutorial_for_another_user():
    engine, session = _bob_session()
    assert "Home Directory: /home/bob" in engine.execute(session, "status").output
    engine.execute(session, "tutorial navigation")
    engine.execute(session, "cd Documents")
    engine.execute(session, "cat mission_brief.txt")
    engine.execute(session, "cd ~")
    assert session.tutorial is None
    assert session.xp == 175
