import sys
import os
import random
from datetime import datetime

import pytest

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import terminal_academy as ta

FIXED = datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def engine():
    return ta.Engine(rng=random.Random(0), clock=lambda: FIXED)


def _session(engine, shell=ta.BASH):
    session = engine.new_session()
    session.apply_patch({"shell": shell, "mode": ta.MODE_TERMINAL})
    return session


@pytest.mark.parametrize("shell, code, message", [
    (ta.BASH, 127, "bash: foobar: command not found"),
    (ta.MACOS, 127, "-bash: foobar: command not found"),
])
def test_unknown_command_posix(engine, shell, code, message):
    result = engine.execute(_session(engine, shell), "foobar")
    assert result.exit_code == code
    assert result.error == message
    assert result.output == ""


def test_unknown_command_cmd(engine):
    result = engine.execute(_session(engine, ta.CMD), "foobar")
    assert result.exit_code == 1
    assert "is not recognized" in result.error
    assert result.error.startswith("'foobar' is not recognized as an internal or external command")


def test_unknown_command_powershell(engine):
    result = engine.execute(_session(engine, ta.POWERSHELL), "foobar")
    assert result.exit_code == 1
    assert result.error.startswith("foobar : The term 'foobar' is not recognized as the name of a cmdlet")


def test_close_match_is_suggested(engine):
    result = engine.execute(_session(engine), "grpe")
    assert result.exit_code == 127
    assert any("grep" in n for n in result.notices)


def test_verb_lookup_is_case_insensitive(engine):
    session = _session(engine)
    assert engine.execute(session, "PWD").output == "/home/agent"
    session = _session(engine, ta.POWERSHELL)
    assert engine.execute(session, "GET-LOCATION").ok


def test_powershell_aliases_share_a_handler(engine):
    session = _session(engine, ta.POWERSHELL)
    outputs = {engine.execute(session, verb).output for verb in ("gci", "ls", "dir", "Get-ChildItem")}
    assert len(outputs) == 1
    assert "Mode                 LastWriteTime" in outputs.pop()


def test_result_carries_canonical_command(engine):
    session = _session(engine, ta.POWERSHELL)
    assert engine.execute(session, "gc Documents\\nothing").command == "Get-Content"
    assert engine.execute(_session(engine, ta.CMD), "chdir").command == "cd"


def test_unexpected_handler_error_becomes_result(engine, monkeypatch):
    def broken(ctx, args):
        raise RuntimeError("disk on fire")
    monkeypatch.setitem(ta.DIALECT_TABLES[ta.BASH], "boom", ("boom", broken))
    result = engine.execute(_session(engine), "boom now")
    assert result.exit_code == 1
    assert result.error == "boom: disk on fire"


def test_shell_error_keeps_exit_code(engine, monkeypatch):
    def grumpy(ctx, args):
        raise ta.ShellError("nope", 3)
    monkeypatch.setitem(ta.DIALECT_TABLES[ta.BASH], "grumpy", ("grumpy", grumpy))
    result = engine.execute(_session(engine), "grumpy")
    assert (result.error, result.exit_code) == ("nope", 3)


def test_tokenize_honours_quotes_and_windows_backslashes():
    assert ta.tokenize(ta.BASH, 'echo "a b" c') == ["echo", "a b", "c"]
    assert ta.tokenize(ta.CMD, r'cd C:\Users\agent') == ["cd", "C:\\Users\\agent"]
    assert ta.tokenize(ta.POWERSHELL, r'Set-Location "C:\Program Files"') == ["Set-Location", "C:\\Program Files"]
    assert ta.tokenize(ta.BASH, 'echo "unbalanced') == ["echo", '"unbalanced']


def test_split_redirection():
    assert ta.split_redirection("echo hi > out.txt") == ("echo hi", "out.txt", False)
    assert ta.split_redirection("echo hi >> out.txt") == ("echo hi", "out.txt", True)
    assert ta.split_redirection('echo "a > b"') == ('echo "a > b"', None, False)
    assert ta.split_redirection("ls") == ("ls", None, False)


@pytest.mark.parametrize("shell, show", [(ta.BASH, "cat"), (ta.CMD, "type"), (ta.POWERSHELL, "Get-Content")])
def test_redirection_writes_and_appends(engine, shell, show):
    session = _session(engine, shell)
    assert engine.execute(session, "echo hello > note.txt").output == ""
    assert engine.execute(session, f"{show} note.txt").output == "hello"
    engine.execute(session, "echo world >> note.txt")
    assert engine.execute(session, f"{show} note.txt").output == "hello\nworld"


def test_redirection_into_missing_directory_fails(engine):
    result = engine.execute(_session(engine), "echo x > nowhere/out.txt")
    assert result.exit_code == 1
    assert result.error == "bash: nowhere/out.txt: No such file or directory"


def test_posix_variable_expansion(engine):
    session = _session(engine)
    assert engine.execute(session, "echo $USER").output == "agent"
    assert engine.execute(session, "echo ${HOME}/x").output == "/home/agent/x"
    assert engine.execute(session, "echo '$USER'").output == "$USER"
    assert engine.execute(session, "echo [$UNDEFINED]").output == "[]"


def test_posix_assignment_and_export(engine):
    session = _session(engine)
    engine.execute(session, "GREETING=hi")
    assert session.variables["GREETING"] == "hi"
    engine.execute(session, "export GREETING")
    assert session.environment["GREETING"] == "hi"
    assert "GREETING=hi" in engine.execute(session, "env").output


def test_cmd_variable_expansion(engine):
    session = _session(engine, ta.CMD)
    assert engine.execute(session, "echo %username%").output == "agent"
    assert engine.execute(session, "echo %NOPE%").output == "%NOPE%"
    engine.execute(session, "set FOO=bar")
    assert engine.execute(session, "echo %FOO%").output == "bar"


def test_powershell_assignment_and_expansion(engine):
    session = _session(engine, ta.POWERSHELL)
    result = engine.execute(session, "$x = 5")
    assert result.ok and session.variables["x"] == "5"
    assert engine.execute(session, "Write-Output $x").output == "5"
    engine.execute(session, '$env:FOO = "bar"')
    assert session.environment["FOO"] == "bar"
    assert engine.execute(session, "echo $env:FOO").output == "bar"


def test_posix_alias_expansion(engine):
    session = _session(engine)
    engine.execute(session, "alias greet='echo hi'")
    assert session.aliases["greet"] == "echo hi"
    assert engine.execute(session, "greet there").output == "hi there"
    assert engine.execute(session, "ll").output == engine.execute(session, "ls -la").output


def test_invoke_expression_runs_nested_line(engine):
    session = _session(engine, ta.POWERSHELL)
    result = engine.execute(session, 'Invoke-Expression "Set-Location Documents"')
    assert result.ok
    assert session.current_directory == "/home/agent/Documents"


def test_invoke_expression_stops_runaway_nesting(engine):
    session = _session(engine, ta.POWERSHELL)
    engine.execute(session, "$a = 'iex $a'")
    assert session.variables["a"] == "iex $a"
    result = engine.execute(session, "iex $a")
    assert result.exit_code == 1
    assert "nested deeper than" in result.error
    assert engine.expression_depth == 0
    assert engine.execute(session, 'iex "Set-Location Documents"').ok


def test_history_is_bounded_and_replayable(engine):
    session = _session(engine)
    for i in range(105):
        engine.execute(session, f"echo {i}")
    assert len(session.history) == 100
    assert session.history[0] == "echo 5"
    assert session.previous_command() == "echo 104"
    assert session.previous_command() == "echo 103"
    assert session.next_command() == "echo 104"
    assert session.next_command() == ""


def test_history_command_numbers_entries(engine):
    session = _session(engine)
    engine.execute(session, "pwd")
    out = engine.execute(session, "history").output
    assert out.splitlines() == ["    1  pwd", "    2  history"]


def test_blank_line_is_not_recorded(engine):
    session = _session(engine)
    result = engine.execute(session, "   ")
    assert result.ok and result.output == ""
    assert len(session.history) == 0


def test_shell_switch_round_trip_keeps_location(engine):
    session = _session(engine)
    engine.execute(session, "cd Documents")
    engine.execute(session, "shell cmd")
    assert session.shell == ta.CMD
    assert (session.current_drive, session.current_directory) == ("C", "/home/agent/Documents")
    assert ta.render_prompt(session) == "C:\\home\\agent\\Documents> "
    engine.execute(session, "powershell")
    assert session.shell == ta.POWERSHELL
    engine.execute(session, "shell bash")
    assert session.shell == ta.BASH
    assert session.current_directory == "/home/agent/Documents"


def test_shell_switch_rejects_unknown_dialect(engine):
    session = _session(engine)
    result = engine.execute(session, "shell zsh")
    assert result.exit_code == 1
    assert "Invalid shell: zsh" in result.error
    assert session.shell == ta.BASH


def test_drive_switching_in_cmd(engine):
    session = _session(engine, ta.CMD)
    engine.execute(session, "D:")
    assert (session.current_drive, session.current_directory) == ("D", "/")
    assert ta.render_prompt(session) == "D:\\> "
    assert engine.execute(session, "Q:").error == "The system cannot find the drive specified."
    engine.execute(session, "cd C:\\Users")
    assert session.current_drive == "D"
    engine.execute(session, "cd /d C:\\Users")
    assert (session.current_drive, session.current_directory) == ("C", "/Users")


def test_apply_patch_rejects_unknown_fields():
    session = ta.new_session()
    with pytest.raises(ValueError):
        session.apply_patch({"drives": {}})
    with pytest.raises(ValueError):
        session.apply_patch({"shell": "zsh"})


def test_leaving_mode_clears_overlay(engine):
    session = _session(engine)
    engine.execute(session, "tutorial")
    assert session.tutorial is not None
    result = engine.execute(session, "exit")
    assert result.output == "Returning to main menu..."
    assert session.mode == ta.MODE_MENU
    assert session.tutorial is None


def test_clear_requests_screen_clear(engine):
    assert engine.execute(_session(engine), "clear").clear_screen
    assert engine.execute(_session(engine, ta.CMD), "cls").clear_screen
