import sys
import os
import random
from datetime import datetime

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import terminal_academy as ta

FIXED = datetime(2024, 5, 1, 12, 0, 0)


def _engine():
    return ta.Engine(rng=random.Random(0), clock=lambda: FIXED)


def _session(engine, shell=ta.BASH):
    session = engine.new_session()
    session.apply_patch({"shell": shell, "mode": ta.MODE_TERMINAL})
    return session


def test_help_lists_game_and_dialect_commands():
    engine = _engine()
    out = engine.execute(_session(engine), "help").output
    assert "Game Commands:" in out
    assert "File System Commands (BASH):" in out
    assert "ls [-la] [path]" in out
    assert "Get-ChildItem" not in out


def test_help_is_dialect_specific():
    engine = _engine()
    out = engine.execute(_session(engine, ta.POWERSHELL), "help").output
    assert "File System Commands (POWERSHELL):" in out
    assert "Get-ChildItem [path]" in out
    out = engine.execute(_session(engine, ta.CMD), "help").output
    assert "tasklist" in out and "ipconfig [/all]" in out


def test_help_for_alias_resolves_to_cmdlet():
    engine = _engine()
    result = engine.execute(_session(engine, ta.POWERSHELL), "help gci")
    assert result.ok
    assert result.output.startswith("Get-ChildItem [path]")


def test_help_unknown_topic_fails():
    engine = _engine()
    result = engine.execute(_session(engine), "help frobnicate")
    assert result.exit_code == 1


def test_status_report_contains_profile_and_drive():
    engine = _engine()
    session = _session(engine)
    out = engine.execute(session, "status").output
    assert "Terminal Academy - System Status" in out
    assert "Agent Level: 1" in out
    assert "Current Shell: BASH" in out
    assert "Working Directory: /home/agent" in out
    assert "Current Drive: C (System)" in out
    assert "Total Space: 500.00 GB" in out
    assert "Free Space: 250.00 GB" in out
    assert "Current Mode: TERMINAL" in out


def test_status_report_is_read_only():
    engine = _engine()
    session = _session(engine)
    before = (session.current_directory, session.xp, session.mode, len(session.processes))
    report = engine.status_report(session)
    assert report.process_count == 5
    assert (session.current_directory, session.xp, session.mode, len(session.processes)) == before


def test_status_shows_active_tutorial():
    engine = _engine()
    session = _session(engine)
    engine.execute(session, "tutorial")
    out = ta.render_status(engine.status_report(session))
    assert "Active Tutorial: Basic Commands Tutorial (BASH)" in out
    assert "Tutorial Progress: Step 1/3" in out


def test_colour_helper_emits_ansi():
    out = ta.c("report", ta.Fore.MAGENTA)
    assert '\x1b[' in out or ta.Fore.MAGENTA in out
    assert "report" in out


def test_table_aligns_columns():
    out = ta.table(["Name", "Value"], [("a", "1"), ("long", "22")])
    lines = out.splitlines()
    assert lines[0] == "Name  Value"
    assert lines[1] == "----  -----"
    assert lines[3] == "long  22"
