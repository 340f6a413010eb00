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


def _engine(policy=None):
    return ta.Engine(rng=random.Random(0), clock=lambda: FIXED, quest_policy=policy)


def _session(engine, shell=ta.BASH):
    session = engine.new_session()
    session.apply_patch({"shell": shell, "mode": ta.MODE_TERMINAL})
    return session


def never(quest, command, rng):
    return False


def always(quest, command, rng):
    return True


# ---- tutorials
def test_basic_tutorial_awards_steps_and_bonus():
    engine = _engine()
    session = _session(engine)
    out = engine.execute(session, "tutorial").output
    assert out.startswith("Tutorial mode activated: Basic Commands Tutorial (BASH)")
    assert session.mode == ta.MODE_TUTORIAL

    gained = []
    for line in ("ls", "pwd", "mkdir mission_files"):
        before = session.xp
        result = engine.execute(session, line)
        gained.append(session.xp - before)
    assert gained == [25, 25, 125]
    assert session.xp == 175 and session.level == 2
    assert session.tutorial is None
    assert session.mode == ta.MODE_TERMINAL
    assert "Level up! You are now level 2." in result.notices
    assert any(n.startswith("Tutorial complete") for n in result.notices)
    assert ta.resolve_node(session.drives["C"], "/home/agent/mission_files").is_dir


def test_tutorial_match_ignores_case_and_whitespace():
    engine = _engine()
    session = _session(engine)
    engine.execute(session, "tutorial basic")
    engine.execute(session, "  LS  ")
    assert session.tutorial.current_step == 1


def test_tutorial_miss_gives_hint_without_xp():
    engine = _engine()
    session = _session(engine)
    engine.execute(session, "tutorial")
    result = engine.execute(session, "whoami")
    assert result.output == "agent"
    assert result.notices == ["Hint: Use 'ls' to list directory contents"]
    assert session.xp == 0
    assert session.tutorial.current_step == 0


def test_tutorial_wording_follows_the_shell():
    engine = _engine()
    session = _session(engine, ta.CMD)
    engine.execute(session, "tutorial")
    assert session.tutorial.title == "Basic Commands Tutorial (CMD)"
    assert [s.expected_command for s in session.tutorial.steps] == ["dir", "cd", "md mission_files"]
    for line in ("dir", "cd", "md mission_files"):
        engine.execute(session, line)
    assert session.xp == 175


def test_powershell_basic_tutorial_expects_new_item():
    steps = ta.build_tutorial("basic", ta.POWERSHELL).steps
    assert [s.expected_command for s in steps] == ["dir", "pwd", "New-Item mission_files -Type Directory"]


def test_navigation_tutorial_uses_validators():
    engine = _engine()
    session = _session(engine)
    engine.execute(session, "tutorial navigation")
    engine.execute(session, "cd /home/agent/Documents")
    assert session.tutorial.current_step == 1
    engine.execute(session, "cat mission_brief.txt")
    assert session.tutorial.current_step == 2
    engine.execute(session, "cd ..")
    assert session.tutorial is None
    assert session.xp == 175


def test_unknown_tutorial():
    engine = _engine()
    result = engine.execute(_session(engine), "tutorial advanced")
    assert result.exit_code == 1
    assert "available: basic, navigation" in result.error


def test_non_matching_command_keeps_the_step():
    engine = _engine()
    session = _session(engine)
    engine.execute(session, "tutorial")
    engine.execute(session, "status")
    assert session.tutorial.current_step == 0


# ---- quests
def test_quest_triggers_and_key_artifact_completion():
    engine = _engine(never)
    session = _session(engine)
    engine.execute(session, "quest")
    assert session.mode == ta.MODE_QUEST

    result = engine.execute(session, "find backup")
    assert result.notices == [ta.INTEL_FOUND]
    assert session.quest.progress == [ta.INTEL_FOUND]

    result = engine.execute(session, "cat mission_data/classified/recovery.key")
    assert ta.KEY_FOUND in result.notices
    assert "MISSION COMPLETE: Operation: Critical Data Recovery (+200 XP)" in result.notices
    assert "Level up! You are now level 3." in result.notices
    assert session.xp == 200
    assert session.quest is None
    assert session.mode == ta.MODE_TERMINAL


def test_quest_policy_can_finish_on_any_relevant_command():
    engine = _engine(always)
    session = _session(engine)
    engine.execute(session, "quest")
    result = engine.execute(session, "ls")
    assert result.notices[-1].startswith("MISSION COMPLETE")
    assert session.quest is None


def test_quest_ignores_irrelevant_and_failed_commands():
    engine = _engine(always)
    session = _session(engine)
    engine.execute(session, "quest")
    assert engine.execute(session, "pwd").notices == []
    assert engine.execute(session, "cat nope.txt").notices == []
    assert session.quest is not None
    assert session.xp == 0


def test_quest_recognises_canonical_powershell_names():
    engine = _engine(never)
    session = _session(engine, ta.POWERSHELL)
    engine.execute(session, "quest")
    result = engine.execute(session, "gc mission_data\\classified\\recovery.key")
    assert result.command == "Get-Content"
    assert result.notices[-1].startswith("MISSION COMPLETE")
    assert session.quest is None


@pytest.mark.parametrize("shell, hint", [
    (ta.BASH, "Use 'cd ~' (or 'cd ..') to go back home"),
    (ta.MACOS, "Use 'cd ~' (or 'cd ..') to go back home"),
    (ta.CMD, "Use 'cd %USERPROFILE%' to go back home"),
    (ta.POWERSHELL, "Use 'cd ~' to go back home"),
])
def test_navigation_home_hint_follows_the_shell(shell, hint):
    assert ta.build_tutorial("navigation", shell).steps[-1].hint == hint


def test_mission_complete_is_the_last_notice():
    engine = _engine(never)
    session = _session(engine)
    engine.execute(session, "quest")
    result = engine.execute(session, "cat mission_data/classified/recovery.key")
    assert result.notices[-2:] == [
        "Level up! You are now level 3.",
        "MISSION COMPLETE: Operation: Critical Data Recovery (+200 XP)",
    ]


def test_exit_leaves_quest_mode():
    engine = _engine(never)
    session = _session(engine)
    engine.execute(session, "quest")
    engine.execute(session, "exit")
    assert session.quest is None
    assert session.mode == ta.MODE_MENU


# ---- helpers
class StubRandom(object):
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


def test_chance_policy():
    policy = ta.chance_policy(0.4)
    quest = ta.build_quest()
    assert policy(quest, "ls", StubRandom(0.39))
    assert not policy(quest, "ls", StubRandom(0.4))
    assert not ta.chance_policy(0.0)(quest, "ls", StubRandom(0.0))


@pytest.mark.parametrize("xp, level", [(0, 1), (99, 1), (100, 2), (175, 2), (200, 3)])
def test_level_for(xp, level):
    assert ta.level_for(xp) == level


def test_build_quest():
    quest = ta.build_quest()
    assert quest.quest_id == "data-recovery"
    assert quest.key_artifact == "recovery.key"
    assert "get-content" in quest.commands
    assert quest.progress == []
