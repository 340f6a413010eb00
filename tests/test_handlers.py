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


def _node(session, path, drive="C"):
    return ta.resolve_node(session.drives[drive], path)


# ---- listing
def test_ls_short_listing_hides_dotfiles(engine):
    out = engine.execute(_session(engine), "ls").output
    assert out == "Documents/  mission_data/  docs@"


def test_ls_long_listing_orders_directories_first(engine):
    lines = engine.execute(_session(engine), "ls -la").output.splitlines()
    assert lines[0].startswith("total ")
    names = [line.split()[-1] for line in lines[1:]]
    assert names[:2] == ["Documents/", "mission_data/"]
    assert ".bashrc" in names and ".profile" in names
    assert lines[1].startswith("drwxr-xr-x")
    assert "docs -> /home/agent/Documents" in lines[-1]


def test_ls_missing_path(engine):
    result = engine.execute(_session(engine), "ls nope")
    assert result.exit_code == 2
    assert result.error == "ls: cannot access 'nope': No such file or directory"


def test_dir_in_cmd(engine):
    out = engine.execute(_session(engine, ta.CMD), "dir").output
    assert " Volume in drive C is System" in out
    assert " Directory of C:\\home\\agent" in out
    assert "<DIR>" in out and "Documents" in out
    assert "Dir(s)" in out


def test_get_childitem_in_powershell(engine):
    out = engine.execute(_session(engine, ta.POWERSHELL), "Get-ChildItem -Force").output
    assert "    Directory: C:\\home\\agent" in out
    assert ".bashrc" in out
    assert "d-----" in out


# ---- navigation and creation
def test_mkdir_cd_mkdir_again(engine):
    session = _session(engine)
    assert engine.execute(session, "mkdir x").ok
    assert engine.execute(session, "cd x").ok
    assert session.current_directory == "/home/agent/x"
    engine.execute(session, "cd ..")
    result = engine.execute(session, "mkdir x")
    assert result.exit_code == 1
    assert result.error == "mkdir: cannot create directory 'x': File exists"


def test_mkdir_parents(engine):
    session = _session(engine)
    assert engine.execute(session, "mkdir a/b").error == \
        "mkdir: cannot create directory 'a/b': No such file or directory"
    assert engine.execute(session, "mkdir -p a/b").ok
    assert _node(session, "/home/agent/a/b").is_dir


def test_cd_errors_per_dialect(engine):
    assert engine.execute(_session(engine), "cd nowhere").error == "bash: cd: nowhere: No such file or directory"
    assert engine.execute(_session(engine), "cd .bashrc").error == "bash: cd: .bashrc: Not a directory"
    assert engine.execute(_session(engine, ta.CMD), "cd nowhere").error == "The system cannot find the path specified."


def test_cd_follows_symlink_and_dash(engine):
    session = _session(engine)
    engine.execute(session, "cd docs")
    assert session.current_directory == "/home/agent/Documents"
    result = engine.execute(session, "cd -")
    assert result.output == "/home/agent"
    assert session.current_directory == "/home/agent"


def test_touch_creates_and_refuses_existing(engine):
    session = _session(engine)
    assert engine.execute(session, "touch new.txt").ok
    assert _node(session, "/home/agent/new.txt").content == ""
    assert engine.execute(session, "touch new.txt").error == "touch: cannot touch 'new.txt': File exists"


def test_new_item_file_and_directory(engine):
    session = _session(engine, ta.POWERSHELL)
    assert engine.execute(session, 'New-Item notes.txt -Value "hi"').ok
    assert _node(session, "/home/agent/notes.txt").content == "hi"
    assert engine.execute(session, "New-Item stash -ItemType Directory").ok
    assert _node(session, "/home/agent/stash").is_dir
    assert engine.execute(session, "mkdir more").ok
    assert _node(session, "/home/agent/more").is_dir


# ---- content
def test_cat_file_directory_and_missing(engine):
    session = _session(engine)
    assert engine.execute(session, "cat Documents/mission_brief.txt").output == ta.MISSION_BRIEF
    result = engine.execute(session, "cat Documents")
    assert (result.exit_code, result.error) == (1, "cat: Documents: Is a directory")
    result = engine.execute(session, "cat nope.txt")
    assert (result.exit_code, result.error) == (1, "cat: nope.txt: No such file or directory")


def test_type_and_get_content_missing(engine):
    assert engine.execute(_session(engine, ta.CMD), "type nope.txt").error == \
        "The system cannot find the file specified."
    assert engine.execute(_session(engine, ta.POWERSHELL), "Get-Content nope.txt").error == \
        "Get-Content : Cannot find path 'C:\\home\\agent\\nope.txt' because it does not exist."


def test_head_tail_and_wc(engine):
    session = _session(engine)
    assert engine.execute(session, "head -n 1 Documents/mission_brief.txt").output == \
        "CLASSIFIED: Operation Terminal Academy"
    assert engine.execute(session, "tail -n 1 Documents/mission_brief.txt").output == \
        "Advanced command-line operations required."
    assert engine.execute(session, "wc -l Documents/mission_brief.txt").output == "3 Documents/mission_brief.txt"


def test_sort_and_uniq(engine):
    session = _session(engine)
    engine.execute(session, "echo b > list.txt")
    engine.execute(session, "echo a >> list.txt")
    engine.execute(session, "echo a >> list.txt")
    assert engine.execute(session, "sort list.txt").output == "a\na\nb"
    assert engine.execute(session, "uniq -c list.txt").output == "      1 b\n      2 a"


def test_set_and_add_content(engine):
    session = _session(engine, ta.POWERSHELL)
    engine.execute(session, "Set-Content log.txt first")
    engine.execute(session, "Add-Content log.txt second")
    assert engine.execute(session, "Get-Content log.txt").output == "first\nsecond"


def test_file_describes_entries(engine):
    out = engine.execute(_session(engine), "file Documents docs Documents/mission_brief.txt").output
    assert out.splitlines() == [
        "Documents: directory",
        "docs: symbolic link to /home/agent/Documents",
        "Documents/mission_brief.txt: ASCII text",
    ]


# ---- removal
def test_rmdir_refuses_non_empty_and_busy(engine):
    session = _session(engine)
    assert engine.execute(session, "rmdir Documents").error == \
        "rmdir: failed to remove 'Documents': Directory not empty"
    engine.execute(session, "mkdir empty")
    engine.execute(session, "cd empty")
    assert engine.execute(session, "rmdir /home/agent/empty").error == \
        "rmdir: failed to remove '/home/agent/empty': Device or resource busy"
    engine.execute(session, "cd ..")
    assert engine.execute(session, "rmdir empty").ok
    assert _node(session, "/home/agent/empty") is None


def test_rm_needs_recursive_for_directories(engine):
    session = _session(engine)
    assert engine.execute(session, "rm Documents").error == "rm: cannot remove 'Documents': Is a directory"
    assert engine.execute(session, "rm -r Documents").ok
    assert _node(session, "/home/agent/Documents") is None
    assert engine.execute(session, "rm -f ghost").ok


def test_rd_and_del_in_cmd(engine):
    session = _session(engine, ta.CMD)
    assert engine.execute(session, "rd Documents").error == "The directory is not empty."
    assert engine.execute(session, "del Documents\\mission_brief.txt").ok
    assert engine.execute(session, "rd Documents").ok


def test_remove_item_requires_recurse(engine):
    session = _session(engine, ta.POWERSHELL)
    result = engine.execute(session, "Remove-Item mission_data")
    assert "has children and the Recurse parameter was not specified" in result.error
    assert engine.execute(session, "Remove-Item mission_data -Recurse").ok


# ---- copy, move, rename
def test_cp_and_mv(engine):
    session = _session(engine)
    assert engine.execute(session, "cp Documents/mission_brief.txt brief.txt").ok
    assert _node(session, "/home/agent/brief.txt").content == ta.MISSION_BRIEF
    assert engine.execute(session, "cp Documents copy").error == \
        "cp: -r not specified; omitting directory 'Documents'"
    assert engine.execute(session, "cp -r Documents copy").ok
    engine.execute(session, "echo changed > copy/mission_brief.txt")
    assert _node(session, "/home/agent/Documents/mission_brief.txt").content == ta.MISSION_BRIEF
    assert engine.execute(session, "mv brief.txt Documents").ok
    assert _node(session, "/home/agent/brief.txt") is None
    assert _node(session, "/home/agent/Documents/brief.txt") is not None


def test_copy_between_drives_in_cmd(engine):
    session = _session(engine, ta.CMD)
    result = engine.execute(session, "copy Documents D:\\")
    assert result.output == "        1 file(s) copied."
    assert _node(session, "/mission_brief.txt", "D").content == ta.MISSION_BRIEF


def test_copy_item_without_recurse_copies_empty_folder(engine):
    session = _session(engine, ta.POWERSHELL)
    engine.execute(session, "Copy-Item Documents Shallow")
    assert _node(session, "/home/agent/Shallow").children == {}
    engine.execute(session, "Copy-Item Documents Deep -Recurse")
    assert "mission_brief.txt" in _node(session, "/home/agent/Deep").children


def test_move_into_own_subdirectory_fails(engine):
    result = engine.execute(_session(engine), "mv Documents Documents/inner")
    assert result.error == "mv: cannot move 'Documents' to a subdirectory of itself"


def test_ren_and_rename_item(engine):
    session = _session(engine, ta.CMD)
    assert engine.execute(session, "ren Documents Papers").ok
    assert _node(session, "/home/agent/Papers") is not None
    session = _session(engine, ta.POWERSHELL)
    assert engine.execute(session, "Rename-Item Documents Files").ok
    assert _node(session, "/home/agent/Files").name == "Files"


# ---- searching
def test_find_prints_full_paths(engine):
    session = _session(engine)
    assert engine.execute(session, "find backup").output == "/home/agent/mission_data/classified/backup.dat"
    out = engine.execute(session, 'find . -name "*.txt"').output
    assert "/home/agent/Documents/mission_brief.txt" in out.splitlines()
    assert engine.execute(session, "find").error == "find: missing argument"


def test_grep_exit_codes(engine):
    session = _session(engine)
    result = engine.execute(session, "grep Operation Documents/mission_brief.txt")
    assert (result.exit_code, result.output) == (0, "CLASSIFIED: Operation Terminal Academy")
    assert engine.execute(session, "grep zzz Documents/mission_brief.txt").exit_code == 1
    assert engine.execute(session, "grep zzz nope.txt").exit_code == 2
    out = engine.execute(session, "grep -rn KEY mission_data").output
    assert "mission_data/classified/recovery.key:1:-----BEGIN RECOVERY KEY-----" in out


def test_grep_matches_substrings_unless_asked_for_a_regex(engine):
    session = _session(engine)
    engine.execute(session, 'echo "call f(x) here" > t.txt')
    result = engine.execute(session, "grep 'f(' t.txt")
    assert (result.exit_code, result.output) == (0, "call f(x) here")
    assert engine.execute(session, "grep a.l t.txt").exit_code == 1
    result = engine.execute(session, "grep -E a.l t.txt")
    assert (result.exit_code, result.output) == (0, "call f(x) here")
    assert engine.execute(session, "grep -P 'f\\(x\\)' t.txt").exit_code == 0


def test_select_string_matches_substrings(engine):
    session = _session(engine, ta.POWERSHELL)
    engine.execute(session, 'echo "call f(x) here" > t.txt')
    result = engine.execute(session, "Select-String 'f(' t.txt")
    assert result.exit_code == 0
    assert "t.txt:1:call f(x) here" in result.output
    assert engine.execute(session, "Select-String a.l t.txt").output == ""


def test_findstr_and_select_string(engine):
    out = engine.execute(_session(engine, ta.CMD), "findstr /i operation Documents\\mission_brief.txt").output
    assert out.splitlines() == [
        "CLASSIFIED: Operation Terminal Academy",
        "Advanced command-line operations required.",
    ]
    out = engine.execute(_session(engine, ta.POWERSHELL),
                         "Select-String Operation Documents/mission_brief.txt").output
    assert "Documents/mission_brief.txt:1:CLASSIFIED: Operation Terminal Academy" in out


# ---- permissions
@pytest.mark.parametrize("before, mode, after", [
    ("-rw-r--r--", "755", "-rwxr-xr-x"),
    ("-rw-r--r--", "u+x", "-rwxr--r--"),
    ("-rw-r--r--", "go-r", "-rw-------"),
    ("drwxr-xr-x", "a=r", "dr--r--r--"),
])
def test_apply_mode(before, mode, after):
    assert ta.apply_mode(before, mode) == after


def test_apply_mode_rejects_garbage():
    with pytest.raises(ValueError):
        ta.apply_mode("-rw-r--r--", "u+z")


def test_chmod_and_chown(engine):
    session = _session(engine)
    assert engine.execute(session, "chmod 755 Documents/mission_brief.txt").ok
    assert _node(session, "/home/agent/Documents/mission_brief.txt").permissions == "-rwxr-xr-x"
    assert engine.execute(session, "chmod 600 /etc/hosts").error == \
        "chmod: changing permissions of '/etc/hosts': Operation not permitted"
    assert engine.execute(session, "chown root Documents").ok
    assert _node(session, "/home/agent/Documents").owner == "root"
    assert engine.execute(session, "chown nobody:nope Documents").error == "chown: invalid group: 'nobody:nope'"


def test_attrib_hides_file(engine):
    session = _session(engine, ta.CMD)
    engine.execute(session, "attrib +h Documents\\mission_brief.txt")
    assert _node(session, "/home/agent/Documents/mission_brief.txt").hidden


# ---- processes and system
def test_kill_respects_ownership(engine):
    session = _session(engine)
    assert engine.execute(session, "kill 5678").error == "bash: kill: (5678) - Operation not permitted"
    assert engine.execute(session, "kill 9012").ok
    assert all(p.pid != 9012 for p in session.processes)
    assert engine.execute(session, "kill 4242").error == "bash: kill: (4242) - No such process"


def test_taskkill_and_stop_process(engine):
    session = _session(engine, ta.CMD)
    result = engine.execute(session, "taskkill /PID 1234")
    assert result.output == "SUCCESS: The process with PID 1234 has been terminated."
    session = _session(engine, ta.POWERSHELL)
    assert engine.execute(session, "Stop-Process -Name bash").ok
    assert "bash" not in [p.name for p in session.processes]


def test_process_listings(engine):
    assert "terminal-academy" in engine.execute(_session(engine), "ps aux").output
    assert "terminal-academy" in engine.execute(_session(engine, ta.CMD), "tasklist").output
    assert "ProcessName" in engine.execute(_session(engine, ta.POWERSHELL), "Get-Process").output


def test_df_lists_every_drive(engine):
    out = engine.execute(_session(engine), "df -h").output
    assert out.splitlines()[0].startswith("Filesystem")
    assert "/dev/sda1" in out
    assert len(out.splitlines()) == 5


def test_services_and_execution_policy(engine):
    session = _session(engine, ta.POWERSHELL)
    engine.execute(session, "Start-Service W32Time")
    assert session.services["W32Time"][1] == "Running"
    assert engine.execute(session, "Get-ExecutionPolicy").output == "Restricted"
    engine.execute(session, "Set-ExecutionPolicy RemoteSigned")
    assert engine.execute(session, "Get-ExecutionPolicy").output == "RemoteSigned"


def test_which_man_and_apropos(engine):
    session = _session(engine)
    assert engine.execute(session, "which ls").output == "/usr/bin/ls"
    assert engine.execute(session, "which cd").exit_code == 1
    assert "NAME" in engine.execute(session, "man ls").output
    result = engine.execute(session, "man nope")
    assert (result.exit_code, result.error) == (16, "No manual entry for nope")
    assert "grep" in engine.execute(session, "apropos search").output


def test_date_uses_injected_clock(engine):
    assert engine.execute(_session(engine), "date").output == "Wed May 01 12:00:00 UTC 2024"
    assert engine.execute(_session(engine, ta.CMD), "date /t").output == "Wed 05/01/2024"
    assert engine.execute(_session(engine, ta.POWERSHELL), "Get-Date -Format yyyy-MM-dd").output == "2024-05-01"


def test_whoami_per_family(engine):
    assert engine.execute(_session(engine), "whoami").output == "agent"
    assert engine.execute(_session(engine, ta.CMD), "whoami").output == "terminal-academy\\agent"


def test_ping_is_deterministic_with_seeded_rng():
    first = ta.Engine(rng=random.Random(7), clock=lambda: FIXED)
    second = ta.Engine(rng=random.Random(7), clock=lambda: FIXED)
    a = first.execute(_session(first, ta.CMD), "ping example.com").output
    b = second.execute(_session(second, ta.CMD), "ping example.com").output
    assert a == b
    assert "Pinging example.com" in a
