#!/usr/bin/env python3
"""
Terminal Academy - multi-shell command line training simulator

This module interprets textual commands against one of four shell dialects:
bash, the macOS Terminal, the Windows Command Prompt (CMD) and Windows
PowerShell. Every command runs against an in-memory virtual file system made
of several drives (C:, D:, ...); nothing touches the host disk. "System"
commands such as ``ps``, ``ping`` or ``ipconfig`` return realistic looking but
simulated text.

On top of the interpreter sits a small progression layer. Tutorials walk the
player through a list of expected commands and quests watch for story
triggers; both award experience points and levels.

The engine is driven through ``Engine.execute(session, line)`` which returns a
``CommandResult`` (output, error, exit code and a state patch). The
``TerminalAcademyShell`` class wraps the engine in an interactive ``cmd.Cmd``
loop with colourised output, persistent history and tab completion. Default
settings may be overridden with an optional YAML file (terminal_academy.yaml).
"""

import copy
import dataclasses
import difflib
import fnmatch
import logging
import math
import os
import random
import re
import shlex
from cmd import Cmd
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

# optional module
try:
    import readline  # noqa: F401
except Exception:
    readline = None

import yaml
from colorama import Fore, Style, init as colorama_init

log = logging.getLogger(__name__)

VERSION = "3.0.0"

# Shell dialects. POSIX dialects share one verb table; each dialect has its
# own prompt and "command not found" wording.
BASH = "bash"
MACOS = "macos"
CMD = "cmd"
POWERSHELL = "powershell"
SHELLS: Tuple[str, ...] = (BASH, CMD, POWERSHELL, MACOS)
POSIX_SHELLS = frozenset({BASH, MACOS})
WINDOWS_SHELLS = frozenset({CMD, POWERSHELL})

SHELL_NAMES = {
    BASH: "Bash (Bourne Again Shell)",
    MACOS: "macOS Terminal (Bash-compatible)",
    CMD: "Windows Command Prompt",
    POWERSHELL: "Windows PowerShell",
}

SHELL_BINARIES = {
    BASH: "/bin/bash",
    MACOS: "/bin/bash",
    CMD: "C:\\Windows\\System32\\cmd.exe",
    POWERSHELL: "C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\powershell.exe",
}

# Game modes
MODE_MENU = "menu"
MODE_TUTORIAL = "tutorial"
MODE_QUEST = "quest"
MODE_ARENA = "arena"
MODE_TERMINAL = "terminal"
MODES: Tuple[str, ...] = (MODE_MENU, MODE_TUTORIAL, MODE_QUEST, MODE_ARENA, MODE_TERMINAL)

# File system node kinds
FILE = "file"
DIRECTORY = "directory"
SYMLINK = "symlink"
DEVICE = "device"
PIPE = "pipe"
NODE_KINDS: Tuple[str, ...] = (FILE, DIRECTORY, SYMLINK, DEVICE, PIPE)

# Drive kinds
DRIVE_LOCAL = "local"
DRIVE_NETWORK = "network"
DRIVE_REMOVABLE = "removable"

POSIX_HOME = "/home/agent"
WINDOWS_HOME = "/Users/agent"

DIR_PERMISSIONS = "drwxr-xr-x"
FILE_PERMISSIONS = "-rw-r--r--"
DIR_SIZE = 4096

GIB = 1024 ** 3

# Defaults for the Settings dataclass. Any of them can be overridden from the
# YAML settings file.
STEP_XP = 25
TUTORIAL_BONUS_XP = 100
XP_PER_LEVEL = 100
QUEST_COMPLETION_CHANCE = 0.4
HISTORY_LIMIT = 100
MAX_EXPRESSION_DEPTH = 16
DEFAULT_USER = "agent"
DEFAULT_HOSTNAME = "terminal-academy"
SETTINGS_FILE = "terminal_academy.yaml"


# ---------- Utilities ----------
def c(text: Any, color: str = Fore.CYAN) -> str:
    """Colourise text for terminal display."""
    lines = str(text).splitlines() or [""]
    return "\n".join(f"{color}{ln}{Style.RESET_ALL}" for ln in lines)


def table(headers: List[str], rows: List[Tuple[Any, ...]]) -> str:
    """Render a simple table with even column widths."""
    widths = [len(h) for h in headers]
    for r in rows:
        for i, cell in enumerate(r):
            widths[i] = max(widths[i], len(str(cell)))
    line = "  ".join(f"{h:<{widths[i]}}" for i, h in enumerate(headers)).rstrip()
    rule = "  ".join("-" * len(h) + " " * (widths[i] - len(h)) for i, h in enumerate(headers)).rstrip()
    body = "\n".join(
        "  ".join(f"{str(cell):<{widths[i]}}" for i, cell in enumerate(r)).rstrip() for r in rows
    )
    return f"{line}\n{rule}" + ("\n" + body if body else "")


def human_size(num_bytes: float) -> str:
    """Convert bytes to a short human-friendly string (1.5K, 20G)."""
    value = float(num_bytes)
    for unit in ["B", "K", "M", "G", "T"]:
        if value < 1024:
            return f"{value:.0f}{unit}" if unit == "B" or value >= 10 else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}P"


def level_for(xp: int, per_level: int = XP_PER_LEVEL) -> int:
    """Player level for an experience total; level 1 starts at 0 XP."""
    return xp // per_level + 1


# ---------- Settings ----------
@dataclass
class Settings:
    """Tunable values for the engine.

    The defaults reproduce the classic game: 25 XP for each tutorial step,
    a 100 XP bonus for finishing a tutorial and a 40% chance that a
    qualifying quest command closes the quest.
    """

    step_xp: int = STEP_XP
    tutorial_bonus_xp: int = TUTORIAL_BONUS_XP
    xp_per_level: int = XP_PER_LEVEL
    quest_completion_chance: float = QUEST_COMPLETION_CHANCE
    history_limit: int = HISTORY_LIMIT
    user: str = DEFAULT_USER
    hostname: str = DEFAULT_HOSTNAME
    environment: Dict[str, str] = field(default_factory=dict)


def _coerce_setting(name: str, default: Any, value: Any) -> Any:
    """Convert a raw YAML value to the type of the setting's default; raise ValueError otherwise."""
    if isinstance(default, dict):
        if not isinstance(value, dict):
            raise ValueError("expected a mapping")
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, (bool, list, dict)) or value is None:
        raise ValueError(f"expected {type(default).__name__}, got {type(value).__name__}")
    if isinstance(default, str):
        return str(value)
    try:
        coerced = type(default)(value)
    except (TypeError, ValueError):
        raise ValueError(f"expected {type(default).__name__}, got {value!r}")
    if isinstance(default, float) and not 0.0 <= coerced <= 1.0:
        raise ValueError("expected a probability between 0 and 1")
    if isinstance(default, int) and coerced < (1 if name == "xp_per_level" else 0):
        raise ValueError(f"{coerced} is out of range")
    return coerced


def load_settings(path: str = SETTINGS_FILE) -> Settings:
    """Load engine settings from a YAML file if present.

    Unknown keys and values of the wrong type are reported and ignored.
    A missing file yields the defaults.
    """
    settings = Settings()
    if not os.path.exists(path):
        return settings
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        log.warning("ignoring %s: expected a mapping at the top level", path)
        return settings
    known = {f.name for f in dataclasses.fields(Settings)}
    for key, value in data.items():
        if key not in known:
            log.warning("ignoring unknown setting %r in %s", key, path)
            continue
        try:
            value = _coerce_setting(key, getattr(settings, key), value)
        except ValueError as e:
            log.warning("ignoring %r in %s: %s", key, path, e)
            continue
        setattr(settings, key, value)
    log.debug("loaded settings from %s", path)
    return settings


# ---------- Data model ----------
@dataclass
class FileSystemNode:
    """An entry of the virtual file system.

    Only directories carry ``children``; only files carry ``content`` and
    only symlinks carry ``link_target``. A node's ``name`` always equals its
    key in the parent's ``children`` mapping.
    """

    name: str
    kind: str = FILE
    content: Optional[str] = None
    size: int = 0
    permissions: str = FILE_PERMISSIONS
    owner: str = "root"
    group: str = "root"
    created: datetime = field(default_factory=datetime.now)
    modified: datetime = field(default_factory=datetime.now)
    accessed: datetime = field(default_factory=datetime.now)
    children: Optional[Dict[str, "FileSystemNode"]] = None
    link_target: Optional[str] = None
    hidden: bool = False
    mime_type: Optional[str] = None

    @property
    def is_dir(self) -> bool:
        return self.kind == DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.kind == FILE


def make_dir(name: str, children: Optional[List[FileSystemNode]] = None, owner: str = "root",
             group: str = "root", permissions: str = DIR_PERMISSIONS,
             when: Optional[datetime] = None, hidden: bool = False) -> FileSystemNode:
    """Create a directory node holding the given children."""
    when = when or datetime.now()
    return FileSystemNode(
        name=name, kind=DIRECTORY, size=DIR_SIZE, permissions=permissions,
        owner=owner, group=group, created=when, modified=when, accessed=when,
        children={child.name: child for child in (children or [])}, hidden=hidden,
    )


def make_file(name: str, content: str = "", owner: str = "root", group: str = "root",
              permissions: str = FILE_PERMISSIONS, when: Optional[datetime] = None,
              mime_type: str = "text/plain", hidden: bool = False) -> FileSystemNode:
    """Create a regular file node; its size is the UTF-8 length of the content."""
    when = when or datetime.now()
    return FileSystemNode(
        name=name, kind=FILE, content=content, size=len(content.encode("utf-8")),
        permissions=permissions, owner=owner, group=group, created=when,
        modified=when, accessed=when, mime_type=mime_type, hidden=hidden,
    )


def make_special(name: str, kind: str, owner: str = "root", group: str = "root",
                 permissions: str = "crw-rw-rw-", link_target: Optional[str] = None,
                 when: Optional[datetime] = None, hidden: bool = False) -> FileSystemNode:
    """Create a symlink, device or pipe node."""
    when = when or datetime.now()
    return FileSystemNode(
        name=name, kind=kind, size=len(link_target or ""), permissions=permissions,
        owner=owner, group=group, created=when, modified=when, accessed=when,
        link_target=link_target, hidden=hidden,
    )


@dataclass
class Drive:
    """A named volume with its own, exclusively owned, directory tree."""

    drive_id: str
    label: str
    kind: str
    total_space: int
    free_space: int
    fs_format: str
    root: FileSystemNode

    @property
    def used_space(self) -> int:
        return self.total_space - self.free_space


@dataclass
class Process:
    pid: int
    name: str
    cpu: float
    memory: float
    user: str


@dataclass
class TutorialStep:
    instruction: str
    expected_command: str
    hint: str
    explanation: str
    # called with (output, session); a True result also completes the step
    validator: Optional[Callable[[str, "SessionState"], bool]] = None


@dataclass
class Tutorial:
    tutorial_id: str
    title: str
    steps: List[TutorialStep]
    current_step: int = 0

    @property
    def step(self) -> TutorialStep:
        return self.steps[self.current_step]

    @property
    def on_last_step(self) -> bool:
        return self.current_step >= len(self.steps) - 1


@dataclass
class Quest:
    """A story mission watched by the quest overlay.

    ``triggers`` pairs a tuple of words with a narrative line: when every
    word appears in a successful, relevant command the line is appended to
    ``progress``. Typing ``key_artifact`` completes the quest outright.
    """

    quest_id: str
    title: str
    description: str
    objective: str
    commands: frozenset
    story: List[str]
    xp_reward: int
    required_files: List[str] = field(default_factory=list)
    triggers: List[Tuple[Tuple[str, ...], str]] = field(default_factory=list)
    key_artifact: str = ""
    completed: bool = False
    progress: List[str] = field(default_factory=list)


@dataclass
class CommandResult:
    """Outcome of one command line.

    ``state_patch`` maps ``SessionState`` attribute names to new values and is
    applied as a whole after the handler returns. ``notices`` carries
    progression messages (XP awards, next tutorial step, quest progress).
    """

    output: str = ""
    error: Optional[str] = None
    exit_code: int = 0
    state_patch: Dict[str, Any] = field(default_factory=dict)
    notices: List[str] = field(default_factory=list)
    clear_screen: bool = False
    # canonical name of the verb that handled the line
    command: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class StatusReport:
    """Read-only snapshot used by the ``status`` command and front-ends."""

    level: int
    xp: int
    commands_executed: int
    shell: str
    directory: str
    drive_id: str
    drive_label: str
    fs_format: str
    total_space: int
    free_space: int
    used_space: int
    mode: str
    process_count: int
    memory_percent: float
    cpu_percent: float
    user: str
    hostname: str
    home: str
    tutorial: Optional[str] = None
    tutorial_progress: Optional[Tuple[int, int]] = None
    quest: Optional[str] = None
    quest_completed: bool = False


@dataclass
class SessionState:
    """Everything a player session owns.

    Handlers never assign attributes directly; they return a state patch
    which ``apply_patch`` installs in one step. File system writes go through
    ``upsert_node`` on the drives held here.
    """

    drives: Dict[str, Drive]
    processes: List[Process]
    environment: Dict[str, str]
    current_drive: str = "C"
    current_directory: str = POSIX_HOME
    shell: str = BASH
    mode: str = MODE_MENU
    level: int = 1
    xp: int = 0
    history: Deque[str] = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))
    history_index: int = 0
    aliases: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    services: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    execution_policy: str = "Restricted"
    tutorial: Optional[Tutorial] = None
    quest: Optional[Quest] = None

    PATCHABLE = frozenset({
        "current_drive", "current_directory", "shell", "mode", "level", "xp",
        "environment", "processes", "aliases", "variables", "services",
        "execution_policy", "tutorial", "quest",
    })

    @property
    def drive(self) -> Drive:
        return self.drives[self.current_drive]

    @property
    def user(self) -> str:
        return self.environment.get("USER", DEFAULT_USER)

    def apply_patch(self, patch: Dict[str, Any]) -> None:
        """Install a state patch; leaving a mode drops its overlay."""
        unknown = set(patch) - self.PATCHABLE
        if unknown:
            raise ValueError(f"cannot patch session fields: {', '.join(sorted(unknown))}")
        if "shell" in patch and patch["shell"] not in SHELLS:
            raise ValueError(f"unknown shell: {patch['shell']}")
        if "mode" in patch and patch["mode"] not in MODES:
            raise ValueError(f"unknown mode: {patch['mode']}")
        previous_mode = self.mode
        for key, value in patch.items():
            setattr(self, key, value)
        if self.mode != MODE_TUTORIAL and "tutorial" not in patch:
            self.tutorial = None
        if self.mode != MODE_QUEST and "quest" not in patch:
            self.quest = None
        if self.mode != previous_mode:
            log.info("mode changed: %s -> %s", previous_mode, self.mode)

    # ---- history ring with replay cursor
    def record(self, line: str) -> None:
        """Append a command to the history; the oldest entry drops past the limit."""
        self.history.append(line)
        self.history_index = len(self.history)

    def previous_command(self) -> Optional[str]:
        if self.history_index <= 0:
            return None
        self.history_index -= 1
        return self.history[self.history_index]

    def next_command(self) -> str:
        if self.history_index < len(self.history):
            self.history_index += 1
        if self.history_index >= len(self.history):
            return ""
        return self.history[self.history_index]


class ShellError(Exception):
    """Expected command failure carrying the dialect-worded message."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


# ---------- File system model ----------
def split_path(path: str) -> List[str]:
    """Split a path into its non-empty segments ("/a//b/" -> ["a", "b"])."""
    return [p for p in path.replace("\\", "/").split("/") if p]


def normalize_path(path: str) -> str:
    """Collapse '.', '..' and repeated separators into a canonical absolute path."""
    parts: List[str] = []
    for segment in split_path(path):
        if segment == ".":
            continue
        if segment == "..":
            if parts:
                parts.pop()
            continue
        parts.append(segment)
    return "/" + "/".join(parts)


def join_path(base: str, name: str) -> str:
    """Join a relative name onto a directory path without doubling separators."""
    return "/" + "/".join(split_path(base) + split_path(name))


def parent_path(path: str) -> str:
    """Parent directory of ``path``; the root is its own parent."""
    return "/" + "/".join(split_path(path)[:-1])


def base_name(path: str) -> str:
    parts = split_path(path)
    return parts[-1] if parts else "/"


def resolve_node(drive: Drive, path: str) -> Optional[FileSystemNode]:
    """Walk ``path`` from the drive root.

    Returns None at the first missing segment or when an intermediate
    segment is not a directory.
    """
    node = drive.root
    for part in split_path(path):
        if not node.is_dir or part not in node.children:
            return None
        node = node.children[part]
    return node


def upsert_node(drive: Drive, path: str, node: Optional[FileSystemNode]) -> bool:
    """Insert, replace or (with ``node=None``) remove the entry at ``path``.

    Every directory between the root and the parent of the target is
    replaced by a fresh copy, so a root captured before the call keeps
    describing the old tree. Returns False when an intermediate segment is
    missing or not a directory, when removing an absent entry, and for the
    root itself.
    """
    parts = split_path(path)
    if not parts:
        return False
    chain = [drive.root]
    for part in parts[:-1]:
        child = chain[-1].children.get(part)
        if child is None or not child.is_dir:
            return False
        chain.append(child)
    leaf = parts[-1]
    if node is None and leaf not in chain[-1].children:
        return False
    if node is not None and node.name != leaf:
        node = dataclasses.replace(node, name=leaf)

    replacement = node
    for depth in range(len(chain) - 1, -1, -1):
        children = dict(chain[depth].children)
        if replacement is None:
            del children[parts[depth]]
        else:
            children[parts[depth]] = replacement
        replacement = dataclasses.replace(chain[depth], children=children)
    drive.root = replacement
    return True


def walk(node: FileSystemNode, path: str) -> Iterator[Tuple[str, FileSystemNode]]:
    """Yield ``(path, node)`` for a subtree in pre-order, children sorted by name."""
    yield path, node
    if node.is_dir:
        for name in sorted(node.children):
            yield from walk(node.children[name], join_path(path, name))


def tree_size(node: FileSystemNode) -> int:
    """Total size in bytes of the files below (and including) ``node``."""
    return sum(n.size for _, n in walk(node, "/") if not n.is_dir)


def copy_node(node: FileSystemNode, name: str, when: Optional[datetime] = None) -> FileSystemNode:
    """Deep copy a subtree under a new name; the copy shares nothing with the original."""
    duplicate = copy.deepcopy(node)
    duplicate.name = name
    if when is not None:
        duplicate.modified = duplicate.accessed = when
    return duplicate


def sorted_entries(node: FileSystemNode, show_hidden: bool = False) -> List[FileSystemNode]:
    """Children of a directory: directories first, then by case-sensitive name."""
    entries = [n for n in node.children.values() if show_hidden or not n.hidden]
    return sorted(entries, key=lambda n: (not n.is_dir, n.name))


# ---------- Path resolution ----------
HOME_TOKENS = {
    BASH: ("~",),
    MACOS: ("~",),
    CMD: ("%USERPROFILE%",),
    POWERSHELL: ("~", "$HOME", "$env:USERPROFILE"),
}

DRIVE_SPEC = re.compile(r"^([A-Za-z]):(.*)$")


def home_path(shell: str, user: str = DEFAULT_USER) -> str:
    """Home directory of ``user`` as seen from ``shell`` (/home/agent or /Users/agent)."""
    return f"/Users/{user}" if shell in WINDOWS_SHELLS else f"/home/{user}"


def resolve_path(shell: str, current_drive: str, current_directory: str, raw: str,
                 user: str = DEFAULT_USER) -> Tuple[str, str]:
    """Resolve a path typed in ``shell`` into ``(drive_id, absolute_path)``.

    The rules, in order:

    - empty input or the dialect's home token (``~``, ``%USERPROFILE%``,
      ``$HOME``) gives the home directory on the current drive;
    - ``..`` is the parent of the current directory and ``.`` the directory
      itself;
    - ``X:rest`` selects drive X explicitly (the letter is case-insensitive
      and backslashes become forward slashes);
    - a leading separator is absolute on the current drive;
    - anything else is joined onto the current directory.

    The result never contains '.', '..' or doubled separators and the root
    is always "/".
    """
    text = (raw or "").strip()
    if shell in WINDOWS_SHELLS:
        text = text.replace("\\", "/")
    home = home_path(shell, user)
    for token in HOME_TOKENS[shell]:
        matches = text.lower() == token.lower() if shell in WINDOWS_SHELLS else text == token
        if not text or matches:
            return current_drive, home
        if text.lower().startswith(token.lower() + "/"):
            return current_drive, normalize_path(home + text[len(token):])
    if text == "..":
        return current_drive, parent_path(current_directory)
    if text == ".":
        return current_drive, normalize_path(current_directory)
    m = DRIVE_SPEC.match(text)
    if m:
        return m.group(1).upper(), normalize_path("/" + m.group(2).replace("\\", "/"))
    if text.startswith("/"):
        return current_drive, normalize_path(text)
    return current_drive, normalize_path(join_path(current_directory, text))


def display_path(shell: str, drive_id: str, path: str) -> str:
    """Render a drive-local path the way ``shell`` prints it (C:\\Users\\agent)."""
    if shell in WINDOWS_SHELLS:
        return f"{drive_id}:" + path.replace("/", "\\")
    return path


def render_prompt(session: SessionState) -> str:
    """Prompt string for the session's dialect."""
    user = session.environment.get("USER", DEFAULT_USER)
    host = session.environment.get("HOSTNAME", DEFAULT_HOSTNAME)
    directory = session.current_directory
    if session.shell == MACOS:
        return f"{host}:{base_name(directory)} {user}$ "
    if session.shell == CMD:
        return f"{display_path(CMD, session.current_drive, directory)}> "
    if session.shell == POWERSHELL:
        return f"PS {display_path(POWERSHELL, session.current_drive, directory)}> "
    return f"{user}@{host}:{directory}$ "


# ---------- Initial world ----------
MISSION_BRIEF = (
    "CLASSIFIED: Operation Terminal Academy\n"
    "Agent training protocols and mission objectives.\n"
    "Advanced command-line operations required."
)
BACKUP_DATA = (
    "ENCRYPTED_BACKUP_DATA_V3.1\n"
    "Critical system files and configuration data.\n"
    "Decryption key required for access."
)
RECOVERY_KEY = (
    "-----BEGIN RECOVERY KEY-----\n"
    "MIIEvQIBADANBgkqhkiG9w0BAQEFAASCBKcwggSjAgEAAoIBAQC7VH2K9mF3n8Qx\n"
    "-----END RECOVERY KEY-----"
)
BASHRC = (
    "# ~/.bashrc: executed by bash for non-login shells.\n"
    "export PS1='\\u@\\h:\\w\\$ '\n"
    "alias ll='ls -la'\n"
    "alias la='ls -A'"
)
HOSTS = "127.0.0.1\tlocalhost\n127.0.1.1\tterminal-academy\n::1\t\tip6-localhost ip6-loopback"


def build_system_root(user: str, when: datetime) -> FileSystemNode:
    """The system drive: a Unix style tree plus a Windows style profile directory."""
    own = dict(owner=user, group="users", when=when)
    home = make_dir(user, [
        make_dir("Documents", [make_file("mission_brief.txt", MISSION_BRIEF, **own)], **own),
        make_dir("mission_data", [
            make_dir("classified", [
                make_file("backup.dat", BACKUP_DATA, permissions="-rw-------",
                          mime_type="application/octet-stream", **own),
                make_file("recovery.key", RECOVERY_KEY, permissions="-rw-------",
                          mime_type="application/x-pem-file", **own),
            ], permissions="drwx------", **own),
        ], permissions="drwx------", **own),
        make_file(".bashrc", BASHRC, hidden=True, **own),
        make_file(".profile", "# ~/.profile\n[ -f ~/.bashrc ] && . ~/.bashrc", hidden=True, **own),
        make_special("docs", SYMLINK, permissions="lrwxrwxrwx", link_target=f"/home/{user}/Documents",
                     owner=user, group="users", when=when),
    ], **own)
    profile = make_dir(user, [
        make_dir("Desktop", [], **own),
        make_dir("Documents", [
            make_file("mission_brief.txt", MISSION_BRIEF, **own),
            make_file("readme.txt", "Welcome to your Windows profile.", **own),
        ], **own),
        make_dir("Downloads", [], **own),
        make_file("NTUSER.DAT", "", hidden=True, mime_type="application/octet-stream", **own),
    ], **own)
    return make_dir("/", [
        make_dir("home", [home], when=when),
        make_dir("Users", [profile], when=when),
        make_dir("etc", [
            make_file("hostname", DEFAULT_HOSTNAME, when=when),
            make_file("hosts", HOSTS, when=when),
            make_file("motd", "Welcome to Terminal Academy. Type 'help' to begin.", when=when),
        ], when=when),
        make_dir("dev", [
            make_special("null", DEVICE, when=when),
            make_special("tty", DEVICE, when=when),
            make_special("initctl", PIPE, permissions="prw-------", when=when),
        ], when=when),
        make_dir("tmp", [], permissions="drwxrwxrwt", when=when),
        make_dir("usr", [make_dir("bin", [], when=when), make_dir("share", [], when=when)], when=when),
    ], when=when)


def build_drives(user: str, when: datetime) -> Dict[str, Drive]:
    return {
        "C": Drive("C", "System", DRIVE_LOCAL, 500 * GIB, 250 * GIB, "NTFS", build_system_root(user, when)),
        "D": Drive("D", "Data", DRIVE_LOCAL, 1000 * GIB, 750 * GIB, "NTFS", make_dir("/", when=when)),
        "E": Drive("E", "USB", DRIVE_REMOVABLE, 32 * GIB, 30 * GIB, "FAT32", make_dir("/", [
            make_file("README.txt", "Field agent transfer stick. Handle with care.", when=when),
        ], when=when)),
        "Z": Drive("Z", "Share", DRIVE_NETWORK, 2000 * GIB, 1200 * GIB, "NTFS", make_dir("/", [
            make_dir("shared", [make_file("roster.csv", "name,clearance\nagent,3\nhandler,5", when=when)],
                     when=when),
        ], when=when)),
    }


def default_processes(user: str) -> List[Process]:
    return [
        Process(1234, "terminal-academy", 2.3, 15.2, user),
        Process(5678, "system", 0.1, 2.1, "root"),
        Process(9012, "bash", 0.0, 1.5, user),
        Process(3456, "sshd", 0.0, 0.8, "root"),
        Process(7890, "networkd", 0.2, 3.2, "root"),
    ]


DEFAULT_SERVICES = OrderedDict([
    ("BITS", ("Background Intelligent Transfer Service", "Running")),
    ("Dhcp", ("DHCP Client", "Running")),
    ("Spooler", ("Print Spooler", "Running")),
    ("W32Time", ("Windows Time", "Stopped")),
    ("WinRM", ("Windows Remote Management (WS-Management)", "Stopped")),
    ("wuauserv", ("Windows Update", "Running")),
])


def default_environment(user: str, hostname: str) -> Dict[str, str]:
    return {
        "USER": user,
        "USERNAME": user,
        "HOSTNAME": hostname,
        "COMPUTERNAME": hostname.upper(),
        "SHELL": SHELL_BINARIES[BASH],
        "HOME": f"/home/{user}",
        "USERPROFILE": f"C:\\Users\\{user}",
        "PATH": "/usr/local/bin:/usr/bin:/bin",
        "PWD": f"/home/{user}",
        "TERM": "xterm-256color",
        "LANG": "en_US.UTF-8",
        "DISPLAY": ":0",
    }


def new_session(settings: Optional[Settings] = None, when: Optional[datetime] = None) -> SessionState:
    """Create a fresh session: menu mode, bash, level 1, home directory on C:."""
    settings = settings or Settings()
    when = when or datetime.now()
    environment = default_environment(settings.user, settings.hostname)
    environment.update(settings.environment)
    return SessionState(
        drives=build_drives(settings.user, when),
        processes=default_processes(settings.user),
        environment=environment,
        current_directory=f"/home/{settings.user}",
        history=deque(maxlen=settings.history_limit),
        aliases={"ll": "ls -la", "la": "ls -A"},
        services=OrderedDict(DEFAULT_SERVICES),
    )


# ---------- Handler context ----------
@dataclass
class ShellContext:
    """What a handler sees: the engine, the session and the verb as typed.

    ``name`` is the canonical command name (``Get-ChildItem`` for ``gci``);
    PowerShell error messages are prefixed with it.
    """

    engine: "Engine"
    session: SessionState
    verb: str
    name: str = ""

    @property
    def shell(self) -> str:
        return self.session.shell

    @property
    def posix(self) -> bool:
        return self.session.shell in POSIX_SHELLS

    @property
    def rng(self) -> random.Random:
        return self.engine.rng

    @property
    def user(self) -> str:
        return self.session.user

    def now(self) -> datetime:
        return self.engine.clock()

    def resolve(self, raw: str) -> Tuple[str, str]:
        return resolve_path(self.shell, self.session.current_drive, self.session.current_directory, raw,
                            self.user)

    def lookup(self, raw: str) -> Tuple[str, str, Optional[FileSystemNode]]:
        """Resolve ``raw`` and fetch its node (None when absent or on an unknown drive)."""
        drive_id, path = self.resolve(raw)
        drive = self.session.drives.get(drive_id)
        return drive_id, path, resolve_node(drive, path) if drive else None

    def display(self, drive_id: str, path: str) -> str:
        return display_path(self.shell, drive_id, path)

    def cwd(self) -> str:
        return self.display(self.session.current_drive, self.session.current_directory)

    def write(self, drive_id: str, path: str, node: Optional[FileSystemNode], error: str) -> None:
        """Store (or remove) a node, raising ShellError(error) when the parent is missing."""
        drive = self.session.drives.get(drive_id)
        if drive is None or not upsert_node(drive, path, node):
            raise ShellError(error)

    def in_use(self, drive_id: str, path: str) -> bool:
        """True for the root, the current directory and its ancestors."""
        if path == "/" or drive_id != self.session.current_drive:
            return path == "/"
        cwd = self.session.current_directory
        return cwd == path or cwd.startswith(path + "/")

    def new_dir(self, name: str) -> FileSystemNode:
        return make_dir(name, owner=self.user, group="users", when=self.now())

    def new_file(self, name: str, content: str = "") -> FileSystemNode:
        return make_file(name, content, owner=self.user, group="users", when=self.now())


def _ok(output: str = "", **patch) -> CommandResult:
    return CommandResult(output=output, state_patch=patch)


def _err(message: str, exit_code: int = 1, output: str = "") -> CommandResult:
    return CommandResult(output=output, error=message, exit_code=exit_code)


# ---- argument parsing, one flavour per dialect family
def _posix_opts(args: List[str], values: str = "") -> Tuple[set, Dict[str, str], List[str]]:
    """Split POSIX arguments into flags, valued options and operands.

    ``-la`` yields the flags ``l`` and ``a``; letters listed in ``values``
    consume the rest of the word or the next argument (``-n 5``, ``-n5``).
    Everything after ``--`` is an operand.
    """
    flags, opts, operands = set(), {}, []
    it = iter(args)
    for arg in it:
        if arg == "--":
            operands.extend(it)
            break
        if arg.startswith("--") and len(arg) > 2:
            flags.add(arg[2:])
        elif arg.startswith("-") and len(arg) > 1:
            letters = arg[1:]
            for i, ch in enumerate(letters):
                if ch in values:
                    opts[ch] = letters[i + 1:] or next(it, "")
                    break
                flags.add(ch)
        else:
            operands.append(arg)
    return flags, opts, operands


CMD_SWITCH = re.compile(r"^/([A-Za-z?]{1,3})(?::(.*))?$")


def _cmd_opts(args: List[str], values: Tuple[str, ...] = ()) -> Tuple[Dict[str, Any], List[str]]:
    """Split CMD arguments into ``/x`` switches (lower-cased) and operands."""
    switches: Dict[str, Any] = {}
    operands = []
    it = iter(args)
    for arg in it:
        m = CMD_SWITCH.match(arg)
        if not m:
            operands.append(arg)
            continue
        key = m.group(1).lower()
        if m.group(2) is not None:
            switches[key] = m.group(2)
        elif key in values:
            switches[key] = next(it, "")
        else:
            switches[key] = True
    return switches, operands


PS_SWITCHES = frozenset({
    "force", "recurse", "confirm", "whatif", "passthru", "list", "casesensitive",
    "simplematch", "notmatch", "all", "nonewline",
})
PS_PARAM_ALIASES = {
    "type": "itemtype",
    "literalpath": "path",
    "filepath": "path",
    "fullpath": "path",
    "fg": "foregroundcolor",
    "head": "totalcount",
    "first": "totalcount",
    "last": "tail",
    "target": "destination",
}


def _ps_params(args: List[str], switches=PS_SWITCHES) -> Tuple[Dict[str, Any], List[str]]:
    """Split PowerShell arguments into named parameters and positionals.

    Parameter names are case-insensitive and stored lower-cased; switch
    parameters map to True, the others consume the next argument.
    """
    params: Dict[str, Any] = {}
    positional = []
    it = iter(args)
    for arg in it:
        if arg.startswith("-") and len(arg) > 1 and not arg[1:].replace(".", "").isdigit():
            key = arg[1:].rstrip(":").lower()
            key = PS_PARAM_ALIASES.get(key, key)
            if key in switches:
                params[key] = True
            else:
                params[key] = next(it, "")
        else:
            positional.append(arg)
    return params, positional


# ---- dialect-worded failures
def _bash(ctx: ShellContext) -> str:
    return "-bash" if ctx.shell == MACOS else "bash"


def _no_such_file(ctx: ShellContext, raw: str) -> str:
    if ctx.shell == CMD:
        return "The system cannot find the file specified."
    if ctx.shell == POWERSHELL:
        drive_id, path = ctx.resolve(raw)
        return f"{ctx.name} : Cannot find path '{ctx.display(drive_id, path)}' because it does not exist."
    return f"{ctx.verb}: {raw}: No such file or directory"


def _is_directory(ctx: ShellContext, raw: str) -> str:
    if ctx.shell == CMD:
        return "Access is denied."
    if ctx.shell == POWERSHELL:
        drive_id, path = ctx.resolve(raw)
        return f"{ctx.name} : Access to the path '{ctx.display(drive_id, path)}' is denied."
    return f"{ctx.verb}: {raw}: Is a directory"


def _busy(ctx: ShellContext, raw: str) -> str:
    if ctx.posix:
        return f"{ctx.verb}: cannot remove '{raw}': Device or resource busy"
    if ctx.shell == POWERSHELL:
        return f"{ctx.name} : The process cannot access '{raw}' because it is being used by another process."
    return "The process cannot access the file because it is being used by another process."


def _missing_operand(ctx: ShellContext, what: str = "operand") -> CommandResult:
    if ctx.shell == CMD:
        return _err("The syntax of the command is incorrect.")
    if ctx.shell == POWERSHELL:
        return _err(f"{ctx.name} : Cannot process command because of one or more missing mandatory parameters: Path.")
    return _err(f"{ctx.verb}: missing {what}\nTry '{ctx.verb} --help' for more information.")


def follow_links(drive: Drive, path: str, node: Optional[FileSystemNode]) -> Tuple[str, Optional[FileSystemNode]]:
    """Resolve a chain of symlinks on one drive; dangling or looping links give None."""
    for _ in range(8):
        if node is None or node.kind != SYMLINK:
            return path, node
        target = node.link_target or ""
        path = normalize_path(target if target.startswith("/") else join_path(parent_path(path), target))
        node = resolve_node(drive, path)
    return path, None


def _read_file(ctx: ShellContext, raw: str) -> FileSystemNode:
    """Fetch a readable file node for ``raw`` or raise the dialect's error."""
    drive_id, path, node = ctx.lookup(raw)
    if node is not None and node.kind == SYMLINK:
        path, node = follow_links(ctx.session.drives[drive_id], path, node)
    if node is None:
        raise ShellError(_no_such_file(ctx, raw))
    if node.is_dir:
        raise ShellError(_is_directory(ctx, raw))
    return node


def _text(node: FileSystemNode) -> str:
    return node.content or ""


def _expand_glob(ctx: ShellContext, raw: str) -> List[str]:
    """Expand ``*``/``?`` in the last segment of ``raw``; no match keeps it as typed."""
    if not any(ch in raw for ch in "*?["):
        return [raw]
    text = raw.replace("\\", "/") if ctx.shell in WINDOWS_SHELLS else raw
    head, _, pattern = text.rpartition("/")
    prefix = head + "/" if head or text.startswith("/") else ""
    _, _, node = ctx.lookup(head or ".")
    if node is None or not node.is_dir:
        return [raw]
    names = [n.name for n in sorted_entries(node, show_hidden=pattern.startswith("."))]
    if ctx.shell in WINDOWS_SHELLS:
        matched = [n for n in names if fnmatch.fnmatch(n.lower(), pattern.lower())]
    else:
        matched = [n for n in names if fnmatch.fnmatchcase(n, pattern)]
    return [prefix + n for n in matched] or [raw]


def _expand_all(ctx: ShellContext, operands: List[str]) -> List[str]:
    return [item for raw in operands for item in _expand_glob(ctx, raw)]


# ---------- Handlers: listing and navigation ----------
def _ps_mode(node: FileSystemNode) -> str:
    readonly = "w" not in node.permissions[1:4]
    return "".join([
        "d" if node.is_dir else "-",
        "-" if node.is_dir else "a",
        "r" if readonly and not node.is_dir else "-",
        "h" if node.hidden else "-",
        "-",
        "l" if node.kind == SYMLINK else "-",
    ])


def _posix_name(node: FileSystemNode) -> str:
    if node.is_dir:
        return node.name + "/"
    if node.kind == SYMLINK:
        return node.name + "@"
    return node.name


def format_listing(ctx: ShellContext, drive_id: str, path: str, entries: List[FileSystemNode],
                   long_format: bool = False) -> str:
    """Render an already filtered and sorted entry sequence in the dialect's layout."""
    if ctx.shell == CMD:
        drive = ctx.session.drives[drive_id]
        lines = [
            f" Volume in drive {drive_id} is {drive.label}",
            " Volume Serial Number is 1234-5678",
            "",
            f" Directory of {display_path(CMD, drive_id, path)}",
            "",
        ]
        for e in entries:
            stamp = e.modified.strftime("%m/%d/%Y  %H:%M")
            size = f"{'<DIR>':<14}" if e.is_dir else f"{e.size:>14,}"
            lines.append(f"{stamp}    {size} {e.name}")
        files = [e for e in entries if not e.is_dir]
        dirs = len(entries) - len(files)
        lines.append(f"{len(files):>16} File(s) {sum(e.size for e in files):>14,} bytes")
        lines.append(f"{dirs:>16} Dir(s)  {drive.free_space:>14,} bytes free")
        return "\n".join(lines)
    if ctx.shell == POWERSHELL:
        lines = [
            "",
            f"    Directory: {display_path(POWERSHELL, drive_id, path)}",
            "",
            "",
            "Mode                 LastWriteTime         Length Name",
            "----                 -------------         ------ ----",
        ]
        for e in entries:
            length = "" if e.is_dir else str(e.size)
            lines.append(
                f"{_ps_mode(e):<6}{e.modified.strftime('%m/%d/%Y'):>20}{e.modified.strftime('%H:%M'):>8}"
                f"{length:>15} {e.name}"
            )
        return "\n".join(lines) + "\n"
    if long_format:
        blocks = sum(math.ceil(e.size / 1024) for e in entries)
        lines = [f"total {blocks}"]
        for e in entries:
            links = 2 + sum(1 for ch in (e.children or {}).values() if ch.is_dir) if e.is_dir else 1
            name = f"{e.name} -> {e.link_target}" if e.kind == SYMLINK else _posix_name(e)
            lines.append(
                f"{e.permissions} {links:>2} {e.owner:<8} {e.group:<8} {e.size:>8} "
                f"{e.modified.strftime('%b %d %H:%M')} {name}"
            )
        return "\n".join(lines)
    return "  ".join(_posix_name(e) for e in entries)


def h_list(ctx: ShellContext, args: List[str]) -> CommandResult:
    """List a directory (ls, dir, Get-ChildItem).

    Hidden entries are shown with -a/-A, /a or -Force. Directories come
    first, then files, each group in case-sensitive name order.
    """
    long_format = False
    if ctx.shell == CMD:
        switches, operands = _cmd_opts(args)
        show_all = "a" in switches
    elif ctx.shell == POWERSHELL:
        params, operands = _ps_params(args)
        show_all = "force" in params
        if "path" in params:
            operands = [params["path"]] + operands
    else:
        flags, _, operands = _posix_opts(args)
        show_all = bool(flags & {"a", "A", "all"})
        long_format = "l" in flags
    raw = operands[0] if operands else "."
    drive_id, path, node = ctx.lookup(raw)
    if node is not None and node.kind == SYMLINK and operands:
        path, node = follow_links(ctx.session.drives[drive_id], path, node)
    if node is None:
        if ctx.shell == CMD:
            return _err("File Not Found")
        if ctx.shell == POWERSHELL:
            return _err(_no_such_file(ctx, raw))
        return _err(f"ls: cannot access '{raw}': No such file or directory", 2)
    if node.is_dir:
        entries = sorted_entries(node, show_all)
        return _ok(format_listing(ctx, drive_id, path, entries, long_format))
    if ctx.posix and not long_format:
        return _ok(raw)
    return _ok(format_listing(ctx, drive_id, parent_path(path), [node], long_format))


def h_pwd(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Print the working directory."""
    if ctx.shell == POWERSHELL:
        return _ok(f"\nPath\n----\n{ctx.cwd()}\n")
    return _ok(ctx.cwd())


def _cd_failure(ctx: ShellContext, raw: str, node: Optional[FileSystemNode]) -> CommandResult:
    if node is None:
        if ctx.shell == CMD:
            return _err("The system cannot find the path specified.")
        if ctx.shell == POWERSHELL:
            return _err(f"Set-Location : Cannot find path '{raw}' because it does not exist.")
        return _err(f"{_bash(ctx)}: cd: {raw}: No such file or directory")
    if ctx.shell == CMD:
        return _err("The directory name is invalid.")
    if ctx.shell == POWERSHELL:
        return _err(f"Set-Location : Path '{raw}' is not a directory.")
    return _err(f"{_bash(ctx)}: cd: {raw}: Not a directory")


def _moved_to(ctx: ShellContext, drive_id: str, path: str, output: str = "") -> CommandResult:
    environment = dict(ctx.session.environment)
    environment["OLDPWD"] = ctx.session.current_directory
    environment["PWD"] = path
    return _ok(output, current_drive=drive_id, current_directory=path, environment=environment)


def h_cd(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Change directory (cd, chdir, Set-Location).

    CMD prints the working directory when called without an argument and
    only switches drives with /d; ``cd -`` returns to $OLDPWD in POSIX shells.
    """
    switch_drive = True
    output = ""
    if ctx.shell == CMD:
        switches, operands = _cmd_opts(args)
        if not operands:
            return _ok(ctx.cwd())
        raw = " ".join(operands)
        switch_drive = "d" in switches
    elif ctx.shell == POWERSHELL:
        params, operands = _ps_params(args)
        raw = params.get("path") or (operands[0] if operands else "")
    else:
        raw = args[0] if args else ""
        if raw == "-":
            if "OLDPWD" not in ctx.session.environment:
                return _err(f"{_bash(ctx)}: cd: OLDPWD not set")
            raw = ctx.session.environment["OLDPWD"]
            output = raw
    drive_id, path, node = ctx.lookup(raw)
    if node is not None and node.kind == SYMLINK:
        path, node = follow_links(ctx.session.drives[drive_id], path, node)
    if node is None or not node.is_dir:
        return _cd_failure(ctx, raw, node)
    if drive_id != ctx.session.current_drive and not switch_drive:
        return _ok()
    return _moved_to(ctx, drive_id, path, output)


def h_switch_drive(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Make another drive current by typing its letter (``D:``)."""
    drive_id = ctx.verb[0].upper()
    if drive_id not in ctx.session.drives:
        if ctx.shell == POWERSHELL:
            return _err(f"Set-Location : Cannot find drive. A drive with the name '{drive_id}' does not exist.")
        return _err("The system cannot find the drive specified.")
    if drive_id == ctx.session.current_drive:
        return _ok()
    return _moved_to(ctx, drive_id, "/")


# ---------- Handlers: creating and removing ----------
def _create_dirs(ctx: ShellContext, drive_id: str, path: str, error: str) -> None:
    """mkdir -p: create every missing directory down to ``path``."""
    drive = ctx.session.drives.get(drive_id)
    if drive is None:
        raise ShellError(error)
    current = "/"
    for part in split_path(path):
        current = join_path(current, part)
        node = resolve_node(drive, current)
        if node is None:
            ctx.write(drive_id, current, ctx.new_dir(part), error)
        elif not node.is_dir:
            raise ShellError(error)


def _exists_message(ctx: ShellContext, raw: str, display: str) -> str:
    if ctx.shell == CMD:
        return f"A subdirectory or file {raw} already exists."
    if ctx.shell == POWERSHELL:
        return f"New-Item : An item with the specified name {display} already exists."
    return f"mkdir: cannot create directory '{raw}': File exists"


def h_mkdir(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Create directories (mkdir, md). CMD always creates missing parents."""
    if ctx.shell == POWERSHELL:
        return h_new_item(ctx, args + ["-ItemType", "Directory"])
    if ctx.shell == CMD:
        _, operands = _cmd_opts(args)
        parents = True
    else:
        flags, _, operands = _posix_opts(args)
        parents = bool(flags & {"p", "parents"})
    if not operands:
        return _missing_operand(ctx)
    errors = []
    for raw in operands:
        drive_id, path, node = ctx.lookup(raw)
        if node is not None:
            if not (parents and node.is_dir and ctx.posix):
                errors.append(_exists_message(ctx, raw, ctx.display(drive_id, path)))
            continue
        if ctx.shell == CMD:
            missing = "The system cannot find the path specified."
        else:
            missing = f"mkdir: cannot create directory '{raw}': No such file or directory"
        try:
            if parents:
                _create_dirs(ctx, drive_id, path, missing)
            else:
                ctx.write(drive_id, path, ctx.new_dir(base_name(path)), missing)
        except ShellError as e:
            errors.append(str(e))
    if errors:
        return _err("\n".join(errors))
    return _ok()


def h_new_item(ctx: ShellContext, args: List[str]) -> CommandResult:
    """New-Item <path> [-ItemType File|Directory] [-Value text] [-Force]."""
    params, operands = _ps_params(args)
    raw = params.get("path") or (operands[0] if operands else "")
    if params.get("name"):
        raw = join_path(raw, params["name"]).lstrip("/") if raw else params["name"]
    if not raw:
        return _missing_operand(ctx)
    kind = str(params.get("itemtype", "File")).lower()
    if kind not in ("file", "directory"):
        return _err(f"New-Item : The provider does not support the use of '{params.get('itemtype')}' as an item type.")
    drive_id, path, node = ctx.lookup(raw)
    display = ctx.display(drive_id, path)
    if node is not None and (not params.get("force") or node.is_dir != (kind == "directory")):
        return _err(_exists_message(ctx, raw, display))
    missing = f"New-Item : Could not find a part of the path '{display}'."
    if kind == "directory":
        if params.get("force"):
            _create_dirs(ctx, drive_id, path, missing)
        elif node is None:
            ctx.write(drive_id, path, ctx.new_dir(base_name(path)), missing)
    else:
        ctx.write(drive_id, path, ctx.new_file(base_name(path), str(params.get("value", ""))), missing)
    created = resolve_node(ctx.session.drives[drive_id], path)
    return _ok(format_listing(ctx, drive_id, parent_path(path), [created]))


def h_touch(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Create empty files; an existing entry is an error."""
    _, _, operands = _posix_opts(args)
    if not operands:
        return _err("touch: missing file operand\nTry 'touch --help' for more information.")
    errors = []
    for raw in operands:
        drive_id, path, node = ctx.lookup(raw)
        if node is not None:
            errors.append(f"touch: cannot touch '{raw}': File exists")
            continue
        try:
            ctx.write(drive_id, path, ctx.new_file(base_name(path)),
                      f"touch: cannot touch '{raw}': No such file or directory")
        except ShellError as e:
            errors.append(str(e))
    if errors:
        return _err("\n".join(errors))
    return _ok()


def h_rmdir(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Remove directories (rmdir, rd). ``rd /s`` removes a whole tree."""
    if ctx.shell == CMD:
        switches, operands = _cmd_opts(args)
        recursive = "s" in switches
    else:
        _, _, operands = _posix_opts(args)
        recursive = False
    if not operands:
        return _missing_operand(ctx)
    errors = []
    for raw in operands:
        drive_id, path, node = ctx.lookup(raw)
        if ctx.shell == CMD:
            if node is None:
                errors.append("The system cannot find the file specified.")
            elif not node.is_dir:
                errors.append("The directory name is invalid.")
            elif ctx.in_use(drive_id, path):
                errors.append(_busy(ctx, raw))
            elif node.children and not recursive:
                errors.append("The directory is not empty.")
            else:
                ctx.write(drive_id, path, None, "The system cannot find the file specified.")
            continue
        reason = None
        if node is None:
            reason = "No such file or directory"
        elif not node.is_dir:
            reason = "Not a directory"
        elif ctx.in_use(drive_id, path):
            reason = "Device or resource busy"
        elif node.children:
            reason = "Directory not empty"
        if reason:
            errors.append(f"rmdir: failed to remove '{raw}': {reason}")
        else:
            ctx.write(drive_id, path, None, f"rmdir: failed to remove '{raw}': No such file or directory")
    if errors:
        return _err("\n".join(errors))
    return _ok()


def h_rm(ctx: ShellContext, args: List[str]) -> CommandResult:
    """rm [-r] [-f] file..."""
    flags, _, operands = _posix_opts(args)
    recursive = bool(flags & {"r", "R", "recursive"})
    force = bool(flags & {"f", "force"})
    if not operands:
        if force:
            return _ok()
        return _missing_operand(ctx)
    errors = []
    for raw in _expand_all(ctx, operands):
        drive_id, path, node = ctx.lookup(raw)
        if node is None:
            if not force:
                errors.append(f"rm: cannot remove '{raw}': No such file or directory")
        elif node.is_dir and not recursive:
            errors.append(f"rm: cannot remove '{raw}': Is a directory")
        elif ctx.in_use(drive_id, path):
            errors.append(_busy(ctx, raw))
        else:
            ctx.write(drive_id, path, None, f"rm: cannot remove '{raw}': No such file or directory")
    if errors:
        return _err("\n".join(errors))
    return _ok()


def h_del(ctx: ShellContext, args: List[str]) -> CommandResult:
    """del / erase: delete files; a directory operand deletes the files inside it."""
    switches, operands = _cmd_opts(args)
    if not operands:
        return _missing_operand(ctx)
    errors = []
    for raw in _expand_all(ctx, operands):
        drive_id, path, node = ctx.lookup(raw)
        if node is None:
            errors.append(f"Could Not Find {ctx.display(drive_id, path)}")
            continue
        if not node.is_dir:
            ctx.write(drive_id, path, None, "The system cannot find the file specified.")
            continue
        targets = [
            (p, n) for p, n in walk(node, path)
            if not n.is_dir and ("s" in switches or parent_path(p) == path)
        ]
        for target_path, _ in targets:
            ctx.write(drive_id, target_path, None, "The system cannot find the file specified.")
    if errors:
        return _err("\n".join(errors))
    return _ok()


def h_remove_item(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Remove-Item <path> [-Recurse] [-Force]."""
    params, operands = _ps_params(args)
    if "path" in params:
        operands = [params["path"]] + operands
    if not operands:
        return _missing_operand(ctx)
    errors = []
    for raw in _expand_all(ctx, operands):
        drive_id, path, node = ctx.lookup(raw)
        display = ctx.display(drive_id, path)
        if node is None:
            errors.append(_no_such_file(ctx, raw))
        elif ctx.in_use(drive_id, path):
            errors.append(_busy(ctx, raw))
        elif node.is_dir and node.children and not params.get("recurse"):
            errors.append(f"Remove-Item : The item at {display} has children and the Recurse "
                          "parameter was not specified.")
        elif node.hidden and not params.get("force"):
            errors.append(f"Remove-Item : You do not have sufficient access rights to perform this "
                          f"operation or the item is hidden, system, or read only. {display}")
        else:
            ctx.write(drive_id, path, None, _no_such_file(ctx, raw))
    if errors:
        return _err("\n".join(errors))
    return _ok()


# ---------- Handlers: copy, move and rename ----------
def _transfer_errors(ctx: ShellContext, move: bool) -> Dict[str, Callable[[str], str]]:
    """Dialect wording for the copy/move failure cases."""
    action = "move" if move else "copy"
    if ctx.shell == CMD:
        return {
            "missing": lambda raw: "The system cannot find the file specified.",
            "directory": lambda raw: "The system cannot find the file specified.",
            "target": lambda raw: "The system cannot find the path specified.",
            "not_dir": lambda raw: "The syntax of the command is incorrect.",
            "same": lambda raw: "The file cannot be copied onto itself.",
            "cycle": lambda raw: "Cannot perform a cyclic copy",
            "busy": lambda raw: _busy(ctx, raw),
        }
    if ctx.shell == POWERSHELL:
        return {
            "missing": lambda raw: _no_such_file(ctx, raw),
            "directory": lambda raw: _no_such_file(ctx, raw),
            "target": lambda raw: f"{ctx.name} : Could not find a part of the path '{raw}'.",
            "not_dir": lambda raw: f"{ctx.name} : Container cannot be copied onto existing leaf item.",
            "same": lambda raw: f"{ctx.name} : Cannot overwrite the item {raw} with itself.",
            "cycle": lambda raw: f"{ctx.name} : Cannot {action} an item to a subdirectory of itself.",
            "busy": lambda raw: _busy(ctx, raw),
        }
    verb = ctx.verb
    return {
        "missing": lambda raw: f"{verb}: cannot stat '{raw}': No such file or directory",
        "directory": lambda raw: f"{verb}: -r not specified; omitting directory '{raw}'",
        "target": lambda raw: f"{verb}: cannot create regular file '{raw}': No such file or directory",
        "not_dir": lambda raw: f"{verb}: target '{raw}' is not a directory",
        "same": lambda raw: f"{verb}: '{raw}' and '{raw}' are the same file",
        "cycle": lambda raw: f"{verb}: cannot {action} '{raw}' to a subdirectory of itself",
        "busy": lambda raw: f"{verb}: cannot move '{raw}': Device or resource busy",
    }


def transfer(ctx: ShellContext, sources: List[str], dest: str, move: bool = False,
             recursive: bool = True, shallow_dirs: bool = False) -> int:
    """Copy or move ``sources`` to ``dest`` and return how many entries were transferred.

    A destination that is an existing directory receives the sources under
    their own names; otherwise a single source is stored as ``dest``.
    ``shallow_dirs`` copies a directory without its contents (PowerShell
    Copy-Item without -Recurse). Raises ShellError with every failure.
    """
    errors = _transfer_errors(ctx, move)
    dest_drive, dest_path, dest_node = ctx.lookup(dest)
    into_dir = dest_node is not None and dest_node.is_dir
    if len(sources) > 1 and not into_dir:
        raise ShellError(errors["not_dir"](dest))
    problems = []
    count = 0
    for raw in sources:
        src_drive, src_path, node = ctx.lookup(raw)
        if node is None:
            problems.append(errors["missing"](raw))
            continue
        if node.is_dir and not recursive and not shallow_dirs and not move:
            problems.append(errors["directory"](raw))
            continue
        target = join_path(dest_path, node.name) if into_dir else dest_path
        if (src_drive, src_path) == (dest_drive, target):
            problems.append(errors["same"](raw))
            continue
        if node.is_dir and src_drive == dest_drive and target.startswith(src_path + "/"):
            problems.append(errors["cycle"](raw))
            continue
        if move and ctx.in_use(src_drive, src_path):
            problems.append(errors["busy"](raw))
            continue
        existing = resolve_node(ctx.session.drives[dest_drive], target) if dest_drive in ctx.session.drives else None
        if existing is not None and existing.is_dir and not node.is_dir:
            problems.append(_is_directory(ctx, dest))
            continue
        duplicate = copy_node(node, base_name(target), None if move else ctx.now())
        if node.is_dir and shallow_dirs and not move:
            duplicate.children = {}
        try:
            ctx.write(dest_drive, target, duplicate, errors["target"](dest))
        except ShellError as e:
            problems.append(str(e))
            continue
        if move:
            ctx.write(src_drive, src_path, None, errors["missing"](raw))
        count += 1
    if problems:
        raise ShellError("\n".join(problems))
    return count


def h_cp(ctx: ShellContext, args: List[str]) -> CommandResult:
    """cp [-r] source... dest"""
    flags, _, operands = _posix_opts(args)
    if len(operands) < 2:
        if not operands:
            return _err("cp: missing file operand\nTry 'cp --help' for more information.")
        return _err(f"cp: missing destination file operand after '{operands[0]}'")
    sources = _expand_all(ctx, operands[:-1])
    transfer(ctx, sources, operands[-1], recursive=bool(flags & {"r", "R", "a", "recursive"}))
    return _ok()


def h_mv(ctx: ShellContext, args: List[str]) -> CommandResult:
    """mv source... dest"""
    _, _, operands = _posix_opts(args)
    if len(operands) < 2:
        if not operands:
            return _err("mv: missing file operand\nTry 'mv --help' for more information.")
        return _err(f"mv: missing destination file operand after '{operands[0]}'")
    transfer(ctx, _expand_all(ctx, operands[:-1]), operands[-1], move=True)
    return _ok()


def _cmd_sources(ctx: ShellContext, raw: str, recursive: bool) -> List[str]:
    """CMD copy semantics: a directory operand stands for the files inside it."""
    sources = []
    for item in _expand_glob(ctx, raw):
        drive_id, path, node = ctx.lookup(item)
        if node is not None and node.is_dir and not recursive:
            sources.extend(ctx.display(drive_id, join_path(path, n.name))
                           for n in sorted_entries(node) if not n.is_dir)
        else:
            sources.append(item)
    return sources


def h_copy(ctx: ShellContext, args: List[str]) -> CommandResult:
    """copy source [dest]; the destination defaults to the current directory."""
    _, operands = _cmd_opts(args)
    if not operands:
        return _missing_operand(ctx)
    dest = operands[1] if len(operands) > 1 else "."
    sources = _cmd_sources(ctx, operands[0], recursive=False)
    if not sources:
        return _err("The system cannot find the file specified.", output="        0 file(s) copied.")
    count = transfer(ctx, sources, dest, recursive=False)
    return _ok(f"        {count} file(s) copied.")


def h_xcopy(ctx: ShellContext, args: List[str]) -> CommandResult:
    """xcopy source [dest] [/s] [/e]: copies files, and whole trees with /s or /e."""
    switches, operands = _cmd_opts(args)
    if not operands:
        return _err("Invalid number of parameters", output="0 File(s) copied")
    recursive = "s" in switches or "e" in switches
    dest = operands[1] if len(operands) > 1 else "."
    sources = _cmd_sources(ctx, operands[0], recursive=False)
    _, src_path, node = ctx.lookup(operands[0])
    if recursive and node is not None and node.is_dir:
        sources = [ctx.display(ctx.resolve(operands[0])[0], join_path(src_path, n.name))
                   for n in sorted_entries(node, show_hidden=True)]
    if not sources:
        return _err(f"File not found - {operands[0]}", output="0 File(s) copied")
    _, _, dest_node = ctx.lookup(dest)
    if dest_node is None:
        ctx.write(*ctx.resolve(dest), ctx.new_dir(base_name(ctx.resolve(dest)[1])),
                  "Invalid path")
    transfer(ctx, sources, dest, recursive=True)
    files = 0
    for raw in sources:
        _, _, copied = ctx.lookup(raw)
        files += sum(1 for _, n in walk(copied, "/") if not n.is_dir) if copied else 0
    return _ok("\n".join([ctx.display(*ctx.resolve(s)) for s in sources] + [f"{files} File(s) copied"]))


def h_robocopy(ctx: ShellContext, args: List[str]) -> CommandResult:
    """robocopy source dest [/e] [/mov]: mirrors a directory's files (and tree with /e)."""
    switches, operands = _cmd_opts(args)
    if len(operands) < 2:
        return _err("ERROR : Invalid Parameter #1 : \"robocopy\"\n\n       Simple Usage :: ROBOCOPY source destination /MIR",
                    exit_code=16)
    src, dest = operands[0], operands[1]
    src_drive, src_path, node = ctx.lookup(src)
    if node is None or not node.is_dir:
        return _err(f"ERROR 2 (0x00000002) Accessing Source Directory {ctx.display(src_drive, src_path)}\\\n"
                    "The system cannot find the file specified.", exit_code=16)
    recursive = "e" in switches or "s" in switches or "mir" in switches
    entries = [n for n in sorted_entries(node, show_hidden=True) if recursive or not n.is_dir]
    dest_drive, dest_path, dest_node = ctx.lookup(dest)
    if dest_node is None:
        _create_dirs(ctx, dest_drive, dest_path, "ERROR 3 (0x00000003) Creating Destination Directory")
    sources = [ctx.display(src_drive, join_path(src_path, n.name)) for n in entries]
    if sources:
        transfer(ctx, sources, dest, move="mov" in switches, recursive=True)
    files = sum(1 for e in entries for _, n in walk(e, "/") if not n.is_dir)
    dirs = sum(1 for e in entries for _, n in walk(e, "/") if n.is_dir) + 1
    started = ctx.now().strftime("%A, %B %d, %Y %H:%M:%S")
    rule = "-" * 79
    return _ok("\n".join([
        rule,
        "   ROBOCOPY     ::     Robust File Copy for Windows",
        rule,
        "",
        f"  Started : {started}",
        f"   Source : {ctx.display(src_drive, src_path)}\\",
        f"     Dest : {ctx.display(dest_drive, dest_path)}\\",
        "",
        rule,
        "",
        "               Total    Copied   Skipped  Mismatch    FAILED    Extras",
        f"    Dirs : {dirs:>9} {dirs:>9} {0:>9} {0:>9} {0:>9} {0:>9}",
        f"   Files : {files:>9} {files:>9} {0:>9} {0:>9} {0:>9} {0:>9}",
    ]))


def h_move(ctx: ShellContext, args: List[str]) -> CommandResult:
    """move source [dest]"""
    _, operands = _cmd_opts(args)
    if not operands:
        return _missing_operand(ctx)
    dest = operands[1] if len(operands) > 1 else "."
    _, _, node = ctx.lookup(operands[0])
    noun = "dir(s)" if node is not None and node.is_dir else "file(s)"
    count = transfer(ctx, _expand_glob(ctx, operands[0]), dest, move=True)
    return _ok(f"        {count} {noun} moved.")


def _ps_source_dest(params: Dict[str, Any], operands: List[str]) -> Tuple[List[str], Optional[str]]:
    sources = [params["path"]] if "path" in params else operands[:1]
    rest = operands[1:] if "path" not in params else operands
    dest = params.get("destination") or (rest[0] if rest else None)
    return sources, dest


def h_copy_item(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Copy-Item <path> <destination> [-Recurse]; without -Recurse a folder is copied empty."""
    params, operands = _ps_params(args)
    sources, dest = _ps_source_dest(params, operands)
    if not sources:
        return _missing_operand(ctx)
    transfer(ctx, _expand_all(ctx, sources), dest or ".", recursive=bool(params.get("recurse")),
             shallow_dirs=not params.get("recurse"))
    return _ok()


def h_move_item(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Move-Item <path> <destination>"""
    params, operands = _ps_params(args)
    sources, dest = _ps_source_dest(params, operands)
    if not sources:
        return _missing_operand(ctx)
    transfer(ctx, _expand_all(ctx, sources), dest or ".", move=True)
    return _ok()


def rename(ctx: ShellContext, raw: str, new_name: str) -> None:
    """Rename an entry in place; ``new_name`` must be a bare name."""
    drive_id, path, node = ctx.lookup(raw)
    powershell = ctx.shell == POWERSHELL
    if node is None:
        raise ShellError(_no_such_file(ctx, raw) if powershell else "The system cannot find the file specified.")
    if not new_name or any(sep in new_name for sep in "/\\:"):
        raise ShellError(f"{ctx.name} : Cannot rename because the target specified represents a path or device name."
                         if powershell else "The syntax of the command is incorrect.")
    target = join_path(parent_path(path), new_name)
    if target == path:
        return
    if resolve_node(ctx.session.drives[drive_id], target) is not None:
        raise ShellError(f"{ctx.name} : Cannot create a file when that file already exists."
                         if powershell else "A duplicate file name exists, or the file cannot be found.")
    if ctx.in_use(drive_id, path):
        raise ShellError(_busy(ctx, raw))
    ctx.write(drive_id, target, dataclasses.replace(node, name=new_name), _no_such_file(ctx, raw))
    ctx.write(drive_id, path, None, _no_such_file(ctx, raw))


def h_ren(ctx: ShellContext, args: List[str]) -> CommandResult:
    """ren <old> <newname>"""
    _, operands = _cmd_opts(args)
    if len(operands) != 2:
        return _err("The syntax of the command is incorrect.")
    rename(ctx, operands[0], operands[1])
    return _ok()


def h_rename_item(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Rename-Item <path> <newname>"""
    params, operands = _ps_params(args)
    raw = params.get("path") or (operands.pop(0) if operands else "")
    new_name = params.get("newname") or (operands[0] if operands else "")
    if not raw or not new_name:
        return _err("Rename-Item : Cannot process command because of one or more missing mandatory "
                    "parameters: Path NewName.")
    rename(ctx, raw, new_name)
    return _ok()


# ---------- Handlers: file content ----------
def h_cat(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Show file contents (cat, type, more, Get-Content)."""
    numbered = False
    head = tail = None
    if ctx.shell == POWERSHELL:
        params, operands = _ps_params(args)
        if "path" in params:
            operands = [params["path"]] + operands
        head = int(params["totalcount"]) if str(params.get("totalcount", "")).isdigit() else None
        tail = int(params["tail"]) if str(params.get("tail", "")).isdigit() else None
    elif ctx.shell == CMD:
        _, operands = _cmd_opts(args)
    else:
        flags, _, operands = _posix_opts(args)
        numbered = "n" in flags
    if not operands:
        if ctx.shell == CMD:
            return _err("The syntax of the command is incorrect.")
        return _err(f"{ctx.verb}: missing file operand" if ctx.posix else
                    f"{ctx.name} : Cannot process command because of one or more missing mandatory parameters: Path.")
    chunks, errors = [], []
    for raw in _expand_all(ctx, operands):
        try:
            chunks.append(_text(_read_file(ctx, raw)))
        except ShellError as e:
            errors.append(str(e))
    text = "\n".join(chunks)
    lines = text.split("\n")
    if head is not None:
        text = "\n".join(lines[:head])
    if tail is not None:
        text = "\n".join(lines[-tail:] if tail else [])
    if numbered:
        text = "\n".join(f"{i:>6}\t{line}" for i, line in enumerate(text.split("\n"), 1))
    if errors:
        return _err("\n".join(errors), output=text)
    return _ok(text)


def _line_count(opts: Dict[str, str], flags: set, default: int = 10) -> int:
    value = opts.get("n", "")
    if value.lstrip("+-").isdigit():
        return abs(int(value))
    numeric = [f for f in flags if f.isdigit()]
    return int(numeric[0]) if numeric else default


def h_head(ctx: ShellContext, args: List[str]) -> CommandResult:
    """head [-n N] file...  (tail shares the implementation)"""
    flags, opts, operands = _posix_opts(args, values="n")
    if not operands:
        return _err(f"{ctx.verb}: missing file operand")
    count = _line_count(opts, flags)
    files = _expand_all(ctx, operands)
    chunks = []
    for raw in files:
        lines = _text(_read_file(ctx, raw)).split("\n")
        picked = lines[:count] if ctx.name == "head" else (lines[-count:] if count else [])
        body = "\n".join(picked)
        chunks.append(f"==> {raw} <==\n{body}" if len(files) > 1 else body)
    return _ok("\n\n".join(chunks))


def _counts(text: str) -> Tuple[int, int, int]:
    return text.count("\n") + (1 if text and not text.endswith("\n") else 0), len(text.split()), len(text.encode("utf-8"))


def h_wc(ctx: ShellContext, args: List[str]) -> CommandResult:
    """wc [-l] [-w] [-c] file..."""
    flags, _, operands = _posix_opts(args)
    if not operands:
        return _err("wc: missing file operand")
    wanted = [i for i, f in enumerate("lwc") if f in flags] or [0, 1, 2]
    rows = []
    for raw in _expand_all(ctx, operands):
        rows.append((_counts(_text(_read_file(ctx, raw))), raw))
    if len(rows) > 1:
        totals = tuple(sum(r[0][i] for r in rows) for i in range(3))
        rows.append((totals, "total"))
    width = max(len(str(r[0][i])) for r in rows for i in wanted)
    return _ok("\n".join(" ".join(f"{r[0][i]:>{width}}" for i in wanted) + f" {r[1]}" for r in rows))


def h_sort(ctx: ShellContext, args: List[str]) -> CommandResult:
    """sort [-r] [-n] [-u] file..."""
    flags, _, operands = _posix_opts(args)
    if not operands:
        return _err("sort: missing file operand")
    lines = []
    for raw in _expand_all(ctx, operands):
        lines.extend(_text(_read_file(ctx, raw)).split("\n"))
    if "u" in flags:
        lines = list(OrderedDict.fromkeys(lines))
    if "n" in flags:
        def key(line):
            m = re.match(r"\s*(-?\d+(?:\.\d+)?)", line)
            return (float(m.group(1)) if m else 0.0, line)
        lines.sort(key=key, reverse="r" in flags)
    else:
        lines.sort(key=(lambda s: s.lower()) if "f" in flags else None, reverse="r" in flags)
    return _ok("\n".join(lines))


def h_uniq(ctx: ShellContext, args: List[str]) -> CommandResult:
    """uniq [-c] [-d] file: collapse adjacent duplicate lines."""
    flags, _, operands = _posix_opts(args)
    if not operands:
        return _err("uniq: missing file operand")
    groups: List[List[Any]] = []
    for line in _text(_read_file(ctx, operands[0])).split("\n"):
        if groups and groups[-1][1] == line:
            groups[-1][0] += 1
        else:
            groups.append([1, line])
    if "d" in flags:
        groups = [g for g in groups if g[0] > 1]
    if "c" in flags:
        return _ok("\n".join(f"{n:>7} {line}" for n, line in groups))
    return _ok("\n".join(line for _, line in groups))


FILE_DESCRIPTIONS = {
    "application/octet-stream": "data",
    "application/x-pem-file": "PEM RSA private key",
    "text/csv": "CSV text",
}


def h_file(ctx: ShellContext, args: List[str]) -> CommandResult:
    """file path...: describe what kind of entry each path is."""
    _, _, operands = _posix_opts(args)
    if not operands:
        return _err("Usage: file [-bcCdEhikLlNnprsSvzZ0] [--apple] [--extension] [--mime-encoding]\n"
                    "            [--mime-type] [-e <testname>] [-F <separator>]  [-f <namefile>]\n"
                    "            [-m <magicfiles>] [-P <parameter=value>] [--exclude-quiet] <file> ...")
    lines = []
    for raw in _expand_all(ctx, operands):
        _, _, node = ctx.lookup(raw)
        if node is None:
            desc = f"cannot open `{raw}' (No such file or directory)"
        elif node.is_dir:
            desc = "directory"
        elif node.kind == SYMLINK:
            desc = f"symbolic link to {node.link_target}"
        elif node.kind == DEVICE:
            desc = "character special"
        elif node.kind == PIPE:
            desc = "fifo (named pipe)"
        elif not node.content:
            desc = "empty"
        elif node.mime_type in FILE_DESCRIPTIONS:
            desc = FILE_DESCRIPTIONS[node.mime_type]
        else:
            desc = "ASCII text" if node.content.isascii() else "UTF-8 Unicode text"
        lines.append(f"{raw}: {desc}")
    return _ok("\n".join(lines))


def h_set_content(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Set-Content / Add-Content <path> <value>: write or append text to a file."""
    params, operands = _ps_params(args)
    raw = params.get("path") or (operands.pop(0) if operands else "")
    if not raw:
        return _missing_operand(ctx)
    value = str(params["value"]) if "value" in params else " ".join(operands)
    drive_id, path, node = ctx.lookup(raw)
    if node is not None and node.is_dir:
        return _err(_is_directory(ctx, raw))
    append = ctx.name == "Add-Content"
    if node is not None and append:
        existing = _text(node)
        value = existing + ("\n" if existing and not existing.endswith("\n") else "") + value
    stored = ctx.new_file(base_name(path), value)
    if node is not None:
        stored = dataclasses.replace(node, content=value, size=stored.size, modified=stored.modified,
                                     accessed=stored.accessed)
    ctx.write(drive_id, path, stored,
              f"{ctx.name} : Could not find a part of the path '{ctx.display(drive_id, path)}'.")
    return _ok()


# ---------- Handlers: searching ----------
def h_find(ctx: ShellContext, args: List[str]) -> CommandResult:
    """find [start] [-name pattern] [-iname pattern] [-type f|d|l]

    Names are matched by substring with ``*`` stripped from the pattern, so
    ``find backup`` and ``find . -name "*backup*"`` both locate backup.dat.
    Paths are printed in full.
    """
    if not args:
        return _err("find: missing argument")
    rest = list(args)
    start = "."
    if not rest[0].startswith("-"):
        _, _, node = ctx.lookup(rest[0])
        if (node is not None and node.is_dir) or len(rest) > 1:
            start = rest.pop(0)
    pattern, kind, insensitive = None, None, False
    it = iter(rest)
    for arg in it:
        if arg in ("-name", "-iname"):
            pattern = next(it, "")
            insensitive = arg == "-iname"
        elif arg == "-type":
            kind = next(it, "")
        elif arg.startswith("-"):
            return _err(f"find: unknown predicate '{arg}'")
        else:
            pattern = arg
    drive_id, path, node = ctx.lookup(start)
    if node is None:
        return _err(f"find: '{start}': No such file or directory")
    needle = (pattern or "").replace("*", "")
    kinds = {"f": FILE, "d": DIRECTORY, "l": SYMLINK, "c": DEVICE, "p": PIPE}
    results = []
    for found_path, found in walk(node, path):
        name = base_name(found_path)
        if insensitive:
            matched = needle.lower() in name.lower()
        else:
            matched = needle in name
        if matched and (kind is None or kinds.get(kind) == found.kind):
            results.append(ctx.display(drive_id, found_path))
    return _ok("\n".join(results))


def h_find_text(ctx: ShellContext, args: List[str]) -> CommandResult:
    """CMD find "string" file... [/i] [/v] [/c] [/n]"""
    switches, operands = _cmd_opts(args)
    if len(operands) < 2:
        return _err("FIND: Parameter format not correct", 2)
    needle, files = operands[0], _expand_all(ctx, operands[1:])
    insensitive = "i" in switches
    blocks, errors, found_any = [], [], False
    for raw in files:
        try:
            node = _read_file(ctx, raw)
        except ShellError:
            errors.append(f"File not found - {raw.upper()}")
            continue
        hits = []
        for number, line in enumerate(_text(node).split("\n"), 1):
            present = needle.lower() in line.lower() if insensitive else needle in line
            if present != ("v" in switches):
                hits.append(f"[{number}]{line}" if "n" in switches else line)
        found_any = found_any or bool(hits)
        header = f"---------- {base_name(ctx.resolve(raw)[1]).upper()}"
        blocks.append(f"{header}: {len(hits)}" if "c" in switches else "\n".join([header] + hits))
    output = "\n" + "\n".join(blocks) if blocks else ""
    if errors:
        return _err("\n".join(errors), output=output)
    return CommandResult(output=output, exit_code=0 if found_any else 1)


def _compile(pattern: str, ignore_case: bool, literal: bool = False):
    flags = re.IGNORECASE if ignore_case else 0
    return re.compile(re.escape(pattern) if literal else pattern, flags)


def _search_files(ctx: ShellContext, raws: List[str], recursive: bool) -> Iterator[Tuple[str, Optional[str], Optional[str]]]:
    """Yield ``(label, text, error)`` for each file to search."""
    for raw in raws:
        drive_id, path, node = ctx.lookup(raw)
        if node is not None and node.is_dir and recursive:
            for found_path, found in walk(node, path):
                if found.is_file:
                    rel = found_path[len(path):].lstrip("/")
                    yield (f"{raw.rstrip('/')}/{rel}" if rel else raw), _text(found), None
            continue
        try:
            yield raw, _text(_read_file(ctx, raw)), None
        except ShellError as e:
            yield raw, None, str(e)


def h_grep(ctx: ShellContext, args: List[str]) -> CommandResult:
    """grep [-i] [-n] [-v] [-c] [-l] [-r] [-E|-P] pattern file...

    Lines are matched by substring; -E or -P treat the pattern as a regular
    expression instead. Exit status is 0 when something matched, 1 when
    nothing did and 2 when a file could not be read.
    """
    flags, opts, operands = _posix_opts(args, values="e")
    if "e" in opts:
        operands.insert(0, opts["e"])
    if len(operands) < 2:
        return _err("Usage: grep [OPTION]... PATTERNS [FILE]...\n"
                    "Try 'grep --help' for more information.", 2)
    try:
        regex = _compile(operands[0], "i" in flags, literal=not flags & {"E", "P"})
    except re.error as e:
        return _err(f"grep: {e}", 2)
    recursive = bool(flags & {"r", "R"})
    files = _expand_all(ctx, operands[1:])
    prefix = len(files) > 1 or recursive
    lines, errors, matched = [], [], False
    for label, text, error in _search_files(ctx, files, recursive):
        if error:
            errors.append(error)
            continue
        hits = [(n, line) for n, line in enumerate(text.split("\n"), 1)
                if bool(regex.search(line)) != ("v" in flags)]
        matched = matched or bool(hits)
        if "l" in flags:
            if hits:
                lines.append(label)
        elif "c" in flags:
            lines.append(f"{label}:{len(hits)}" if prefix else str(len(hits)))
        else:
            for n, line in hits:
                lead = (f"{label}:" if prefix else "") + (f"{n}:" if "n" in flags else "")
                lines.append(lead + line)
    output = "\n".join(lines)
    if errors:
        return _err("\n".join(errors), 2, output=output)
    return CommandResult(output=output, exit_code=0 if matched else 1)


def h_findstr(ctx: ShellContext, args: List[str]) -> CommandResult:
    """findstr [/i] [/n] [/v] [/s] [/c:"literal"] words file..."""
    switches, operands = _cmd_opts(args)
    if "c" in switches:
        needles = [str(switches["c"])]
    elif operands:
        needles = operands.pop(0).split()
    else:
        return _err("FINDSTR: Bad command line", 2)
    if not operands:
        return _err("FINDSTR: Bad command line", 2)
    regexes = [_compile(n, "i" in switches, literal=True) for n in needles]
    recursive = "s" in switches
    files = _expand_all(ctx, operands)
    prefix = len(files) > 1 or recursive
    lines, errors = [], []
    for label, text, error in _search_files(ctx, files, recursive):
        if error:
            errors.append(f"FINDSTR: Cannot open {label}")
            continue
        for n, line in enumerate(text.split("\n"), 1):
            if any(r.search(line) for r in regexes) != ("v" in switches):
                name = label.replace("/", "\\")
                lead = (f"{name}:" if prefix else "") + (f"{n}:" if "n" in switches else "")
                lines.append(lead + line)
    output = "\n".join(lines)
    if errors:
        return _err("\n".join(errors), output=output)
    return CommandResult(output=output, exit_code=0 if lines else 1)


def h_select_string(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Select-String [-Pattern] p [-Path] file... [-CaseSensitive] [-NotMatch]; p is matched as a substring."""
    params, operands = _ps_params(args)
    pattern = params.get("pattern") or (operands.pop(0) if operands else "")
    if "path" in params:
        operands.insert(0, params["path"])
    if not pattern or not operands:
        return _err("Select-String : Cannot process command because of one or more missing mandatory "
                    "parameters: Pattern Path.")
    regex = _compile(pattern, not params.get("casesensitive"), literal=True)
    lines, errors = [], []
    for label, text, error in _search_files(ctx, _expand_all(ctx, operands), False):
        if error:
            errors.append(error)
            continue
        for n, line in enumerate(text.split("\n"), 1):
            if bool(regex.search(line)) != bool(params.get("notmatch")):
                lines.append(f"{label}:{n}:{line}")
    output = "\n" + "\n".join(lines) + "\n" if lines else ""
    if errors:
        return _err("\n".join(errors), output=output)
    return _ok(output)


# ---------- Handlers: permissions and ownership ----------
PERMISSION_BITS = "rwxrwxrwx"
WHO = {"u": (0,), "g": (1,), "o": (2,), "a": (0, 1, 2)}


def apply_mode(permissions: str, mode: str) -> str:
    """Apply an octal (``755``) or symbolic (``u+x,go-w``) mode to a 10 character string.

    Raises ValueError for a mode that cannot be parsed.
    """
    kind, bits = permissions[0], list(permissions[1:10])
    if re.fullmatch(r"[0-7]{3,4}", mode):
        digits = mode[-3:]
        bits = [PERMISSION_BITS[i] if int(digits[i // 3]) & (4 >> (i % 3)) else "-" for i in range(9)]
        return kind + "".join(bits)
    for clause in mode.split(","):
        m = re.fullmatch(r"([ugoa]*)([+\-=])([rwx]*)", clause)
        if not m:
            raise ValueError(mode)
        who = [c for w in (m.group(1) or "a") for c in WHO[w]]
        for group in who:
            for offset, letter in enumerate("rwx"):
                index = group * 3 + offset
                if m.group(2) == "=":
                    bits[index] = letter if letter in m.group(3) else "-"
                elif letter in m.group(3):
                    bits[index] = letter if m.group(2) == "+" else "-"
    return kind + "".join(bits)


def _targets(ctx: ShellContext, raw: str, recursive: bool) -> Iterator[Tuple[str, str, FileSystemNode]]:
    drive_id, path, node = ctx.lookup(raw)
    if node is None:
        return
    if recursive:
        for found_path, found in walk(node, path):
            yield drive_id, found_path, found
    else:
        yield drive_id, path, node


def h_chmod(ctx: ShellContext, args: List[str]) -> CommandResult:
    """chmod [-R] mode file..."""
    recursive = "-R" in args
    operands = [a for a in args if a != "-R"]
    if len(operands) < 2:
        return _err("chmod: missing operand\nTry 'chmod --help' for more information.")
    mode, errors = operands[0], []
    for raw in _expand_all(ctx, operands[1:]):
        if ctx.lookup(raw)[2] is None:
            errors.append(f"chmod: cannot access '{raw}': No such file or directory")
            continue
        for drive_id, path, node in list(_targets(ctx, raw, recursive)):
            if ctx.user != "root" and node.owner != ctx.user:
                errors.append(f"chmod: changing permissions of '{raw}': Operation not permitted")
                continue
            try:
                updated = apply_mode(node.permissions, mode)
            except ValueError:
                return _err(f"chmod: invalid mode: '{mode}'\nTry 'chmod --help' for more information.")
            ctx.write(drive_id, path, dataclasses.replace(node, permissions=updated),
                      f"chmod: cannot access '{raw}': No such file or directory")
    if errors:
        return _err("\n".join(errors))
    return _ok()


KNOWN_USERS = frozenset({"root", "daemon", "nobody", "www-data", DEFAULT_USER})
KNOWN_GROUPS = frozenset({"root", "users", "adm", "cdrom", "sudo", "www-data", "nogroup", DEFAULT_USER})


def h_chown(ctx: ShellContext, args: List[str]) -> CommandResult:
    """chown [-R] user[:group] file...

    Without root the current user may only hand over entries it owns.
    """
    recursive = "-R" in args
    operands = [a for a in args if a != "-R"]
    if len(operands) < 2:
        return _err("chown: missing operand\nTry 'chown --help' for more information.")
    owner, _, group = operands[0].partition(":")
    if owner and owner not in KNOWN_USERS | {ctx.user}:
        return _err(f"chown: invalid user: '{operands[0]}'")
    if group and group not in KNOWN_GROUPS:
        return _err(f"chown: invalid group: '{operands[0]}'")
    errors = []
    for raw in _expand_all(ctx, operands[1:]):
        if ctx.lookup(raw)[2] is None:
            errors.append(f"chown: cannot access '{raw}': No such file or directory")
            continue
        for drive_id, path, node in list(_targets(ctx, raw, recursive)):
            if ctx.user != "root" and node.owner != ctx.user:
                errors.append(f"chown: changing ownership of '{raw}': Operation not permitted")
                continue
            ctx.write(drive_id, path, dataclasses.replace(node, owner=owner or node.owner, group=group or node.group),
                      f"chown: cannot access '{raw}': No such file or directory")
    if errors:
        return _err("\n".join(errors))
    return _ok()


def h_attrib(ctx: ShellContext, args: List[str]) -> CommandResult:
    """attrib [+r|-r] [+h|-h] [file]: show or change the read-only and hidden attributes."""
    changes = [a.lower() for a in args if len(a) == 2 and a[0] in "+-" and a[1].lower() in "rhas"]
    operands = [a for a in args if a.lower() not in changes and not a.startswith("/")]
    if operands:
        raws = _expand_all(ctx, operands)
    else:
        _, _, here = ctx.lookup(".")
        raws = [n.name for n in sorted_entries(here, show_hidden=True) if not n.is_dir]
    lines, errors = [], []
    for raw in raws:
        drive_id, path, node = ctx.lookup(raw)
        if node is None:
            errors.append(f"File not found - {ctx.display(drive_id, path)}")
            continue
        for change in changes:
            if change[1] == "h":
                node = dataclasses.replace(node, hidden=change[0] == "+")
            elif change[1] == "r":
                node = dataclasses.replace(node, permissions=apply_mode(node.permissions, "a-w" if change[0] == "+" else "u+w"))
        if changes:
            ctx.write(drive_id, path, node, "File not found")
            continue
        readonly = "w" not in node.permissions[1:4]
        flags = ("A" if not node.is_dir else " ") + "    " + ("H" if node.hidden else " ") + ("R" if readonly else " ")
        lines.append(f"{flags:<13}{ctx.display(drive_id, path)}")
    if errors:
        return _err("\n".join(errors), output="\n".join(lines))
    return _ok("\n".join(lines))


# ---------- Handlers: disk usage ----------
MOUNTS = {"C": ("/dev/sda1", "/"), "D": ("/dev/sdb1", "/mnt/data"), "E": ("/dev/sdc1", "/media/agent/USB")}


def h_df(ctx: ShellContext, args: List[str]) -> CommandResult:
    """df [-h]: one row per drive, derived from the drive table."""
    flags, _, _ = _posix_opts(args)
    human = "h" in flags
    rows = []
    for drive_id, drive in sorted(ctx.session.drives.items()):
        device, mount = MOUNTS.get(drive_id, (f"//fileserver/{drive.label.lower()}", f"/mnt/{drive.label.lower()}"))
        used_pct = f"{math.ceil(100 * drive.used_space / drive.total_space) if drive.total_space else 0}%"
        if human:
            sizes = [human_size(drive.total_space), human_size(drive.used_space), human_size(drive.free_space)]
        else:
            sizes = [str(drive.total_space // 1024), str(drive.used_space // 1024), str(drive.free_space // 1024)]
        rows.append([device] + sizes + [used_pct, mount])
    headers = ["Filesystem", "Size" if human else "1K-blocks", "Used", "Available", "Use%", "Mounted on"]
    widths = [max(len(str(r[i])) for r in rows + [headers]) for i in range(6)]
    lines = []
    for r in [headers] + rows:
        lines.append(f"{r[0]:<{widths[0]}} " + " ".join(f"{r[i]:>{widths[i]}}" for i in range(1, 5)) + f" {r[5]}")
    return _ok("\n".join(lines))


def _disk_blocks(node: FileSystemNode) -> int:
    """Kilobytes a subtree occupies in 4K blocks."""
    if node.is_dir:
        return 4 + sum(_disk_blocks(child) for child in node.children.values())
    return 4 * math.ceil(node.size / 4096) if node.size else 0


def h_du(ctx: ShellContext, args: List[str]) -> CommandResult:
    """du [-s] [-h] [-a] [path...]: subtree usage, deepest directories first."""
    flags, _, operands = _posix_opts(args)

    def fmt(kb: int) -> str:
        return human_size(kb * 1024).replace("B", "") if "h" in flags else str(kb)

    lines, errors = [], []
    for raw in operands or ["."]:
        drive_id, path, node = ctx.lookup(raw)
        if node is None:
            errors.append(f"du: cannot access '{raw}': No such file or directory")
            continue
        if "s" in flags or not node.is_dir:
            lines.append(f"{fmt(_disk_blocks(node))}\t{raw}")
            continue
        entries = [(p, n) for p, n in walk(node, path) if n.is_dir or "a" in flags]
        for found_path, found in reversed(entries):
            rel = found_path[len(path):].lstrip("/")
            label = raw if not rel else (f"{raw.rstrip('/')}/{rel}" if raw != "/" else f"/{rel}")
            lines.append(f"{fmt(_disk_blocks(found))}\t{label}")
    if errors:
        return _err("\n".join(errors), output="\n".join(lines))
    return _ok("\n".join(lines))


# ---------- Handlers: processes ----------
def _can_signal(ctx: ShellContext, proc: Process) -> bool:
    return ctx.user == "root" or proc.user == ctx.user


def _without(ctx: ShellContext, doomed: List[Process]) -> List[Process]:
    pids = {p.pid for p in doomed}
    return [p for p in ctx.session.processes if p.pid not in pids]


def h_ps(ctx: ShellContext, args: List[str]) -> CommandResult:
    """ps [aux|-ef]"""
    rng = ctx.rng
    if any(a.lstrip("-") in ("aux", "ef", "e", "A") for a in args):
        lines = ["USER         PID %CPU %MEM    VSZ   RSS TTY      STAT START   TIME COMMAND"]
        for p in ctx.session.processes:
            vsz = rng.randint(1000, 11000)
            rss = rng.randint(100, 1100)
            lines.append(f"{p.user:<10} {p.pid:>5} {p.cpu:>4.1f} {p.memory:>4.1f} {vsz:>6} {rss:>5} "
                         f"pts/0    S    10:30   0:00 {p.name}")
        return _ok("\n".join(lines))
    lines = ["    PID TTY          TIME CMD"]
    for p in ctx.session.processes:
        lines.append(f"{p.pid:>7} pts/0    00:00:{rng.randint(0, 9):02d} {p.name}")
    return _ok("\n".join(lines))


def h_top(ctx: ShellContext, args: List[str]) -> CommandResult:
    """One snapshot of top, busiest processes first."""
    rng = ctx.rng
    procs = sorted(ctx.session.processes, key=lambda p: p.cpu, reverse=True)
    running = sum(1 for p in procs if p.cpu > 1)
    lines = [
        f"top - {ctx.now():%H:%M:%S} up  2:30,  1 user,  load average: 0.15, 0.25, 0.20",
        f"Tasks: {len(procs):>3} total, {running:>3} running, {len(procs) - running:>3} sleeping,"
        "   0 stopped,   0 zombie",
        f"%Cpu(s): {sum(p.cpu for p in procs):4.1f} us,  1.2 sy,  0.0 ni, "
        f"{100 - sum(p.cpu for p in procs) - 1.2:4.1f} id,  0.0 wa,  0.0 hi,  0.0 si,  0.0 st",
        "MiB Mem :   8192.0 total,   6144.2 free,   1536.8 used,    511.0 buff/cache",
        "MiB Swap:   2048.0 total,   2048.0 free,      0.0 used.   6400.4 avail Mem",
        "",
        "    PID USER      PR  NI    VIRT    RES    SHR S  %CPU  %MEM     TIME+ COMMAND",
    ]
    for p in procs:
        virt = rng.randint(40000, 130000)
        res = int(p.memory * 1024)
        lines.append(f"{p.pid:>7} {p.user:<9} 20   0 {virt:>7} {res:>6} {res // 2:>6} S "
                     f"{p.cpu:>5.1f} {p.memory:>5.1f}   0:0{rng.randint(0, 9)}.{rng.randint(10, 99)} {p.name}")
    return _ok("\n".join(lines))


def h_kill(ctx: ShellContext, args: List[str]) -> CommandResult:
    """kill [-9|-s SIG] pid..."""
    operands = [a for a in args if not a.startswith("-")]
    if "-s" in args:
        operands = operands[1:]
    if not operands:
        return _err(f"kill: usage: kill [-s sigspec | -n signum | -sigspec] pid | jobspec ... "
                    f"or kill -l [sigspec]", 2)
    prefix = f"{_bash(ctx)}: kill"
    errors, doomed = [], []
    for raw in operands:
        if not raw.isdigit():
            errors.append(f"{prefix}: {raw}: arguments must be process or job IDs")
            continue
        proc = next((p for p in ctx.session.processes if p.pid == int(raw)), None)
        if proc is None:
            errors.append(f"{prefix}: ({raw}) - No such process")
        elif not _can_signal(ctx, proc):
            errors.append(f"{prefix}: ({raw}) - Operation not permitted")
        else:
            doomed.append(proc)
    result = _ok(processes=_without(ctx, doomed)) if doomed else _ok()
    if errors:
        result.error, result.exit_code = "\n".join(errors), 1
    return result


def h_killall(ctx: ShellContext, args: List[str]) -> CommandResult:
    """killall name..."""
    operands = [a for a in args if not a.startswith("-")]
    if not operands:
        return _err("Usage: killall [OPTION]... [--] NAME...")
    errors, doomed = [], []
    for name in operands:
        matches = [p for p in ctx.session.processes if p.name == name]
        if not matches:
            errors.append(f"{name}: no process found")
        for proc in matches:
            if _can_signal(ctx, proc):
                doomed.append(proc)
            else:
                errors.append(f"{name}({proc.pid}): Operation not permitted")
    result = _ok(processes=_without(ctx, doomed)) if doomed else _ok()
    if errors:
        result.error, result.exit_code = "\n".join(errors), 1
    return result


def h_tasklist(ctx: ShellContext, args: List[str]) -> CommandResult:
    lines = [
        "",
        "Image Name                     PID Session Name        Session#    Mem Usage",
        "========================= ======== ================ =========== ============",
    ]
    for p in ctx.session.processes:
        mem = f"{p.memory * 1024:,.0f} K"
        lines.append(f"{p.name:<25} {p.pid:>8} {'Services':<16} {0:>11} {mem:>12}")
    return _ok("\n".join(lines))


def h_taskkill(ctx: ShellContext, args: List[str]) -> CommandResult:
    """taskkill /PID n | /IM name [/F]"""
    switches, _ = _cmd_opts(args, values=("pid", "im"))
    if "pid" not in switches and "im" not in switches:
        return _err('ERROR: Invalid syntax. Neither /FI nor /PID nor /IM were specified.\n'
                    'Type "TASKKILL /?" for usage.')
    if "pid" in switches:
        key = str(switches["pid"])
        matches = [p for p in ctx.session.processes if key.isdigit() and p.pid == int(key)]
    else:
        key = str(switches["im"])
        matches = [p for p in ctx.session.processes
                   if fnmatch.fnmatch(p.name.lower(), key.lower()) or p.name.lower() + ".exe" == key.lower()]
    if not matches:
        return _err(f'ERROR: The process "{key}" not found.', 128)
    lines, errors, doomed = [], [], []
    for proc in matches:
        if not _can_signal(ctx, proc):
            errors.append(f"ERROR: The process with PID {proc.pid} could not be terminated.\n"
                          "Reason: Access is denied.")
            continue
        doomed.append(proc)
        if "pid" in switches:
            lines.append(f"SUCCESS: The process with PID {proc.pid} has been terminated.")
        else:
            lines.append(f'SUCCESS: The process "{proc.name}" with PID {proc.pid} has been terminated.')
    result = _ok("\n".join(lines), processes=_without(ctx, doomed)) if doomed else _ok()
    if errors:
        result.error, result.exit_code = "\n".join(errors), 1
    return result


def h_get_process(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Get-Process [-Name] name [-Id pid]"""
    params, operands = _ps_params(args)
    procs = ctx.session.processes
    name = params.get("name") or (operands[0] if operands else None)
    if name:
        procs = [p for p in procs if fnmatch.fnmatch(p.name.lower(), str(name).lower())]
        if not procs:
            return _err(f'Get-Process : Cannot find a process with the name "{name}". '
                        "Verify the process name and call the cmdlet again.")
    if "id" in params:
        procs = [p for p in procs if str(p.pid) == str(params["id"])]
        if not procs:
            return _err(f"Get-Process : Cannot find a process with the process identifier {params['id']}.")
    rng = ctx.rng
    lines = [
        "",
        "Handles  NPM(K)    PM(K)      WS(K)     CPU(s)     Id  SI ProcessName",
        "-------  ------    -----      -----     ------     --  -- -----------",
    ]
    for p in procs:
        lines.append(f"{rng.randint(100, 1100):>7} {rng.randint(10, 60):>7} {rng.randint(5000, 55000):>8} "
                     f"{rng.randint(10000, 110000):>10} {p.cpu:>10.2f} {p.pid:>6} {1:>3} {p.name}")
    return _ok("\n".join(lines) + "\n")


def h_stop_process(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Stop-Process [-Id] pid | -Name name"""
    params, operands = _ps_params(args)
    if "name" in params:
        name = str(params["name"])
        matches = [p for p in ctx.session.processes if p.name.lower() == name.lower()]
        if not matches:
            return _err(f'Stop-Process : Cannot find a process with the name "{name}". '
                        "Verify the process name and call the cmdlet again.")
    else:
        key = str(params.get("id") or (operands[0] if operands else ""))
        if not key:
            return _missing_operand(ctx)
        if not key.isdigit():
            return h_stop_process(ctx, ["-Name", key])
        matches = [p for p in ctx.session.processes if p.pid == int(key)]
        if not matches:
            return _err(f"Stop-Process : Cannot find a process with the process identifier {key}.")
    denied = [p for p in matches if not _can_signal(ctx, p)]
    if denied:
        p = denied[0]
        return _err(f'Stop-Process : Cannot stop process "{p.name} ({p.pid})" because of the following error: '
                    "Access is denied")
    return _ok(processes=_without(ctx, matches))


# ---------- Handlers: command lookup ----------
SHELL_BUILTINS = frozenset({"cd", "export", "alias", "history", "help", "exit"})


def h_which(ctx: ShellContext, args: List[str]) -> CommandResult:
    """which name...: path of each known command; builtins and unknowns print nothing."""
    _, _, operands = _posix_opts(args)
    known = DIALECT_TABLES[ctx.shell]
    lines = [f"/usr/bin/{name}" for name in operands if name in known and name not in SHELL_BUILTINS]
    return CommandResult(output="\n".join(lines), exit_code=0 if len(lines) == len(operands) and operands else 1)


def h_whereis(ctx: ShellContext, args: List[str]) -> CommandResult:
    _, _, operands = _posix_opts(args)
    if not operands:
        return _err("whereis: not enough arguments\nTry 'whereis --help' for more information.")
    known = DIALECT_TABLES[ctx.shell]
    lines = []
    for name in operands:
        if name in known:
            lines.append(f"{name}: /usr/bin/{name} /usr/share/man/man1/{name}.1.gz")
        else:
            lines.append(f"{name}:")
    return _ok("\n".join(lines))


def _ps_command_rows(pattern: str) -> List[Tuple[str, str, str, str]]:
    rows = []
    for alias, target in sorted(POWERSHELL_ALIASES.items()):
        if fnmatch.fnmatch(alias, pattern.lower()):
            rows.append(("Alias", f"{alias} -> {target}", "", ""))
    for name in POWERSHELL_COMMANDS:
        if fnmatch.fnmatch(name.lower(), pattern.lower()):
            rows.append(("Cmdlet", name, "3.1.0.0", POWERSHELL_MODULES.get(name, "Microsoft.PowerShell.Management")))
    return rows


def h_get_command(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Get-Command [name]: cmdlets and aliases, wildcards allowed."""
    params, operands = _ps_params(args)
    pattern = params.get("name") or (operands[0] if operands else "*")
    rows = _ps_command_rows(str(pattern))
    if not rows:
        return _err(f"Get-Command : The term '{pattern}' is not recognized as the name of a cmdlet, function, "
                    "script file, or operable program.")
    return _ok("\n" + table(["CommandType", "Name", "Version", "Source"], rows) + "\n")


def h_get_alias(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Get-Alias [name]"""
    params, operands = _ps_params(args)
    pattern = str(params.get("name") or (operands[0] if operands else "*"))
    rows = [("Alias", f"{alias} -> {target}", "", "")
            for alias, target in sorted(POWERSHELL_ALIASES.items()) if fnmatch.fnmatch(alias, pattern.lower())]
    if not rows:
        return _err(f"Get-Alias : This command cannot find a matching alias because an alias with the name "
                    f"'{pattern}' does not exist.")
    return _ok("\n" + table(["CommandType", "Name", "Version", "Source"], rows) + "\n")


ALIAS_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")


def h_alias(ctx: ShellContext, args: List[str]) -> CommandResult:
    """alias [name[=value] ...]: list, show or define shell aliases."""
    aliases = ctx.session.aliases
    if not args:
        return _ok("\n".join(f"alias {k}='{v}'" for k, v in sorted(aliases.items())))
    updated = dict(aliases)
    lines, errors = [], []
    for arg in args:
        name, eq, value = arg.partition("=")
        if not eq:
            if name in updated:
                lines.append(f"alias {name}='{updated[name]}'")
            else:
                errors.append(f"{_bash(ctx)}: alias: {name}: not found")
        elif not ALIAS_NAME.match(name):
            errors.append(f"{_bash(ctx)}: alias: `{name}': invalid alias name")
        else:
            updated[name] = value
    result = _ok("\n".join(lines), aliases=updated) if updated != aliases else _ok("\n".join(lines))
    if errors:
        result.error, result.exit_code = "\n".join(errors), 1
    return result


# ---------- Handlers: environment ----------
IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def h_env(ctx: ShellContext, args: List[str]) -> CommandResult:
    return _ok("\n".join(f"{k}={v}" for k, v in ctx.session.environment.items()))


def h_export(ctx: ShellContext, args: List[str]) -> CommandResult:
    """export [NAME[=VALUE] ...]"""
    environment = ctx.session.environment
    if not args or args == ["-p"]:
        return _ok("\n".join(f'declare -x {k}="{v}"' for k, v in sorted(environment.items())))
    updated = dict(environment)
    errors = []
    for arg in args:
        name, eq, value = arg.partition("=")
        if not IDENTIFIER.match(name):
            errors.append(f"{_bash(ctx)}: export: `{arg}': not a valid identifier")
        elif eq:
            updated[name] = value
        else:
            updated.setdefault(name, ctx.session.variables.get(name, ""))
    result = _ok(environment=updated)
    if errors:
        result.error, result.exit_code = "\n".join(errors), 1
    return result


def h_echo(ctx: ShellContext, args: List[str]) -> CommandResult:
    """echo text (variables are expanded before the handler runs)."""
    if ctx.shell == CMD:
        if not args:
            return _ok("ECHO is on.")
        return _ok(" ".join(args))
    if args and args[0] == "-n":
        args = args[1:]
    return _ok(" ".join(args))


def _env_key(environment: Dict[str, str], name: str) -> Optional[str]:
    """Case-insensitive lookup of a variable name, as Windows does it."""
    return next((k for k in environment if k.lower() == name.lower()), None)


def h_set(ctx: ShellContext, args: List[str]) -> CommandResult:
    """set [NAME[=value]]: list, filter or assign environment variables (CMD)."""
    environment = ctx.session.environment
    text = " ".join(args)
    if not text:
        return _ok("\n".join(f"{k}={v}" for k, v in sorted(environment.items(), key=lambda kv: kv[0].lower())))
    name, eq, value = text.partition("=")
    if not eq:
        lines = [f"{k}={v}" for k, v in sorted(environment.items()) if k.lower().startswith(name.lower())]
        if not lines:
            return _err(f"Environment variable {name} not defined")
        return _ok("\n".join(lines))
    if not name:
        return _err("The syntax of the command is incorrect.")
    updated = dict(environment)
    existing = _env_key(updated, name)
    if existing is not None:
        del updated[existing]
    if value:
        updated[existing or name] = value
    return _ok(environment=updated)


def h_path(ctx: ShellContext, args: List[str]) -> CommandResult:
    """path [value]: show or replace PATH."""
    if not args:
        return _ok(f"PATH={ctx.session.environment.get('PATH', '')}")
    updated = dict(ctx.session.environment)
    updated["PATH"] = " ".join(args).lstrip("=")
    return _ok(environment=updated)


def _automatic_variables(ctx: ShellContext) -> Dict[str, str]:
    return {
        "HOME": display_path(POWERSHELL, ctx.session.current_drive, home_path(POWERSHELL, ctx.user)),
        "Host": "System.Management.Automation.Internal.Host.InternalHost",
        "PSVersionTable": "{PSVersion, PSEdition, PSCompatibleVersions, BuildVersion...}",
        "PWD": ctx.cwd(),
        "true": "True",
        "false": "False",
    }


def h_get_variable(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Get-Variable [name]"""
    params, operands = _ps_params(args)
    variables = dict(_automatic_variables(ctx))
    variables.update(ctx.session.variables)
    pattern = str(params.get("name") or (operands[0] if operands else "*")).lstrip("$")
    rows = [(k, v) for k, v in sorted(variables.items(), key=lambda kv: kv[0].lower())
            if fnmatch.fnmatch(k.lower(), pattern.lower())]
    if not rows:
        return _err(f"Get-Variable : Cannot find a variable with the name '{pattern}'.")
    return _ok("\n" + table(["Name", "Value"], rows) + "\n")


def h_set_variable(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Set-Variable [-Name] n [-Value] v"""
    params, operands = _ps_params(args)
    name = params.get("name") or (operands.pop(0) if operands else "")
    if not name:
        return _err("Set-Variable : Cannot process command because of one or more missing mandatory parameters: Name.")
    value = str(params["value"]) if "value" in params else " ".join(operands)
    variables = dict(ctx.session.variables)
    variables[str(name).lstrip("$")] = value
    return _ok(variables=variables)


def h_write_output(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Write-Output / Write-Host text; -ForegroundColor and -NoNewline are accepted and ignored."""
    _, operands = _ps_params(args)
    return _ok("\n".join(operands) if ctx.name == "Write-Output" else " ".join(operands))


# ---------- Handlers: manual pages ----------
MAN_PAGES = {
    "ls": """LS(1)                    User Commands                   LS(1)

NAME
       ls - list directory contents

SYNOPSIS
       ls [OPTION]... [FILE]...

DESCRIPTION
       List  information  about  the FILEs (the current directory by default).
       Directories are listed first, then files, each in name order.

       -a, --all
              do not ignore entries starting with .

       -l     use a long listing format

EXAMPLES
       ls -la
              List all files in long format including hidden files""",
    "cd": """CD(1)                    User Commands                   CD(1)

NAME
       cd - change directory

SYNOPSIS
       cd [DIRECTORY]

DESCRIPTION
       Change the current working directory to DIRECTORY.  With no
       argument, change to the home directory; 'cd -' returns to the
       previous directory.

EXAMPLES
       cd /home/user
              Change to absolute path

       cd ..
              Move up one directory level""",
    "pwd": """PWD(1)                   User Commands                   PWD(1)

NAME
       pwd - print name of current/working directory

SYNOPSIS
       pwd [OPTION]...

DESCRIPTION
       Print the full filename of the current working directory.""",
    "grep": """GREP(1)                  User Commands                   GREP(1)

NAME
       grep - print lines that match patterns

SYNOPSIS
       grep [OPTION...] PATTERNS [FILE...]

DESCRIPTION
       grep searches for PATTERNS in each FILE and prints each line that
       matches.  Exit status is 0 if a line is selected, 1 if no lines
       were selected and 2 if an error occurred.

       -i     ignore case distinctions
       -n     prefix each line of output with its line number
       -v     select non-matching lines
       -c     print only a count of matching lines per FILE
       -r     read all files under each directory, recursively""",
    "find": """FIND(1)                  User Commands                   FIND(1)

NAME
       find - search for files in a directory hierarchy

SYNOPSIS
       find [starting-point] [expression]

DESCRIPTION
       Walk the directory tree rooted at starting-point (the current
       directory by default) and print the path of every entry whose
       name contains the pattern.

       -name pattern
              entry name contains pattern (* is ignored)
       -type c
              entry is of type c: f file, d directory, l symbolic link""",
    "chmod": """CHMOD(1)                 User Commands                   CHMOD(1)

NAME
       chmod - change file mode bits

SYNOPSIS
       chmod [OPTION]... MODE[,MODE]... FILE...
       chmod [OPTION]... OCTAL-MODE FILE...

DESCRIPTION
       Change the permissions of each FILE to MODE.  MODE is either an
       octal number such as 755 or a symbolic change such as u+x,go-w.

       -R     change files and directories recursively""",
}


def help_entries(shell: str) -> "OrderedDict[str, Tuple[str, str]]":
    """Every documented verb of a dialect: lower-cased verb -> (usage, summary)."""
    entries: "OrderedDict[str, Tuple[str, str]]" = OrderedDict()
    for _, rows in HELP_SECTIONS[shell]:
        for verb, usage, summary in rows:
            entries[verb.lower()] = (usage, summary)
    return entries


def manual_page(shell: str, name: str) -> Optional[str]:
    """Full page for the famous commands, a generated one for the rest of the dialect."""
    if name in MAN_PAGES:
        return MAN_PAGES[name]
    entry = help_entries(shell).get(name.lower())
    if entry is None:
        return None
    usage, summary = entry
    title = f"{name.upper()}(1)"
    return (f"{title:<25}User Commands{title:>20}\n\nNAME\n       {name} - {summary.lower()}\n\n"
            f"SYNOPSIS\n       {usage}")


def h_man(ctx: ShellContext, args: List[str]) -> CommandResult:
    _, _, operands = _posix_opts(args)
    if not operands:
        return _err("What manual page do you want?\nFor example, try 'man man'.")
    page = manual_page(ctx.shell, operands[0])
    if page is None:
        return _err(f"No manual entry for {operands[0]}", 16)
    return _ok(page)


def h_info(ctx: ShellContext, args: List[str]) -> CommandResult:
    """info [topic]: the manual page framed as an info node."""
    _, _, operands = _posix_opts(args)
    if not operands:
        topics = "\n".join(f"* {verb}: ({verb}).        {summary}."
                           for verb, (_, summary) in help_entries(ctx.shell).items())
        return _ok("File: dir,\tNode: Top\n\nThis is the top of the INFO tree.\n\n* Menu:\n\n" + topics)
    name = operands[0]
    page = manual_page(ctx.shell, name)
    if page is None:
        return _err(f"info: No menu item '{name}' in node '(dir)Top'")
    return _ok(f"File: coreutils.info,  Node: {name} invocation,  Up: Top\n\n{page}")


def h_apropos(ctx: ShellContext, args: List[str]) -> CommandResult:
    """apropos keyword...: search the verb summaries."""
    _, _, operands = _posix_opts(args)
    if not operands:
        return _err("apropos what?")
    lines = []
    for verb, (_, summary) in help_entries(ctx.shell).items():
        text = f"{verb} {summary}".lower()
        if any(word.lower() in text for word in operands):
            lines.append(f"{verb} (1){' ' * max(1, 14 - len(verb))}- {summary}")
    if not lines:
        return _err(f"{' '.join(operands)}: nothing appropriate.")
    return _ok("\n".join(lines))


# ---------- Handlers: user and system information ----------
def h_whoami(ctx: ShellContext, args: List[str]) -> CommandResult:
    if ctx.shell in WINDOWS_SHELLS:
        return _ok(f"{ctx.session.environment.get('COMPUTERNAME', DEFAULT_HOSTNAME.upper()).lower()}\\{ctx.user}")
    return _ok(ctx.user)


def h_id(ctx: ShellContext, args: List[str]) -> CommandResult:
    if ctx.user == "root":
        return _ok("uid=0(root) gid=0(root) groups=0(root)")
    return _ok(f"uid=1000({ctx.user}) gid=1000(users) groups=1000(users),4(adm),24(cdrom),27(sudo)")


def h_groups(ctx: ShellContext, args: List[str]) -> CommandResult:
    return _ok("root" if ctx.user == "root" else "users adm cdrom sudo")


def h_date(ctx: ShellContext, args: List[str]) -> CommandResult:
    """date [+FORMAT] (POSIX) or date [/t] (CMD)."""
    now = ctx.now()
    if ctx.shell == CMD:
        if any(a.lower() == "/t" for a in args):
            return _ok(f"{now:%a %m/%d/%Y}")
        return _ok(f"The current date is: {now:%a %m/%d/%Y}")
    fmt = next((a[1:] for a in args if a.startswith("+")), None)
    if fmt is not None:
        return _ok(now.strftime(fmt))
    return _ok(now.strftime("%a %b %d %H:%M:%S UTC %Y"))


def h_time(ctx: ShellContext, args: List[str]) -> CommandResult:
    now = ctx.now()
    if any(a.lower() == "/t" for a in args):
        return _ok(f"{now:%H:%M}")
    return _ok(f"The current time is: {now:%H:%M:%S}.{now.microsecond // 10000:02d}")


def h_uptime(ctx: ShellContext, args: List[str]) -> CommandResult:
    return _ok(f" {ctx.now():%H:%M:%S} up  2:30,  1 user,  load average: 0.15, 0.25, 0.20")


def h_uname(ctx: ShellContext, args: List[str]) -> CommandResult:
    """uname [-a|-s|-n|-r|-m]"""
    flags, _, _ = _posix_opts(args)
    host = ctx.session.environment.get("HOSTNAME", DEFAULT_HOSTNAME)
    if ctx.shell == MACOS:
        fields = {"s": "Darwin", "n": host, "r": "23.4.0",
                  "v": "Darwin Kernel Version 23.4.0: root:xnu-10063.101.17~1/RELEASE_ARM64_T6000", "m": "arm64"}
    else:
        fields = {"s": "Linux", "n": host, "r": "5.4.0-74-generic", "v": "#83-Ubuntu SMP", "m": "x86_64"}
    if "a" in flags:
        parts = [fields[k] for k in "snrvm"] + ([] if ctx.shell == MACOS else ["GNU/Linux"])
        return _ok(" ".join(parts))
    return _ok(" ".join(fields[k] for k in "snrvm" if k in flags) or fields["s"])


# ---------- Handlers: Command Prompt system commands ----------
def h_tree(ctx: ShellContext, args: List[str]) -> CommandResult:
    """tree [path] [/f]: directory tree drawn with box characters; /f adds files."""
    switches, operands = _cmd_opts(args)
    raw = operands[0] if operands else "."
    drive_id, path, node = ctx.lookup(raw)
    if node is None or not node.is_dir:
        return _err(f"Invalid path - {raw.upper()}\nNo subfolders exist")
    drive = ctx.session.drives[drive_id]
    lines = [
        f"Folder PATH listing for volume {drive.label}",
        "Volume serial number is 1234-5678",
        ctx.display(drive_id, path).upper(),
    ]

    def draw(directory: FileSystemNode, indent: str) -> None:
        entries = sorted_entries(directory, show_hidden=False)
        files = [e for e in entries if not e.is_dir]
        dirs = [e for e in entries if e.is_dir]
        if "f" in switches:
            bar = "│   " if dirs else "    "
            for f in files:
                lines.append(f"{indent}{bar}{f.name}")
            if files:
                lines.append(f"{indent}{bar}".rstrip() or "")
        for i, d in enumerate(dirs):
            last = i == len(dirs) - 1
            lines.append(f"{indent}{'└───' if last else '├───'}{d.name}")
            draw(d, indent + ("    " if last else "│   "))

    draw(node, "")
    if len(lines) == 3:
        lines.append("No subfolders exist ")
    return _ok("\n".join(lines))


def h_systeminfo(ctx: ShellContext, args: List[str]) -> CommandResult:
    env = ctx.session.environment
    rows = [
        ("Host Name", env.get("COMPUTERNAME", DEFAULT_HOSTNAME.upper())),
        ("OS Name", "Microsoft Windows 10 Pro"),
        ("OS Version", "10.0.19044 N/A Build 19044"),
        ("OS Manufacturer", "Microsoft Corporation"),
        ("Registered Owner", env.get("USERNAME", ctx.user)),
        ("System Boot Time", f"{ctx.now():%m/%d/%Y, %H:%M:%S}"),
        ("System Type", "x64-based PC"),
        ("Total Physical Memory", "8,192 MB"),
        ("Available Physical Memory", "6,144 MB"),
        ("Logon Server", f"\\\\{env.get('COMPUTERNAME', DEFAULT_HOSTNAME.upper())}"),
    ]
    return _ok("\n".join(f"{k + ':':<27}{v}" for k, v in rows))


def h_ver(ctx: ShellContext, args: List[str]) -> CommandResult:
    return _ok("\nMicrosoft Windows [Version 10.0.19044.1889]")


def _volume_drive(ctx: ShellContext, args: List[str]) -> Tuple[str, Optional[Drive]]:
    operands = [a for a in args if not a.startswith("/")]
    drive_id = operands[0][0].upper() if operands else ctx.session.current_drive
    return drive_id, ctx.session.drives.get(drive_id)


def h_vol(ctx: ShellContext, args: List[str]) -> CommandResult:
    drive_id, drive = _volume_drive(ctx, args)
    if drive is None:
        return _err("The system cannot find the drive specified.")
    return _ok(f" Volume in drive {drive_id} is {drive.label}\n Volume Serial Number is 1234-5678")


def h_chkdsk(ctx: ShellContext, args: List[str]) -> CommandResult:
    """chkdsk [X:]: read-only report derived from the drive."""
    drive_id, drive = _volume_drive(ctx, args)
    if drive is None:
        return _err("The system cannot find the drive specified.")
    files = sum(1 for _, n in walk(drive.root, "/") if not n.is_dir)
    dirs = sum(1 for _, n in walk(drive.root, "/") if n.is_dir)
    return _ok("\n".join([
        f"The type of the file system is {drive.fs_format}.",
        f"Volume label is {drive.label}.",
        "",
        "WARNING!  /F parameter not specified.",
        "Running CHKDSK in read-only mode.",
        "",
        "Stage 1: Examining basic file system structure ...",
        f"  {files + dirs} file records processed.",
        "Stage 2: Examining file name linkage ...",
        f"  {dirs} index entries processed.",
        "",
        "Windows has scanned the file system and found no problems.",
        "No further action is required.",
        "",
        f"{drive.total_space // 1024:>15,} KB total disk space.",
        f"{tree_size(drive.root) // 1024:>15,} KB in {files} files.",
        f"{drive.free_space // 1024:>15,} KB available on disk.",
    ]))


def h_diskpart(ctx: ShellContext, args: List[str]) -> CommandResult:
    """diskpart: banner plus a ``list volume`` of the session's drives."""
    rows = []
    for number, (drive_id, drive) in enumerate(sorted(ctx.session.drives.items())):
        kind = {DRIVE_REMOVABLE: "Removable", DRIVE_NETWORK: "Network"}.get(drive.kind, "Partition")
        rows.append(f"  Volume {number}     {drive_id}   {drive.label:<11} {drive.fs_format:<5}  {kind:<10} "
                    f"{drive.total_space // GIB:>5} GB  Healthy")
    return _ok("\n".join([
        "Microsoft DiskPart version 10.0.19041.1",
        "",
        "Copyright (C) Microsoft Corporation.",
        f"On computer: {ctx.session.environment.get('COMPUTERNAME', DEFAULT_HOSTNAME.upper())}",
        "",
        "DISKPART> list volume",
        "",
        "  Volume ###  Ltr  Label        Fs     Type        Size     Status",
        "  ----------  ---  -----------  -----  ----------  -------  ---------",
    ] + rows))


def h_net(ctx: ShellContext, args: List[str]) -> CommandResult:
    """net user | use | start | <anything>"""
    sub = args[0].lower() if args else ""
    if sub == "user":
        return _ok(f"\nUser accounts for \\\\{ctx.session.environment.get('COMPUTERNAME', '')}\n\n"
                   + "-" * 79 + f"\nAdministrator            {ctx.user:<25}Guest\n"
                   "The command completed successfully.")
    if sub == "use":
        lines = ["New connections will be remembered.", "", "",
                 "Status       Local     Remote                    Network", "-" * 79]
        for drive_id, drive in sorted(ctx.session.drives.items()):
            if drive.kind == DRIVE_NETWORK:
                lines.append(f"OK           {drive_id}:        \\\\fileserver\\{drive.label.lower():<14}"
                             "Microsoft Windows Network")
        return _ok("\n".join(lines + ["The command completed successfully."]))
    if sub == "start":
        running = [display for display, status in ctx.session.services.values() if status == "Running"]
        return _ok("These Windows services are started:\n\n" + "\n".join(f"   {s}" for s in running)
                   + "\n\nThe command completed successfully.")
    return _ok("The command completed successfully.")


def h_ping(ctx: ShellContext, args: List[str]) -> CommandResult:
    """ping host: four simulated replies."""
    hosts = [a for a in args if not a.startswith("-") and not a.startswith("/")]
    if not hosts:
        if ctx.posix:
            return _err("ping: usage error: Destination address required", 1)
        return _err("IP address must be specified.")
    host = hosts[0]
    rng = ctx.rng
    times = [rng.randint(1, 30) for _ in range(4)]
    if ctx.posix:
        lines = [f"PING {host} (192.168.1.1) 56(84) bytes of data."]
        lines += [f"64 bytes from 192.168.1.1: icmp_seq={i} ttl=64 time={t}.{rng.randint(0, 9)} ms"
                  for i, t in enumerate(times, 1)]
        lines += ["", f"--- {host} ping statistics ---",
                  "4 packets transmitted, 4 received, 0% packet loss, time 3004ms"]
        return _ok("\n".join(lines))
    lines = ["", f"Pinging {host} [192.168.1.1] with 32 bytes of data:"]
    lines += [f"Reply from 192.168.1.1: bytes=32 time={t}ms TTL=64" for t in times]
    lines += ["", "Ping statistics for 192.168.1.1:",
              "    Packets: Sent = 4, Received = 4, Lost = 0 (0% loss),",
              "Approximate round trip times in milli-seconds:",
              f"    Minimum = {min(times)}ms, Maximum = {max(times)}ms, Average = {sum(times) // 4}ms"]
    return _ok("\n".join(lines))


def h_ipconfig(ctx: ShellContext, args: List[str]) -> CommandResult:
    lines = [
        "",
        "Windows IP Configuration",
        "",
    ]
    if any(a.lower() == "/all" for a in args):
        lines += [
            f"   Host Name . . . . . . . . . . . . : {ctx.session.environment.get('HOSTNAME', DEFAULT_HOSTNAME)}",
            "   Primary Dns Suffix  . . . . . . . : ",
            "   Node Type . . . . . . . . . . . . : Hybrid",
            "   IP Routing Enabled. . . . . . . . : No",
            "",
        ]
    lines += [
        "Ethernet adapter Ethernet:",
        "",
        "   Connection-specific DNS Suffix  . : academy.local",
        "   IPv4 Address. . . . . . . . . . . : 192.168.1.100",
        "   Subnet Mask . . . . . . . . . . . : 255.255.255.0",
        "   Default Gateway . . . . . . . . . : 192.168.1.1",
    ]
    return _ok("\n".join(lines))


def h_netstat(ctx: ShellContext, args: List[str]) -> CommandResult:
    rng = ctx.rng
    lines = ["", "Active Connections", "", "  Proto  Local Address          Foreign Address        State"]
    for remote, state in (("93.184.216.34:443", "ESTABLISHED"), ("140.82.112.3:443", "ESTABLISHED"),
                          ("0.0.0.0:0", "LISTENING")):
        local = f"192.168.1.100:{rng.randint(49152, 65535)}" if state != "LISTENING" else "0.0.0.0:22"
        lines.append(f"  TCP    {local:<22} {remote:<22} {state}")
    return _ok("\n".join(lines))


# ---------- Handlers: PowerShell system cmdlets ----------
def _service(ctx: ShellContext, name: str) -> Optional[str]:
    return next((k for k in ctx.session.services if k.lower() == name.lower()), None)


def h_get_service(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Get-Service [name]"""
    params, operands = _ps_params(args)
    pattern = str(params.get("name") or (operands[0] if operands else "*"))
    rows = [(status, name, display) for name, (display, status) in ctx.session.services.items()
            if fnmatch.fnmatch(name.lower(), pattern.lower())]
    if not rows:
        return _err(f"Get-Service : Cannot find any service with service name '{pattern}'.")
    return _ok("\n" + table(["Status", "Name", "DisplayName"], rows) + "\n")


def h_start_service(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Start-Service / Stop-Service name"""
    params, operands = _ps_params(args)
    name = str(params.get("name") or (operands[0] if operands else ""))
    if not name:
        return _err(f"{ctx.name} : Cannot process command because of one or more missing mandatory parameters: Name.")
    key = _service(ctx, name)
    if key is None:
        return _err(f"{ctx.name} : Cannot find any service with service name '{name}'.")
    services = OrderedDict(ctx.session.services)
    display, _ = services[key]
    services[key] = (display, "Running" if ctx.name == "Start-Service" else "Stopped")
    return _ok(services=services)


EVENT_LOGS = {
    "system": [("Information", "Service Control Manager", 7036, "The Windows Update service entered the running state."),
               ("Warning", "Microsoft-Windows-Time-Service", 129, "NtpClient was unable to set a domain peer."),
               ("Information", "EventLog", 6013, "The system uptime is 9000 seconds.")],
    "application": [("Information", "TerminalAcademy", 1000, "Training session started."),
                    ("Error", "Application Error", 1000, "Faulting application name: legacy.exe")],
    "security": [("SuccessAudit", "Microsoft-Windows-Security-Auditing", 4624, "An account was successfully logged on.")],
}


def h_get_eventlog(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Get-EventLog [-LogName] System|Application|Security [-Newest n]"""
    params, operands = _ps_params(args)
    log_name = str(params.get("logname") or (operands[0] if operands else ""))
    if not log_name:
        return _err("Get-EventLog : Cannot process command because of one or more missing mandatory parameters: LogName.")
    entries = EVENT_LOGS.get(log_name.lower())
    if entries is None:
        return _err(f"Get-EventLog : The event log '{log_name}' on computer '.' does not exist.")
    newest = int(params["newest"]) if str(params.get("newest", "")).isdigit() else len(entries)
    now = ctx.now()
    rows = [(ctx.rng.randint(1000, 99999), f"{now:%b %d %H:%M}", kind, source, event_id, message)
            for kind, source, event_id, message in entries[:newest]]
    return _ok("\n" + table(["Index", "Time", "EntryType", "Source", "InstanceID", "Message"], rows) + "\n")


def h_get_wmiobject(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Get-WmiObject [-Class] Win32_OperatingSystem|Win32_LogicalDisk|Win32_Processor|Win32_ComputerSystem"""
    params, operands = _ps_params(args)
    cls = str(params.get("class") or (operands[0] if operands else ""))
    if not cls:
        return _err("Get-WmiObject : Cannot process command because of one or more missing mandatory parameters: Class.")
    env = ctx.session.environment
    if cls.lower() == "win32_logicaldisk":
        blocks = []
        for drive_id, drive in sorted(ctx.session.drives.items()):
            kind = {DRIVE_REMOVABLE: 2, DRIVE_NETWORK: 4}.get(drive.kind, 3)
            blocks.append(f"DeviceID     : {drive_id}:\nDriveType    : {kind}\nProviderName : \n"
                          f"FreeSpace    : {drive.free_space}\nSize         : {drive.total_space}\n"
                          f"VolumeName   : {drive.label}")
        return _ok("\n\n".join(blocks))
    fixed = {
        "win32_operatingsystem": [("SystemDirectory", "C:\\Windows\\system32"), ("Organization", ""),
                                  ("BuildNumber", "19044"), ("RegisteredUser", env.get("USERNAME", ctx.user)),
                                  ("SerialNumber", "00330-80000-00000-AA123"), ("Version", "10.0.19044")],
        "win32_processor": [("Caption", "Intel64 Family 6 Model 158 Stepping 10"), ("DeviceID", "CPU0"),
                            ("Manufacturer", "GenuineIntel"), ("MaxClockSpeed", "3600"),
                            ("Name", "Intel(R) Core(TM) i7-8700 CPU @ 3.20GHz")],
        "win32_computersystem": [("Domain", "WORKGROUP"), ("Manufacturer", "Terminal Academy"),
                                 ("Model", "Virtual Machine"), ("Name", env.get("COMPUTERNAME", "")),
                                 ("PrimaryOwnerName", env.get("USERNAME", ctx.user)),
                                 ("TotalPhysicalMemory", "8589934592")],
    }.get(cls.lower())
    if fixed is None:
        return _err(f'Get-WmiObject : Invalid class "{cls}"')
    width = max(len(k) for k, _ in fixed)
    return _ok("\n".join(f"{k:<{width}} : {v}" for k, v in fixed))


def h_get_computerinfo(ctx: ShellContext, args: List[str]) -> CommandResult:
    env = ctx.session.environment
    rows = [
        ("WindowsBuildLabEx", "19041.1.amd64fre.vb_release.191206-1406"),
        ("WindowsCurrentVersion", "6.3"),
        ("WindowsEditionId", "Professional"),
        ("WindowsProductName", "Windows 10 Pro"),
        ("WindowsVersion", "2009"),
        ("CsName", env.get("COMPUTERNAME", "")),
        ("CsUserName", f"{env.get('COMPUTERNAME', '').lower()}\\{ctx.user}"),
        ("OsArchitecture", "64-bit"),
        ("TotalPhysicalMemory", "8589934592"),
    ]
    return _ok("\n".join(f"{k:<26}: {v}" for k, v in rows))


EXECUTION_POLICIES = ("Restricted", "AllSigned", "RemoteSigned", "Unrestricted", "Bypass", "Undefined")


def h_get_executionpolicy(ctx: ShellContext, args: List[str]) -> CommandResult:
    return _ok(ctx.session.execution_policy)


def h_set_executionpolicy(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Set-ExecutionPolicy [-ExecutionPolicy] policy"""
    params, operands = _ps_params(args)
    wanted = str(params.get("executionpolicy") or (operands[0] if operands else ""))
    if not wanted:
        return _err("Set-ExecutionPolicy : Cannot process command because of one or more missing mandatory "
                    "parameters: ExecutionPolicy.")
    policy = next((p for p in EXECUTION_POLICIES if p.lower() == wanted.lower()), None)
    if policy is None:
        return _err(f"Set-ExecutionPolicy : Cannot bind parameter 'ExecutionPolicy'. Cannot convert value "
                    f"\"{wanted}\" to type \"Microsoft.PowerShell.ExecutionPolicy\".")
    return _ok(execution_policy=policy)


DOTNET_FORMAT = [("yyyy", "%Y"), ("yy", "%y"), ("MMMM", "%B"), ("MMM", "%b"), ("MM", "%m"), ("dddd", "%A"),
                 ("ddd", "%a"), ("dd", "%d"), ("HH", "%H"), ("hh", "%I"), ("mm", "%M"), ("ss", "%S"), ("tt", "%p")]


def h_get_date(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Get-Date [-Format pattern] with .NET style tokens (yyyy-MM-dd HH:mm:ss)."""
    params, _ = _ps_params(args)
    now = ctx.now()
    if "format" in params:
        pattern = str(params["format"])
        for token, directive in DOTNET_FORMAT:
            pattern = pattern.replace(token, directive)
        return _ok(now.strftime(pattern))
    return _ok(f"\n{now:%A, %B %d, %Y %I:%M:%S %p}\n")


def h_get_host(ctx: ShellContext, args: List[str]) -> CommandResult:
    rows = [
        ("Name", "ConsoleHost"),
        ("Version", "5.1.19041.1682"),
        ("InstanceId", "6c1e4b2a-8f1d-4a51-9a9e-3c5d2f7e9b10"),
        ("CurrentCulture", "en-US"),
        ("CurrentUICulture", "en-US"),
        ("DebuggerEnabled", "True"),
    ]
    return _ok("\n" + "\n".join(f"{k:<17}: {v}" for k, v in rows) + "\n")


def h_no_input(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Where-Object / Sort-Object: pipeline filters, empty without pipeline input."""
    return _ok()


def h_invoke_expression(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Invoke-Expression "command": run the text as a new command line."""
    params, operands = _ps_params(args)
    expression = str(params.get("command") or " ".join(operands)).strip()
    if not expression:
        return _err("Invoke-Expression : Cannot bind argument to parameter 'Command' because it is an empty string.")
    engine = ctx.engine
    if engine.expression_depth >= MAX_EXPRESSION_DEPTH:
        raise ShellError(f"Invoke-Expression : Expressions nested deeper than {MAX_EXPRESSION_DEPTH} levels.")
    engine.expression_depth += 1
    try:
        return engine.dispatch(ctx.session, expression)
    finally:
        engine.expression_depth -= 1


# ---------- Progression ----------
def _basic_tutorial(shell: str) -> Tutorial:
    windows = shell in WINDOWS_SHELLS
    list_cmd = "dir" if windows else "ls"
    where_cmd = "cd" if shell == CMD else "pwd"
    make_cmd = {CMD: "md mission_files", POWERSHELL: "New-Item mission_files -Type Directory"}.get(
        shell, "mkdir mission_files")
    return Tutorial("basic", f"Basic Commands Tutorial ({shell.upper()})", [
        TutorialStep(
            "Let's start by listing files. Type the appropriate list command for your shell",
            list_cmd,
            f"Use '{list_cmd}' to list directory contents",
            "This command shows all files and directories in your current location.",
        ),
        TutorialStep(
            "Now let's see where we are. Type the appropriate command to show current directory",
            where_cmd,
            f"Use '{where_cmd}' to show your current directory path",
            "Knowing your current location is essential for navigation.",
        ),
        TutorialStep(
            "Let's create a new directory called 'mission_files'",
            make_cmd,
            f"Use '{make_cmd.split()[0]}' to create directories",
            "You've created a new directory for organizing files.",
        ),
    ])


def _navigation_tutorial(shell: str) -> Tutorial:
    show = {CMD: "type", POWERSHELL: "Get-Content"}.get(shell, "cat")
    home = {CMD: "cd %USERPROFILE%"}.get(shell, "cd ~")
    home_hint = f"Use '{home}' to go back home"
    if shell in POSIX_SHELLS:
        home_hint = f"Use '{home}' (or 'cd ..') to go back home"
    return Tutorial("navigation", f"Navigation Tutorial ({shell.upper()})", [
        TutorialStep(
            "Move into the Documents directory",
            "cd Documents",
            "Use 'cd Documents' to enter a directory below the current one",
            "Relative paths are resolved from where you are.",
            lambda output, session: base_name(session.current_directory) == "Documents",
        ),
        TutorialStep(
            "Display the contents of mission_brief.txt",
            f"{show} mission_brief.txt",
            f"Use '{show} mission_brief.txt' to print a file",
            "Reading files is how an agent gathers intel.",
            lambda output, session: "Operation Terminal Academy" in output,
        ),
        TutorialStep(
            "Return to your home directory",
            home,
            home_hint,
            "The home directory is always one short command away.",
            lambda output, session: session.current_directory == home_path(session.shell, session.user),
        ),
    ])


TUTORIAL_BUILDERS: "OrderedDict[str, Callable[[str], Tutorial]]" = OrderedDict([
    ("basic", _basic_tutorial),
    ("navigation", _navigation_tutorial),
])


def build_tutorial(tutorial_id: str, shell: str) -> Tutorial:
    """Tutorial ``tutorial_id`` worded for ``shell``; KeyError for an unknown id."""
    return TUTORIAL_BUILDERS[tutorial_id](shell)


INTEL_FOUND = "INTEL DISCOVERED: Backup files located in classified directory!"
KEY_FOUND = "ENCRYPTION KEY FOUND: Recovery sequence initiated!"
DATA_EXTRACTED = "CLASSIFIED DATA EXTRACTED: Mission parameters updated!"


def build_quest() -> Quest:
    return Quest(
        quest_id="data-recovery",
        title="Operation: Critical Data Recovery",
        description="A high-security server has been compromised. Critical files are scattered across the system.",
        objective="Navigate the file system, locate encrypted backup files, and recover the data",
        commands=frozenset({
            "find", "grep", "cat", "ls", "cd", "file",
            "dir", "type", "more", "findstr",
            "get-childitem", "set-location", "get-content", "select-string",
        }),
        story=[
            "PRIORITY ALERT: SECURITY BREACH DETECTED",
            "Agent, our primary data center has been infiltrated.",
            "The attackers have scattered critical files throughout the system.",
            "Intelligence suggests backup files contain encryption keys.",
            "Your mission: Use advanced command-line techniques to recover the data.",
            "Time is critical - the self-destruct sequence activates in 45 minutes!",
        ],
        xp_reward=200,
        required_files=["backup.dat", "recovery.key", "classified/*"],
        triggers=[
            (("find", "backup"), INTEL_FOUND),
            (("dir", "backup"), INTEL_FOUND),
            (("cat", "recovery"), KEY_FOUND),
            (("type", "recovery"), KEY_FOUND),
            (("get-content", "recovery"), KEY_FOUND),
            (("grep", "classified"), DATA_EXTRACTED),
            (("findstr", "classified"), DATA_EXTRACTED),
            (("select-string", "classified"), DATA_EXTRACTED),
        ],
        key_artifact="recovery.key",
    )


QuestPolicy = Callable[[Quest, str, random.Random], bool]


def chance_policy(chance: float) -> QuestPolicy:
    """Completion policy: each qualifying command ends the quest with probability ``chance``."""
    def policy(quest: Quest, command: str, rng: random.Random) -> bool:
        return rng.random() < chance
    return policy


def _award(session: SessionState, amount: int, settings: Settings) -> Tuple[Dict[str, Any], List[str]]:
    xp = session.xp + amount
    level = level_for(xp, settings.xp_per_level)
    notices = [f"Level up! You are now level {level}."] if level > session.level else []
    return {"xp": xp, "level": level}, notices


def advance_tutorial(session: SessionState, line: str, result: CommandResult,
                     settings: Settings) -> Tuple[Dict[str, Any], List[str]]:
    """Score a command against the current tutorial step.

    A match is the raw input equal to the expected command (ignoring case
    and surrounding whitespace) or the step's validator accepting the
    output. Returns the state patch and the notices to show.
    """
    tutorial = session.tutorial
    step = tutorial.step
    matched = line.strip().lower() == step.expected_command.lower()
    if not matched and step.validator is not None:
        matched = bool(step.validator(result.output, session))
    if not matched:
        return {}, [f"Hint: {step.hint}"]
    gained = settings.step_xp
    notices = [f"{step.explanation} (+{settings.step_xp} XP)"]
    if tutorial.on_last_step:
        gained += settings.tutorial_bonus_xp
        patch, levels = _award(session, gained, settings)
        patch.update(tutorial=None, mode=MODE_TERMINAL)
        notices.append(f"Tutorial complete: {tutorial.title} (+{settings.tutorial_bonus_xp} XP bonus)")
        log.info("tutorial %s completed", tutorial.tutorial_id)
    else:
        patch, levels = _award(session, gained, settings)
        advanced = dataclasses.replace(tutorial, current_step=tutorial.current_step + 1)
        patch["tutorial"] = advanced
        notices.append(f"Step {advanced.current_step + 1}/{len(advanced.steps)}: {advanced.step.instruction}")
        log.info("tutorial %s advanced to step %d", tutorial.tutorial_id, advanced.current_step + 1)
    return patch, notices + levels


def advance_quest(session: SessionState, command: Optional[str], line: str, result: CommandResult,
                  rng: random.Random, policy: QuestPolicy,
                  settings: Settings) -> Tuple[Dict[str, Any], List[str]]:
    """Record story progress for a relevant, successful command and maybe finish the quest."""
    quest = session.quest
    if not command or command.lower() not in quest.commands or not result.ok:
        return {}, []
    text = line.lower()
    progress = list(quest.progress)
    notices = []
    for words, milestone in quest.triggers:
        if milestone not in progress and all(w in text for w in words):
            progress.append(milestone)
            notices.append(milestone)
    patch: Dict[str, Any] = {}
    if progress != quest.progress:
        patch["quest"] = dataclasses.replace(quest, progress=progress)
    if (quest.key_artifact and quest.key_artifact in line) or policy(quest, line, rng):
        award, levels = _award(session, quest.xp_reward, settings)
        patch = dict(award, quest=None, mode=MODE_TERMINAL)
        notices.extend(levels)
        notices.append(f"MISSION COMPLETE: {quest.title} (+{quest.xp_reward} XP)")
        log.info("quest %s completed", quest.quest_id)
    return patch, notices


# ---------- Universal commands ----------
UNIVERSAL_HELP = [
    ("help", "help [command]", "Show this help message"),
    ("tutorial", "tutorial [id]", "Start tutorial mode (basic, navigation)"),
    ("quest", "quest", "Start quest mode"),
    ("arena", "arena", "Start challenge arena"),
    ("shell", "shell <type>", "Switch shell environment (bash, cmd, powershell, macos)"),
    ("status", "status", "Show player status"),
    ("history", "history [n]", "Show command history"),
    ("clear", "clear/cls", "Clear terminal"),
    ("exit", "exit", "Return to main menu"),
]

HELP_TIPS = """Tips:
* Use 'man <command>' (Unix) or 'help <command>' for detailed help
* Press Up/Down arrows for command history
* Use Tab for auto-completion
* Type 'status' to see your progress and system info"""


def render_help(shell: str) -> str:
    lines = [f"Terminal Academy v{VERSION} - Available Commands:", "", "Game Commands:"]
    lines += [f"  {usage:<24}- {summary}" for _, usage, summary in UNIVERSAL_HELP]
    for title, rows in HELP_SECTIONS[shell]:
        lines += ["", f"{title} ({shell.upper()}):" if title == "File System Commands" else f"{title}:"]
        lines += [f"  {usage:<24}- {summary}" for _, usage, summary in rows]
    return "\n".join(lines + ["", HELP_TIPS])


def h_help(ctx: ShellContext, args: List[str]) -> CommandResult:
    """help [command]"""
    if not args:
        return _ok(render_help(ctx.shell))
    name = args[0].lower()
    universal = {verb: (usage, summary) for verb, usage, summary in UNIVERSAL_HELP}
    entry = universal.get(name) or help_entries(ctx.shell).get(name)
    if entry is None and name in DIALECT_TABLES[ctx.shell]:
        entry = help_entries(ctx.shell).get(DIALECT_TABLES[ctx.shell][name][0].lower())
    if entry is None:
        return _err(f"help: no help topics match '{args[0]}'.")
    usage, summary = entry
    return _ok(f"{usage}\n    {summary}.")


def h_tutorial(ctx: ShellContext, args: List[str]) -> CommandResult:
    """tutorial [id]: start a tutorial in the current dialect."""
    tutorial_id = args[0].lower() if args else "basic"
    if tutorial_id not in TUTORIAL_BUILDERS:
        return _err(f"tutorial: unknown tutorial '{args[0]}' (available: {', '.join(TUTORIAL_BUILDERS)})")
    tutorial = build_tutorial(tutorial_id, ctx.shell)
    step = tutorial.step
    return _ok(
        f"Tutorial mode activated: {tutorial.title}\n\n"
        f"Step 1/{len(tutorial.steps)}: {step.instruction}\nHint: {step.hint}",
        mode=MODE_TUTORIAL, tutorial=tutorial,
    )


def h_quest(ctx: ShellContext, args: List[str]) -> CommandResult:
    quest = build_quest()
    lines = [f"Quest mode activated: {quest.title}", ""] + quest.story + [
        "",
        f"Briefing: {quest.description}",
        f"Objective: {quest.objective}",
        f"Targets: {', '.join(quest.required_files)}",
        f"Reward: {quest.xp_reward} XP",
    ]
    return _ok("\n".join(lines), mode=MODE_QUEST, quest=quest)


ARENA_CHALLENGES = [
    "Speed Typing Tests - Race against time",
    "Command Puzzle Solving - Complex file system challenges",
    "Shell Scripting Competitions - Automate solutions",
    "Multi-Shell Mastery - Switch environments rapidly",
    "Network Penetration Simulations - Advanced scenarios",
]


def h_arena(ctx: ShellContext, args: List[str]) -> CommandResult:
    lines = ["Challenge Arena activated.", "", "Available Challenges:"]
    lines += [f"  * {c}" for c in ARENA_CHALLENGES]
    return _ok("\n".join(lines), mode=MODE_ARENA)


def h_shell(ctx: ShellContext, args: List[str]) -> CommandResult:
    """shell [bash|cmd|powershell|macos]; the location is kept across the switch."""
    if not args:
        return _ok(f"Current shell: {ctx.shell}\nAvailable shells: {', '.join(SHELLS)}\n\nUsage: shell <type>")
    shell = args[0].lower()
    if shell not in SHELLS:
        return _err(f"Invalid shell: {args[0]}\nAvailable shells: {', '.join(SHELLS)}")
    environment = dict(ctx.session.environment)
    environment["SHELL"] = SHELL_BINARIES[shell]
    log.info("shell switched: %s -> %s", ctx.shell, shell)
    return _ok(f"Shell environment changed to {shell.upper()}\nWelcome to {SHELL_NAMES[shell]}",
               shell=shell, environment=environment)


def h_launch_shell(ctx: ShellContext, args: List[str]) -> CommandResult:
    """Typing a shell's name (bash, cmd, powershell) switches to it."""
    return h_shell(ctx, [ctx.name])


def h_status(ctx: ShellContext, args: List[str]) -> CommandResult:
    return _ok(render_status(ctx.engine.status_report(ctx.session)))


def h_history(ctx: ShellContext, args: List[str]) -> CommandResult:
    """history [n]: numbered list of the most recent commands."""
    entries = list(enumerate(ctx.session.history, 1))
    if args and args[0].isdigit():
        entries = entries[-int(args[0]):] if int(args[0]) else []
    elif args:
        return _err(f"{_bash(ctx)}: history: {args[0]}: numeric argument required")
    return _ok("\n".join(f"{i:>5}  {line}" for i, line in entries))


def h_clear(ctx: ShellContext, args: List[str]) -> CommandResult:
    return CommandResult(clear_screen=True)


def h_exit(ctx: ShellContext, args: List[str]) -> CommandResult:
    return _ok("Returning to main menu...", mode=MODE_MENU)


def render_status(report: StatusReport) -> str:
    """Text layout of the ``status`` command."""
    lines = [
        "Terminal Academy - System Status",
        "",
        "Agent Profile:",
        f"  Agent Level: {report.level}",
        f"  Experience Points: {report.xp:,}",
        f"  Commands Executed: {report.commands_executed}",
        "",
        "Active Shell Environment:",
        f"  Current Shell: {report.shell.upper()}",
        f"  Working Directory: {report.directory}",
        f"  Current Drive: {report.drive_id} ({report.drive_label})",
        f"  File System: {report.fs_format}",
        "",
        "Storage Information:",
        f"  Total Space: {report.total_space / GIB:.2f} GB",
        f"  Free Space: {report.free_space / GIB:.2f} GB",
        f"  Used Space: {report.used_space / GIB:.2f} GB",
        "",
        "System Resources:",
        f"  Active Processes: {report.process_count}",
        f"  Memory Usage: {report.memory_percent:.0f}%",
        f"  CPU Usage: {report.cpu_percent:.0f}%",
        "",
        "Network Status:",
        f"  Hostname: {report.hostname}",
        f"  User Account: {report.user}",
        f"  Home Directory: {report.home}",
        "",
        "Mission Progress:",
        f"  Current Mode: {report.mode.upper()}",
    ]
    if report.tutorial:
        step, total = report.tutorial_progress
        lines += [f"  Active Tutorial: {report.tutorial}", f"  Tutorial Progress: Step {step}/{total}"]
    if report.quest:
        lines += [f"  Active Mission: {report.quest}",
                  f"  Mission Status: {'COMPLETED' if report.quest_completed else 'IN PROGRESS'}"]
    return "\n".join(lines)


# ---------- Command tables ----------
POSIX_HELP = [
    ("File System Commands", [
        ("ls", "ls [-la] [path]", "List directory contents"),
        ("pwd", "pwd", "Print working directory"),
        ("cd", "cd [path]", "Change directory"),
        ("mkdir", "mkdir [-p] <name>", "Create directory"),
        ("rmdir", "rmdir <dir>", "Remove empty directory"),
        ("rm", "rm [-rf] <file>", "Remove files and directories"),
        ("cp", "cp [-r] <src> <dst>", "Copy files"),
        ("mv", "mv <src> <dst>", "Move or rename files"),
        ("cat", "cat <file>", "Display file contents"),
        ("touch", "touch <file>", "Create an empty file"),
        ("find", "find [path] -name <pattern>", "Search for files"),
        ("grep", "grep [-inrv] <pattern> <file>", "Search text in files"),
        ("chmod", "chmod <mode> <file>", "Change file permissions"),
        ("chown", "chown <user[:group]> <file>", "Change file ownership"),
    ]),
    ("System Commands", [
        ("df", "df [-h]", "Show disk space usage"),
        ("du", "du [-sh] [path]", "Show directory space usage"),
        ("ps", "ps [aux]", "List running processes"),
        ("top", "top", "Display running processes"),
        ("kill", "kill <pid>", "Terminate a process"),
        ("killall", "killall <name>", "Terminate processes by name"),
        ("which", "which <command>", "Locate a command"),
        ("whereis", "whereis <command>", "Locate binary and manual page"),
        ("file", "file <path>", "Determine file type"),
        ("head", "head [-n N] <file>", "Show the first lines of a file"),
        ("tail", "tail [-n N] <file>", "Show the last lines of a file"),
        ("wc", "wc [-lwc] <file>", "Count lines, words and bytes"),
        ("sort", "sort [-rnu] <file>", "Sort lines of text"),
        ("uniq", "uniq [-c] <file>", "Drop repeated lines"),
        ("uname", "uname [-a]", "Print system information"),
        ("uptime", "uptime", "Show how long the system has been running"),
        ("date", "date", "Print the date and time"),
        ("ping", "ping <host>", "Send echo requests to a host"),
    ]),
    ("User Commands", [
        ("whoami", "whoami", "Print the current user name"),
        ("id", "id", "Print user and group ids"),
        ("groups", "groups", "Print group memberships"),
        ("env", "env", "Print the environment"),
        ("export", "export NAME=value", "Set an environment variable"),
        ("alias", "alias name='command'", "Define or list aliases"),
        ("echo", "echo <text>", "Print text"),
    ]),
    ("Help Commands", [
        ("man", "man <command>", "Show the manual page"),
        ("info", "info <command>", "Show the info page"),
        ("apropos", "apropos <keyword>", "Search manual page summaries"),
    ]),
]

CMD_HELP = [
    ("File System Commands", [
        ("dir", "dir [/a] [path]", "List directory contents"),
        ("cd", "cd [/d] [path]", "Change or show directory"),
        ("md", "md <name>", "Create directory"),
        ("rd", "rd [/s] [/q] <dir>", "Remove directory"),
        ("del", "del <file>", "Delete files"),
        ("copy", "copy <src> <dst>", "Copy files"),
        ("xcopy", "xcopy <src> <dst> [/e]", "Copy files and directory trees"),
        ("robocopy", "robocopy <src> <dst> [/e]", "Robust file copy"),
        ("move", "move <src> <dst>", "Move files"),
        ("ren", "ren <old> <new>", "Rename files"),
        ("type", "type <file>", "Display file contents"),
        ("more", "more <file>", "Display file contents one screen at a time"),
        ("find", "find \"text\" <file>", "Search for text in files"),
        ("findstr", "findstr [/i] [/s] <pattern> <file>", "Search strings in files"),
        ("attrib", "attrib [+h|-h] <file>", "Show or change file attributes"),
        ("tree", "tree [/f] [path]", "Graphically display folder structure"),
    ]),
    ("System Commands", [
        ("tasklist", "tasklist", "List running processes"),
        ("taskkill", "taskkill /pid <n> | /im <name>", "Terminate processes"),
        ("systeminfo", "systeminfo", "Show system information"),
        ("ver", "ver", "Show Windows version"),
        ("date", "date /t", "Show the date"),
        ("time", "time /t", "Show the time"),
        ("vol", "vol [drive:]", "Show volume label and serial number"),
        ("chkdsk", "chkdsk [drive:]", "Check a disk"),
        ("diskpart", "diskpart", "Disk partitioning tool"),
        ("whoami", "whoami", "Print the current user name"),
    ]),
    ("Network Commands", [
        ("ping", "ping <host>", "Send echo requests to a host"),
        ("ipconfig", "ipconfig [/all]", "Show network configuration"),
        ("netstat", "netstat", "Show network connections"),
        ("net", "net user | net share", "Manage users and shares"),
    ]),
    ("Environment Commands", [
        ("set", "set [name[=value]]", "Show or set environment variables"),
        ("path", "path [value]", "Show or set the search path"),
        ("echo", "echo <text>", "Print text"),
    ]),
    ("Drive Commands", [
        ("c:", "C: | D: | E: | Z:", "Switch to another drive"),
    ]),
]

POWERSHELL_HELP = [
    ("File System Commands", [
        ("Get-ChildItem", "Get-ChildItem [path]", "List directory contents (ls, dir, gci)"),
        ("Set-Location", "Set-Location <path>", "Change directory (cd, sl)"),
        ("Get-Location", "Get-Location", "Show current directory (pwd, gl)"),
        ("New-Item", "New-Item <name> -ItemType <type>", "Create files or directories (ni)"),
        ("Remove-Item", "Remove-Item <path> [-Recurse]", "Delete items (rm, del, ri)"),
        ("Copy-Item", "Copy-Item <src> <dst> [-Recurse]", "Copy items (cp, copy, cpi)"),
        ("Move-Item", "Move-Item <src> <dst>", "Move items (mv, move, mi)"),
        ("Rename-Item", "Rename-Item <path> <new>", "Rename items (ren, rni)"),
        ("Get-Content", "Get-Content <file>", "Display file contents (cat, type, gc)"),
        ("Set-Content", "Set-Content <file> <text>", "Replace file contents (sc)"),
        ("Add-Content", "Add-Content <file> <text>", "Append to a file (ac)"),
        ("Select-String", "Select-String <pattern> <path>", "Search text in files (sls)"),
        ("Where-Object", "Where-Object", "Filter pipeline objects (where, ?)"),
        ("Sort-Object", "Sort-Object", "Sort pipeline objects (sort)"),
    ]),
    ("System Commands", [
        ("Get-Process", "Get-Process [name]", "List running processes (ps, gps)"),
        ("Stop-Process", "Stop-Process -Id <n> | -Name <name>", "Terminate processes (kill, spps)"),
        ("Get-Service", "Get-Service [name]", "List services (gsv)"),
        ("Start-Service", "Start-Service <name>", "Start a service (sasv)"),
        ("Stop-Service", "Stop-Service <name>", "Stop a service (spsv)"),
        ("Get-EventLog", "Get-EventLog -LogName <log>", "Show event log entries"),
        ("Get-WmiObject", "Get-WmiObject <class>", "Query management objects (gwmi)"),
        ("Get-ComputerInfo", "Get-ComputerInfo", "Show computer information"),
        ("Get-Date", "Get-Date [-Format f]", "Show the date and time"),
        ("whoami", "whoami", "Print the current user name"),
    ]),
    ("PowerShell Specific", [
        ("Get-ExecutionPolicy", "Get-ExecutionPolicy", "Show the script execution policy"),
        ("Set-ExecutionPolicy", "Set-ExecutionPolicy <policy>", "Change the script execution policy"),
        ("Get-Host", "Get-Host", "Show host information"),
        ("Get-Variable", "Get-Variable [name]", "List variables (gv)"),
        ("Set-Variable", "Set-Variable <name> <value>", "Set a variable (sv, set)"),
        ("Write-Output", "Write-Output <text>", "Print objects (echo, write)"),
        ("Write-Host", "Write-Host <text>", "Print text to the host"),
        ("Get-Command", "Get-Command [name]", "List commands (gcm)"),
        ("Get-Alias", "Get-Alias [name]", "List aliases (gal)"),
        ("Invoke-Expression", "Invoke-Expression <command>", "Run a command string (iex)"),
    ]),
]

HELP_SECTIONS = {
    BASH: POSIX_HELP,
    MACOS: POSIX_HELP,
    CMD: CMD_HELP,
    POWERSHELL: POWERSHELL_HELP,
}

Handler = Callable[[ShellContext, List[str]], CommandResult]

POSIX_COMMANDS: "OrderedDict[str, Handler]" = OrderedDict([
    ("ls", h_list),
    ("pwd", h_pwd),
    ("cd", h_cd),
    ("mkdir", h_mkdir),
    ("rmdir", h_rmdir),
    ("rm", h_rm),
    ("cp", h_cp),
    ("mv", h_mv),
    ("cat", h_cat),
    ("touch", h_touch),
    ("find", h_find),
    ("grep", h_grep),
    ("chmod", h_chmod),
    ("chown", h_chown),
    ("df", h_df),
    ("du", h_du),
    ("ps", h_ps),
    ("top", h_top),
    ("kill", h_kill),
    ("killall", h_killall),
    ("which", h_which),
    ("whereis", h_whereis),
    ("file", h_file),
    ("head", h_head),
    ("tail", h_head),
    ("wc", h_wc),
    ("sort", h_sort),
    ("uniq", h_uniq),
    ("whoami", h_whoami),
    ("id", h_id),
    ("groups", h_groups),
    ("date", h_date),
    ("uptime", h_uptime),
    ("uname", h_uname),
    ("env", h_env),
    ("export", h_export),
    ("alias", h_alias),
    ("echo", h_echo),
    ("man", h_man),
    ("info", h_info),
    ("apropos", h_apropos),
    ("ping", h_ping),
])

CMD_COMMANDS: "OrderedDict[str, Handler]" = OrderedDict([
    ("dir", h_list),
    ("cd", h_cd),
    ("md", h_mkdir),
    ("rd", h_rmdir),
    ("del", h_del),
    ("copy", h_copy),
    ("xcopy", h_xcopy),
    ("robocopy", h_robocopy),
    ("move", h_move),
    ("ren", h_ren),
    ("type", h_cat),
    ("more", h_cat),
    ("find", h_find_text),
    ("findstr", h_findstr),
    ("attrib", h_attrib),
    ("tree", h_tree),
    ("tasklist", h_tasklist),
    ("taskkill", h_taskkill),
    ("systeminfo", h_systeminfo),
    ("ver", h_ver),
    ("date", h_date),
    ("time", h_time),
    ("vol", h_vol),
    ("chkdsk", h_chkdsk),
    ("diskpart", h_diskpart),
    ("net", h_net),
    ("ping", h_ping),
    ("ipconfig", h_ipconfig),
    ("netstat", h_netstat),
    ("echo", h_echo),
    ("set", h_set),
    ("path", h_path),
    ("whoami", h_whoami),
])

CMD_ALIASES = {
    "chdir": "cd",
    "mkdir": "md",
    "rmdir": "rd",
    "erase": "del",
    "rename": "ren",
}

POWERSHELL_COMMANDS: "OrderedDict[str, Handler]" = OrderedDict([
    ("Get-ChildItem", h_list),
    ("Set-Location", h_cd),
    ("Get-Location", h_pwd),
    ("New-Item", h_new_item),
    ("mkdir", h_mkdir),
    ("Remove-Item", h_remove_item),
    ("Copy-Item", h_copy_item),
    ("Move-Item", h_move_item),
    ("Rename-Item", h_rename_item),
    ("Get-Content", h_cat),
    ("Set-Content", h_set_content),
    ("Add-Content", h_set_content),
    ("Select-String", h_select_string),
    ("Where-Object", h_no_input),
    ("Sort-Object", h_no_input),
    ("Get-Process", h_get_process),
    ("Stop-Process", h_stop_process),
    ("Get-Service", h_get_service),
    ("Start-Service", h_start_service),
    ("Stop-Service", h_start_service),
    ("Get-EventLog", h_get_eventlog),
    ("Get-WmiObject", h_get_wmiobject),
    ("Get-ComputerInfo", h_get_computerinfo),
    ("Get-ExecutionPolicy", h_get_executionpolicy),
    ("Set-ExecutionPolicy", h_set_executionpolicy),
    ("Get-Date", h_get_date),
    ("Get-Host", h_get_host),
    ("Get-Variable", h_get_variable),
    ("Set-Variable", h_set_variable),
    ("Write-Output", h_write_output),
    ("Write-Host", h_write_output),
    ("Get-Command", h_get_command),
    ("Get-Alias", h_get_alias),
    ("Invoke-Expression", h_invoke_expression),
    ("whoami", h_whoami),
])

POWERSHELL_ALIASES = {
    "gci": "Get-ChildItem", "ls": "Get-ChildItem", "dir": "Get-ChildItem",
    "sl": "Set-Location", "cd": "Set-Location", "chdir": "Set-Location",
    "gl": "Get-Location", "pwd": "Get-Location",
    "ni": "New-Item",
    "md": "mkdir",
    "ri": "Remove-Item", "rm": "Remove-Item", "del": "Remove-Item", "erase": "Remove-Item",
    "rd": "Remove-Item", "rmdir": "Remove-Item",
    "ci": "Copy-Item", "cpi": "Copy-Item", "copy": "Copy-Item", "cp": "Copy-Item",
    "mi": "Move-Item", "move": "Move-Item", "mv": "Move-Item",
    "rni": "Rename-Item", "ren": "Rename-Item",
    "gc": "Get-Content", "cat": "Get-Content", "type": "Get-Content",
    "sc": "Set-Content",
    "ac": "Add-Content",
    "sls": "Select-String",
    "where": "Where-Object", "?": "Where-Object",
    "sort": "Sort-Object",
    "gps": "Get-Process", "ps": "Get-Process",
    "spps": "Stop-Process", "kill": "Stop-Process",
    "gsv": "Get-Service",
    "sasv": "Start-Service",
    "spsv": "Stop-Service",
    "gwmi": "Get-WmiObject",
    "gv": "Get-Variable",
    "sv": "Set-Variable", "set": "Set-Variable",
    "write": "Write-Output", "echo": "Write-Output",
    "gcm": "Get-Command",
    "gal": "Get-Alias",
    "iex": "Invoke-Expression",
}

POWERSHELL_MODULES = {
    "Select-String": "Microsoft.PowerShell.Utility",
    "Sort-Object": "Microsoft.PowerShell.Utility",
    "Get-Date": "Microsoft.PowerShell.Utility",
    "Get-Host": "Microsoft.PowerShell.Utility",
    "Get-Variable": "Microsoft.PowerShell.Utility",
    "Set-Variable": "Microsoft.PowerShell.Utility",
    "Write-Output": "Microsoft.PowerShell.Utility",
    "Write-Host": "Microsoft.PowerShell.Utility",
    "Get-Alias": "Microsoft.PowerShell.Utility",
    "Invoke-Expression": "Microsoft.PowerShell.Utility",
    "Where-Object": "Microsoft.PowerShell.Core",
    "Get-Command": "Microsoft.PowerShell.Core",
    "Get-ExecutionPolicy": "Microsoft.PowerShell.Security",
    "Set-ExecutionPolicy": "Microsoft.PowerShell.Security",
}


def build_table(commands: "OrderedDict[str, Handler]",
                aliases: Dict[str, str]) -> "OrderedDict[str, Tuple[str, Handler]]":
    """Lower-cased verb -> (canonical name, handler) for one dialect."""
    dispatch: "OrderedDict[str, Tuple[str, Handler]]" = OrderedDict()
    for name, handler in commands.items():
        dispatch[name.lower()] = (name, handler)
    for alias, target in aliases.items():
        dispatch[alias.lower()] = (target, commands[target])
    return dispatch


POSIX_TABLE = build_table(POSIX_COMMANDS, {})
DIALECT_TABLES = {
    BASH: POSIX_TABLE,
    MACOS: POSIX_TABLE,
    CMD: build_table(CMD_COMMANDS, CMD_ALIASES),
    POWERSHELL: build_table(POWERSHELL_COMMANDS, POWERSHELL_ALIASES),
}

UNIVERSAL_COMMANDS: "OrderedDict[str, Handler]" = OrderedDict([
    ("help", h_help),
    ("tutorial", h_tutorial),
    ("quest", h_quest),
    ("arena", h_arena),
    ("shell", h_shell),
    ("status", h_status),
    ("history", h_history),
    ("clear", h_clear),
    ("cls", h_clear),
    ("exit", h_exit),
    ("bash", h_launch_shell),
    ("macos", h_launch_shell),
    ("cmd", h_launch_shell),
    ("powershell", h_launch_shell),
])


def not_found(shell: str, verb: str) -> CommandResult:
    """The dialect's unknown-command failure, with close matches as a notice."""
    if shell == CMD:
        result = _err(f"'{verb}' is not recognized as an internal or external command,\n"
                      "operable program or batch file.")
    elif shell == POWERSHELL:
        result = _err(f"{verb} : The term '{verb}' is not recognized as the name of a cmdlet, function, "
                      "script file, or operable program. Check the spelling of the name, or if a path was "
                      "included, verify that the path is correct and try again.")
    else:
        result = _err(f"{'-bash' if shell == MACOS else 'bash'}: {verb}: command not found", 127)
    known = list(DIALECT_TABLES[shell]) + list(UNIVERSAL_COMMANDS)
    matches = difflib.get_close_matches(verb.lower(), known, n=3, cutoff=0.6)
    if matches:
        result.notices.append(f"Did you mean: {', '.join(matches)}?")
    return result


# ---------- Dispatch helpers ----------
POSIX_VARIABLE = re.compile(r"\$\{(\w+)\}|\$(\w+)")
CMD_VARIABLE = re.compile(r"%(\w+)%")
PS_VARIABLE = re.compile(r"\$env:(\w+)|\$(\w+)", re.IGNORECASE)
PS_ASSIGNMENT = re.compile(r"^\$(env:)?([A-Za-z_]\w*)\s*=\s*(.*)$", re.IGNORECASE)
POSIX_ASSIGNMENT = re.compile(r"^([A-Za-z_]\w*)=(\S*)$")
DRIVE_LETTER = re.compile(r"^[A-Za-z]:$")


def expand_variables(session: SessionState, line: str) -> str:
    """Substitute variable references the way the session's dialect does.

    POSIX shells expand ``$NAME`` and ``${NAME}`` (unknown names become
    empty) but leave single-quoted text alone. CMD expands ``%NAME%``
    case-insensitively and keeps unknown references as typed. PowerShell
    expands ``$env:NAME`` and ``$name`` outside single quotes.
    """
    environment = session.environment
    if session.shell == CMD:
        def cmd_value(m):
            key = _env_key(environment, m.group(1))
            return environment[key] if key is not None else m.group(0)
        return CMD_VARIABLE.sub(cmd_value, line)

    if session.shell == POWERSHELL:
        automatic = {"home": display_path(POWERSHELL, "C", home_path(POWERSHELL, session.user)),
                     "pwd": display_path(POWERSHELL, session.current_drive, session.current_directory),
                     "true": "True", "false": "False", "null": ""}

        def value(m):
            if m.group(1) is not None:
                key = _env_key(environment, m.group(1))
                return environment[key] if key is not None else ""
            key = _env_key(session.variables, m.group(2))
            if key is not None:
                return session.variables[key]
            return automatic.get(m.group(2).lower(), "")
        pattern = PS_VARIABLE
    else:
        def value(m):
            name = m.group(1) or m.group(2)
            return environment.get(name, session.variables.get(name, ""))
        pattern = POSIX_VARIABLE
    parts = re.split(r"('[^']*')", line)
    return "".join(p if p.startswith("'") else pattern.sub(value, p) for p in parts)


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


def split_redirection(line: str) -> Tuple[str, Optional[str], bool]:
    """Split ``cmd > file`` / ``cmd >> file`` into (command, target, append).

    Only the first ``>`` outside quotes counts; without one the target is None.
    """
    quote = None
    for i, ch in enumerate(line):
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == ">":
            append = line[i + 1:i + 2] == ">"
            target = line[i + (2 if append else 1):]
            return line[:i].rstrip(), _unquote(target), append
    return line, None, False


def tokenize(shell: str, line: str) -> List[str]:
    """Split a command line into words, honouring quotes.

    Backslashes are literal in the Windows dialects. An unbalanced quote
    falls back to plain whitespace splitting.
    """
    lexer = shlex.shlex(line, posix=True)
    lexer.whitespace_split = True
    if shell in WINDOWS_SHELLS:
        lexer.escape = ""
        lexer.commenters = ""
    try:
        return list(lexer)
    except ValueError:
        return line.split()


def _redirect_errors(ctx: ShellContext, target: str) -> Tuple[str, str]:
    """(missing parent, is a directory) messages for a redirection target."""
    if ctx.shell == CMD:
        return "The system cannot find the path specified.", "Access is denied."
    if ctx.shell == POWERSHELL:
        drive_id, path = ctx.resolve(target)
        shown = ctx.display(drive_id, path)
        return (f"out-file : Could not find a part of the path '{shown}'.",
                f"out-file : Access to the path '{shown}' is denied.")
    return (f"{_bash(ctx)}: {target}: No such file or directory",
            f"{_bash(ctx)}: {target}: Is a directory")


def write_redirect(ctx: ShellContext, target: str, append: bool, output: str) -> None:
    """Store a command's output in the virtual file ``target``."""
    if not target:
        if ctx.shell == POWERSHELL:
            raise ShellError("Missing file specification after redirection operator.")
        if ctx.shell == CMD:
            raise ShellError("The syntax of the command is incorrect.")
        raise ShellError(f"{_bash(ctx)}: syntax error near unexpected token `newline'", 2)
    missing, is_dir = _redirect_errors(ctx, target)
    drive_id, path, node = ctx.lookup(target)
    if node is not None and node.kind == SYMLINK:
        path, node = follow_links(ctx.session.drives[drive_id], path, node)
    if node is not None and node.is_dir:
        raise ShellError(is_dir)
    if node is None:
        ctx.write(drive_id, path, ctx.new_file(base_name(path), output), missing)
        return
    content = f"{node.content}\n{output}" if append and node.content else output
    updated = dataclasses.replace(node, content=content, size=len(content.encode("utf-8")), modified=ctx.now())
    ctx.write(drive_id, path, updated, missing)


# ---------- Engine ----------
class Engine:
    """Interprets command lines against a ``SessionState``.

    ``rng`` and ``clock`` feed every cosmetic value (timestamps, ping
    times, quest luck) so callers can make runs repeatable. The quest
    policy decides whether a qualifying command ends the active quest.
    """

    def __init__(self, settings: Optional[Settings] = None, rng: Optional[random.Random] = None,
                 clock: Optional[Callable[[], datetime]] = None, quest_policy: Optional[QuestPolicy] = None):
        self.settings = settings or Settings()
        self.rng = rng or random.Random()
        self.clock = clock or datetime.now
        self.quest_policy = quest_policy or chance_policy(self.settings.quest_completion_chance)
        self.expression_depth = 0

    def new_session(self) -> SessionState:
        return new_session(self.settings, self.clock())

    def execute(self, session: SessionState, line: str) -> CommandResult:
        """Run one line: record it, dispatch, apply the patch, then score progression."""
        text = line.strip()
        if not text:
            return CommandResult()
        session.record(text)
        tutorial = session.tutorial if session.mode == MODE_TUTORIAL else None
        quest = session.quest if session.mode == MODE_QUEST else None
        result = self.dispatch(session, text)
        try:
            session.apply_patch(result.state_patch)
        except ValueError as e:
            log.error("rejected state patch from %r: %s", text, e)
            return CommandResult(output=result.output, error=str(e), exit_code=1, command=result.command)
        try:
            if tutorial is not None and session.tutorial is tutorial:
                patch, notices = advance_tutorial(session, text, result, self.settings)
                session.apply_patch(patch)
                result.notices.extend(notices)
            if quest is not None and session.quest is quest:
                patch, notices = advance_quest(session, result.command, text, result, self.rng,
                                               self.quest_policy, self.settings)
                session.apply_patch(patch)
                result.notices.extend(notices)
        except Exception as e:
            log.exception("progression failed after %r", text)
            return CommandResult(output=result.output, error=f"progression: {e}", exit_code=1,
                                 command=result.command)
        return result

    def dispatch(self, session: SessionState, line: str) -> CommandResult:
        """Run a line without touching history or progression; never raises."""
        text = line.strip()
        if not text:
            return CommandResult()
        log.debug("dispatch [%s] %s", session.shell, text)
        try:
            return self._run(session, text)
        except ShellError as e:
            return CommandResult(error=str(e), exit_code=e.exit_code)
        except Exception as e:
            log.exception("command %r failed", text)
            return CommandResult(error=f"{text.split()[0]}: {e}", exit_code=1)

    def _run(self, session: SessionState, text: str) -> CommandResult:
        assigned = self._assignment(session, text)
        if assigned is not None:
            return assigned
        command, target, append = split_redirection(text)
        tokens = tokenize(session.shell, expand_variables(session, command))
        if not tokens:
            return CommandResult()
        if session.shell in POSIX_SHELLS and tokens[0] in session.aliases:
            tokens = tokenize(session.shell, session.aliases[tokens[0]]) + tokens[1:]
        verb, args = tokens[0], tokens[1:]
        key = verb.lower()
        table = DIALECT_TABLES[session.shell]
        if key in UNIVERSAL_COMMANDS:
            name, handler = key, UNIVERSAL_COMMANDS[key]
        elif session.shell in WINDOWS_SHELLS and DRIVE_LETTER.match(verb):
            name, handler = ("Set-Location" if session.shell == POWERSHELL else "cd"), h_switch_drive
        elif key in table:
            name, handler = table[key]
        else:
            return not_found(session.shell, verb)
        ctx = ShellContext(self, session, verb, name)
        try:
            result = handler(ctx, args)
            if target is not None:
                write_redirect(ctx, target, append, result.output)
                result.output = ""
        except ShellError as e:
            result = CommandResult(error=str(e), exit_code=e.exit_code)
        result.command = result.command or name
        return result

    def _assignment(self, session: SessionState, text: str) -> Optional[CommandResult]:
        """``$x = v`` / ``$env:X = v`` in PowerShell, ``NAME=value`` in POSIX shells."""
        if session.shell == POWERSHELL:
            m = PS_ASSIGNMENT.match(text)
            if not m:
                return None
            value = _unquote(expand_variables(session, m.group(3)))
            if m.group(1):
                environment = dict(session.environment)
                environment[_env_key(environment, m.group(2)) or m.group(2)] = value
                result = _ok(environment=environment)
            else:
                variables = dict(session.variables)
                variables[_env_key(variables, m.group(2)) or m.group(2)] = value
                result = _ok(variables=variables)
            result.command = "Set-Variable"
            return result
        if session.shell in POSIX_SHELLS:
            m = POSIX_ASSIGNMENT.match(text)
            if not m:
                return None
            value = _unquote(expand_variables(session, m.group(2)))
            if m.group(1) in session.environment:
                environment = dict(session.environment)
                environment[m.group(1)] = value
                return _ok(environment=environment)
            variables = dict(session.variables)
            variables[m.group(1)] = value
            return _ok(variables=variables)
        return None

    def status_report(self, session: SessionState) -> StatusReport:
        """Snapshot for ``status``; reads the session without changing it."""
        drive = session.drive
        tutorial, progress = None, None
        if session.tutorial is not None:
            tutorial = session.tutorial.title
            progress = (session.tutorial.current_step + 1, len(session.tutorial.steps))
        return StatusReport(
            level=session.level,
            xp=session.xp,
            commands_executed=len(session.history),
            shell=session.shell,
            directory=display_path(session.shell, session.current_drive, session.current_directory),
            drive_id=drive.drive_id,
            drive_label=drive.label,
            fs_format=drive.fs_format,
            total_space=drive.total_space,
            free_space=drive.free_space,
            used_space=drive.used_space,
            mode=session.mode,
            process_count=len(session.processes),
            memory_percent=min(100.0, sum(p.memory for p in session.processes)),
            cpu_percent=min(100.0, sum(p.cpu for p in session.processes)),
            user=session.environment.get("USER", DEFAULT_USER),
            hostname=session.environment.get("HOSTNAME", DEFAULT_HOSTNAME),
            home=display_path(session.shell, session.current_drive, home_path(session.shell, session.user)),
            tutorial=tutorial,
            tutorial_progress=progress,
            quest=session.quest.title if session.quest else None,
            quest_completed=bool(session.quest and session.quest.completed),
        )


# ---------- Console front-end ----------
BANNER = f"""Terminal Academy v{VERSION} - Command Line Training Simulator

Modes:
  tutorial [basic|navigation]  guided lessons with XP rewards
  quest                        story mission: Critical Data Recovery
  arena                        challenge arena
  shell <bash|macos|cmd|powershell>  switch the shell you practise

Type 'help' for the commands of the current shell, 'exit' to quit."""


class TerminalAcademyShell(Cmd):
    """Interactive loop around an ``Engine`` and one session."""

    intro = c(BANNER, Fore.MAGENTA)

    def __init__(self, engine: Optional[Engine] = None, session: Optional[SessionState] = None):
        super().__init__()
        self.engine = engine or Engine()
        self.session = session or self.engine.new_session()
        self.session.apply_patch({"mode": MODE_TERMINAL})
        self.prompt = render_prompt(self.session)
        # persistent history if readline is available
        if readline:
            try:
                import atexit
                hist = os.path.expanduser("~/.terminal_academy_history")
                try:
                    readline.read_history_file(hist)
                except FileNotFoundError:
                    pass
                atexit.register(lambda: readline.write_history_file(hist))
                doc = getattr(readline, "__doc__", "") or ""
                if "libedit" in doc:
                    readline.parse_and_bind("bind \t rl_complete")
                else:
                    readline.parse_and_bind("tab: complete")
                readline.parse_and_bind("set completion-ignore-case on")
                # keep path separators inside a completion word
                readline.set_completer_delims(" \t\n\"'")
            except OSError as e:
                log.warning("readline history unavailable: %s", e)

    def onecmd(self, line: str):
        if line == "EOF":
            return self.do_EOF(line)
        return self.default(line)

    def emptyline(self):
        pass

    def default(self, line: str):
        result = self.engine.execute(self.session, line)
        if result.clear_screen:
            print("\033c", end="")
        if result.output:
            print(c(result.output, Fore.CYAN))
        if result.error:
            print(c(result.error, Fore.RED))
        for notice in result.notices:
            print(c(notice, Fore.YELLOW))
        self.prompt = render_prompt(self.session)
        if result.command == "exit":
            return True
        return None

    def do_EOF(self, arg):
        print()
        print(c("Session ended. Good luck out there, agent.", Fore.MAGENTA))
        return True

    # ---- tab completion
    def completenames(self, text, *ignored):
        verbs = set(DIALECT_TABLES[self.session.shell]) | set(UNIVERSAL_COMMANDS)
        if self.session.shell == POWERSHELL:
            verbs = (verbs - {n.lower() for n in POWERSHELL_COMMANDS}) | set(POWERSHELL_COMMANDS)
        return sorted(v for v in verbs if v.lower().startswith(text.lower()))

    def completedefault(self, text, line, begidx, endidx):
        return self._complete_path(text)

    def _complete_path(self, text: str) -> List[str]:
        """Names in the directory ``text`` points into; directories end with a separator."""
        session = self.session
        windows = session.shell in WINDOWS_SHELLS
        sep = "\\" if windows else "/"
        cut = max(text.rfind("/"), text.rfind("\\") if windows else -1)
        prefix, pattern = text[:cut + 1], text[cut + 1:]
        drive_id, path = resolve_path(session.shell, session.current_drive, session.current_directory,
                                      prefix or ".", session.user)
        drive = session.drives.get(drive_id)
        node = resolve_node(drive, path) if drive else None
        if node is None or not node.is_dir:
            return []
        matches = []
        for entry in sorted_entries(node, show_hidden=pattern.startswith(".")):
            name = entry.name.lower() if windows else entry.name
            if name.startswith(pattern.lower() if windows else pattern):
                matches.append(prefix + entry.name + (sep if entry.is_dir else ""))
        return matches


# ---------- main ----------
def main():
    if os.environ.get("TERMINAL_ACADEMY_DEBUG"):
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    colorama_init(autoreset=True)
    settings = load_settings(os.environ.get("TERMINAL_ACADEMY_SETTINGS", SETTINGS_FILE))
    TerminalAcademyShell(Engine(settings)).cmdloop()


if __name__ == "__main__":
    main()
