import sys
import os
import random
import traceback
import pytest

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import terminal_academy as ta


@pytest.mark.parametrize("shell", ta.SHELLS)
def test_smoke_handlers_do_not_raise(shell):
    """Call each handler of a dialect with an empty-args list and fail if
    any handler raises anything but ShellError. Handlers returning error
    results are considered acceptable.
    """
    engine = ta.Engine(rng=random.Random(0))
    session = engine.new_session()
    session.apply_patch({"shell": shell, "mode": ta.MODE_TERMINAL})
    entries = [(verb, name, handler) for verb, (name, handler) in ta.DIALECT_TABLES[shell].items()]
    entries += [(verb, verb, handler) for verb, handler in ta.UNIVERSAL_COMMANDS.items()]
    failures = []
    for verb, name, handler in entries:
        try:
            result = handler(ta.ShellContext(engine, session, verb, name), [])
            assert isinstance(result, ta.CommandResult)
        except ta.ShellError:
            pass
        except Exception:
            failures.append((verb, traceback.format_exc()))

    if failures:
        msgs = []
        for n, tb in failures:
            msgs.append(f"{n}:\n{tb}")
        pytest.fail(f"{len(failures)} handlers raised exceptions:\n\n" + "\n\n".join(msgs))


@pytest.mark.parametrize("shell", ta.SHELLS)
def test_every_verb_dispatches_without_raising(shell):
    """The dispatcher is the error boundary: no verb may escape it."""
    engine = ta.Engine(rng=random.Random(0))
    for verb in list(ta.DIALECT_TABLES[shell]):
        session = engine.new_session()
        session.apply_patch({"shell": shell, "mode": ta.MODE_TERMINAL})
        result = engine.execute(session, verb)
        assert isinstance(result, ta.CommandResult), verb
        assert "Traceback" not in (result.error or ""), verb
