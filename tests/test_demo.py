import io
import re

import pytest

from twolevel.demo import main, run_demo
from twolevel.thread import MAX_THREADS

HELLO = re.compile(r"^thread (\d+): hello! \((\d+)\)$")
EXITING = re.compile(r"^thread (\d+) exiting\.$")
JOINED = re.compile(r"^joined with thread (\d+), exited (\d+)\.$")


def _run(num_threads, rounds):
    out = io.StringIO()
    results = run_demo(num_threads, rounds, out)
    return results, out.getvalue().splitlines()


def test_exit_values_come_back_in_join_order():
    results, _ = _run(4, 3)
    assert results == [0, 1, 2, 3]


def test_every_line_has_a_known_form():
    _, lines = _run(3, 2)
    assert lines
    for line in lines:
        assert HELLO.match(line) or EXITING.match(line) or JOINED.match(line), line


def test_each_thread_greets_once_per_round_in_order():
    _, lines = _run(4, 3)
    greetings = {}
    for line in lines:
        match = HELLO.match(line)
        if match:
            greetings.setdefault(int(match.group(1)), []).append(int(match.group(2)))
    assert len(greetings) == 4
    for rounds_seen in greetings.values():
        assert rounds_seen == [0, 1, 2]


def test_each_thread_exits_once_and_is_joined():
    _, lines = _run(5, 2)
    exited = [int(EXITING.match(line).group(1)) for line in lines if EXITING.match(line)]
    joined = [JOINED.match(line) for line in lines if JOINED.match(line)]
    joined_ids = [int(match.group(1)) for match in joined]
    assert sorted(exited) == sorted(joined_ids)
    assert len(set(joined_ids)) == 5
    assert [int(match.group(2)) for match in joined] == [0, 1, 2, 3, 4]


def test_thread_exits_only_after_its_last_greeting():
    _, lines = _run(3, 2)
    for position, line in enumerate(lines):
        match = EXITING.match(line)
        if match:
            uid = match.group(1)
            later = lines[position + 1:]
            assert not any(HELLO.match(other) and HELLO.match(other).group(1) == uid
                           for other in later)


def test_single_thread_single_round():
    results, lines = _run(1, 1)
    assert results == [0]
    assert sum(1 for line in lines if JOINED.match(line)) == 1


@pytest.mark.parametrize("num_threads, rounds", [(0, 1), (-1, 1), (1, 0), (MAX_THREADS, 1)])
def test_invalid_arguments_are_rejected(num_threads, rounds):
    with pytest.raises(ValueError):
        run_demo(num_threads, rounds, io.StringIO())


def test_main_prints_workload_and_farewell(capsys):
    assert main(["--threads", "3", "--rounds", "2"]) == 0
    captured = capsys.readouterr()
    joined = [line for line in captured.out.splitlines() if JOINED.match(line)]
    assert len(joined) == 3
    assert "mthreads: bye!" in captured.err


def test_main_rejects_bad_thread_count(capsys):
    with pytest.raises(SystemExit) as info:
        main(["--threads", "0"])
    assert info.value.code == 2