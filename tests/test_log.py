# SPDX-License-Identifier: LGPL-2.1-or-later

import logging

import pytest

import looplab.log
from looplab.log import Formatter, PreconditionViolation, StageFilter, complete_step, die, log_stage


def record(message: str, level: int = logging.INFO) -> logging.LogRecord:
    r = logging.LogRecord("looplab", level, __file__, 1, message, None, None)
    StageFilter().filter(r)
    return r


def test_stage_tag() -> None:
    formatter = Formatter()

    assert "[x64:partition] Writing GPT" in formatter.format(_in_stage("Writing GPT"))
    assert "[" not in formatter.format(record("Writing GPT")).split("Writing GPT")[0]


def _in_stage(message: str) -> logging.LogRecord:
    with log_stage("x64", "partition"):
        return record(message)


def test_log_stage_nests_and_resets() -> None:
    with log_stage("x64", "rootfs"):
        with log_stage("x64", "boot"):
            assert looplab.log.STAGE.get() == "x64:boot"
        assert looplab.log.STAGE.get() == "x64:rootfs"

    assert looplab.log.STAGE.get() == ""


def test_formatter_without_filter() -> None:
    r = logging.LogRecord("looplab", logging.WARNING, __file__, 1, "careful", None, None)
    assert Formatter().format(r).endswith("careful" + looplab.log.Style.reset)


def test_complete_step_indents(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO):
        with complete_step("Outer…", "Outer done: {}") as args:
            looplab.log.log_step("Inner…")
            args += ["ok"]

    messages = [r.getMessage() for r in caplog.records]
    assert any(m.endswith("Outer…" + looplab.log.Style.reset) for m in messages)
    assert any(m.startswith(" ") and "Inner…" in m for m in messages)
    assert any("Outer done: ok" in m for m in messages)
    assert looplab.log.LEVEL == 0


def test_die(caplog: pytest.LogCaptureFixture) -> None:
    with pytest.raises(PreconditionViolation) as e, caplog.at_level(logging.INFO):
        die("No kernel found", hint="Install linux-image-generic")

    assert str(e.value) == "No kernel found"
    assert e.value.exit_code == 65
    assert [r.levelno for r in caplog.records] == [logging.ERROR, logging.INFO]
    assert "(Install linux-image-generic)" in caplog.text
