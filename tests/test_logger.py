import io
import re
from datetime import datetime, timedelta

import pytest

from orcha.logger import (
    BaseLogger,
    LogContext,
    Logger,
    LogLevel,
    NullLogger,
    ScopedLogger,
    format_entry,
    level_name,
    timestamp,
)

TS = r"\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3}\]"
TS_WIDTH = len("[2024-01-01 00:00:00.000]")


class RecordingLogger(BaseLogger):
    def __init__(self):
        super().__init__()
        self.records = []

    def log(self, level, msg, ctx=None):
        self.records.append((level, msg, ctx))


@pytest.fixture
def streams():
    out, err = io.StringIO(), io.StringIO()
    logger = Logger(stdout=out, stderr=err)
    yield logger, out, err
    logger.shutdown()


def test_level_names():
    assert [level_name(level) for level in LogLevel] == [
        "TRACE", "DEBUG", "INFO", "WARN", "ERROR", "FATAL",
    ]
    assert level_name(99) == "UNKNOWN"


def test_levels_are_ordered():
    ordered = sorted(LogLevel)
    assert [level_name(level) for level in ordered] == [
        "TRACE", "DEBUG", "INFO", "WARN", "ERROR", "FATAL",
    ]
    assert level_name(min(LogLevel)) == "TRACE"
    assert level_name(max(LogLevel)) == "FATAL"


def test_log_context_chaining():
    ctx = LogContext().with_component("db").with_correlation_id("abc").with_tag("k", "v")
    assert ctx.component == "db"
    assert ctx.correlation_id == "abc"
    assert ctx.tags == {"k": "v"}


def test_format_entry_full():
    ctx = LogContext().with_component("db").with_correlation_id("abc")
    ctx.with_tag("b", "2").with_tag("a", "1")
    line = format_entry(LogLevel.INFO, "hello", ctx)
    prefix, rest = line[:TS_WIDTH], line[TS_WIDTH:]
    assert rest == "[INFO][db][abc] hello {a=1, b=2}\n"
    assert re.fullmatch(TS, prefix) is not None


def test_format_entry_source_only_for_debug_and_trace():
    assert format_entry(LogLevel.DEBUG, "m", None, "f.py:10").endswith(" m [f.py:10]\n")
    assert format_entry(LogLevel.TRACE, "m", None, "f.py:10").endswith(" m [f.py:10]\n")
    assert format_entry(LogLevel.INFO, "m", None, "f.py:10").endswith("[INFO] m\n")


def test_timestamp_is_current_local_time():
    stamp = timestamp()
    assert re.fullmatch(TS[2:-2], stamp)
    parsed = datetime.strptime(stamp, "%Y-%m-%d %H:%M:%S.%f")
    assert abs(parsed - datetime.now()) < timedelta(seconds=5)


def test_base_convenience_methods_map_to_levels(streams):
    logger, out, err = streams
    logger.level = LogLevel.TRACE
    logger.trace("t")
    logger.debug("d")
    logger.info("i")
    logger.warn("w")
    logger.error("e")
    logger.fatal("f")
    logger.flush()
    stdout_text = out.getvalue()
    stderr_text = err.getvalue()
    assert "[TRACE] t [" in stdout_text
    assert "[DEBUG] d [" in stdout_text
    assert "[INFO] i\n" in stdout_text
    assert "[WARN] w\n" in stderr_text
    assert "[ERROR] e\n" in stderr_text
    assert "[FATAL] f\n" in stderr_text


def test_base_logger_is_abstract():
    with pytest.raises(TypeError):
        BaseLogger()


def test_null_logger_level():
    logger = NullLogger()
    assert logger.level == LogLevel.INFO
    logger.level = LogLevel.ERROR
    logger.info("ignored")
    assert logger.level == LogLevel.ERROR


def test_info_goes_to_stdout(streams):
    logger, out, err = streams
    logger.info("hello")
    logger.flush()
    assert re.fullmatch(TS + r"\[INFO\] hello\n", out.getvalue())
    assert err.getvalue() == ""


def test_warn_error_fatal_go_to_stderr(streams):
    logger, out, err = streams
    logger.warn("w")
    logger.error("e")
    logger.fatal("f")
    logger.flush()
    text = err.getvalue()
    assert "[WARN] w\n" in text and "[ERROR] e\n" in text and "[FATAL] f\n" in text
    assert out.getvalue() == ""


def test_below_minimum_level_is_dropped(streams):
    logger, out, _ = streams
    logger.debug("hidden")
    logger.flush()
    assert out.getvalue() == ""
    logger.level = LogLevel.DEBUG
    logger.debug("shown")
    logger.flush()
    assert "[DEBUG] shown [" in out.getvalue()
    assert "test_logger.py:" in out.getvalue()


def test_log_file_created_with_parent(tmp_path, streams):
    logger, _, _ = streams
    path = tmp_path / "sub" / "orcha.log"
    logger.set_log_file(str(path))
    logger.info("to file")
    logger.flush()
    assert logger.log_filename == str(path)
    assert "[INFO] to file\n" in path.read_text(encoding="utf-8")


def test_shutdown_drains_in_order():
    out = io.StringIO()
    logger = Logger(stdout=out, stderr=io.StringIO())
    for i in range(20):
        logger.info(f"msg{i}")
    logger.shutdown()
    lines = out.getvalue().splitlines()
    assert [line.split(" ", 2)[2] for line in lines] == [f"msg{i}" for i in range(20)]


def test_log_after_shutdown_is_ignored():
    out = io.StringIO()
    with Logger(stdout=out, stderr=io.StringIO()) as logger:
        logger.info("before")
    logger.info("after")
    logger.flush()
    assert "before" in out.getvalue()
    assert "after" not in out.getvalue()


def test_instance_is_shared():
    first = Logger.instance()
    original = first.level
    try:
        first.level = LogLevel.WARNING
        assert Logger.instance().level == LogLevel.WARNING
        assert Logger.instance() is first
    finally:
        first.level = original


def test_scoped_logger_adds_component():
    rec = RecordingLogger()
    scoped = ScopedLogger(rec, "engine")
    scoped.info("a")
    scoped.with_correlation_id("r1")
    scoped.error("b")
    assert [(r[0], r[1]) for r in rec.records] == [(LogLevel.INFO, "a"), (LogLevel.ERROR, "b")]
    assert rec.records[1][2].component == "engine"
    assert rec.records[1][2].correlation_id == "r1"


def test_scoped_logger_output(streams):
    logger, _, err = streams
    ScopedLogger(logger, "engine").warn("careful")
    logger.flush()
    assert "[WARN][engine] careful\n" in err.getvalue()