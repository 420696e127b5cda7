import json

import structlog

from tool_loop.config import Config, LoggingConfig
from tool_loop.logging import configure_logging, get_logger, set_system_log_sink, task_context


def test_json_logs_reach_sink_with_task_context():
    lines: list[str] = []
    set_system_log_sink(lines.append)
    try:
        configure_logging(LoggingConfig(level="debug", format="json"))
        with task_context(task_id="t-1"):
            get_logger("tests.sink").info("Executing tool", tool="shell")
        get_logger("tests.sink").info("Outside task")
    finally:
        set_system_log_sink(None)
        structlog.reset_defaults()

    inside, outside = (json.loads(line) for line in lines[-2:])
    assert inside["event"] == "Executing tool"
    assert inside["tool"] == "shell"
    assert inside["task_id"] == "t-1"
    assert inside["level"] == "info"
    assert "task_id" not in outside


def test_level_filters_lower_records():
    lines: list[str] = []
    set_system_log_sink(lines.append)
    try:
        cfg = Config()
        cfg.logging.level = "WARNING"
        cfg.logging.format = "json"
        configure_logging(cfg)
        logger = get_logger("tests.level")
        logger.info("hidden")
        logger.warning("shown")
    finally:
        set_system_log_sink(None)
        structlog.reset_defaults()

    assert [json.loads(line)["event"] for line in lines] == ["shown"]
