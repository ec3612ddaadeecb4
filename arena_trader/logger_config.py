import json
import logging
import os
import sys


class RunContextFilter(logging.Filter):
    """Injects engine/run context into log records for traceability."""

    def __init__(self):
        super().__init__()
        self.engine_id = os.getenv("ENGINE_ID")
        self.run_id = os.getenv("RUN_ID")

    def set_context(self, engine_id=None, run_id=None):
        if engine_id is not None:
            self.engine_id = engine_id
        if run_id is not None:
            self.run_id = run_id

    def filter(self, record):
        record.engine_id = self.engine_id or "-"
        record.run_id = self.run_id or "-"
        return True


_RUN_CONTEXT_FILTER = RunContextFilter()


def set_logging_context(engine_id=None, run_id=None):
    """Update the global logging context so records carry engine/run ids."""
    _RUN_CONTEXT_FILTER.set_context(engine_id, run_id)


def emit_telemetry(record: dict, telemetry_logger: logging.Logger | None = None):
    """Write one structured JSON line to the telemetry log."""
    telemetry_logger = telemetry_logger or logging.getLogger('telemetry')
    try:
        record.setdefault("engine_id", _RUN_CONTEXT_FILTER.engine_id)
        record.setdefault("run_id", _RUN_CONTEXT_FILTER.run_id)
        telemetry_logger.info(json.dumps(record, default=str))
    except Exception as e:
        logging.getLogger(__name__).debug(f"Telemetry emit failed: {e}")


def _is_test_mode() -> bool:
    return (
        "PYTEST_RUNNING" in os.environ
        or "PYTEST_CURRENT_TEST" in os.environ
        or "pytest" in sys.modules
    )


def setup_logging():
    """
    Configures the logging system.
    - bot.log: Operator log of engine actions (cycles, trades, breaker levels) via the bot_actions logger
    - console.log: Technical DEBUG level log
    - telemetry.log: Structured JSON per-cycle telemetry for analysis
    - Terminal: INFO level
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Clear existing handlers to avoid duplicates if called multiple times
    if logger.hasHandlers():
        logger.handlers.clear()

    simple_formatter = logging.Formatter('%(asctime)s - %(message)s')
    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - engine=%(engine_id)s run=%(run_id)s - %(message)s'
    )

    test_mode = _is_test_mode()
    log_dir = "logs/test" if test_mode else "."
    os.makedirs(log_dir, exist_ok=True)

    # 1. Console Log - technical debug log, cleared on startup
    log_filename = "console_test.log" if test_mode else "console.log"
    console_handler = logging.FileHandler(os.path.join(log_dir, log_filename), mode='w')
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(detailed_formatter)
    console_handler.addFilter(_RUN_CONTEXT_FILTER)
    logger.addHandler(console_handler)

    # 2. Terminal
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(logging.DEBUG if test_mode else logging.INFO)
    stream_handler.setFormatter(detailed_formatter)
    stream_handler.addFilter(_RUN_CONTEXT_FILTER)
    logger.addHandler(stream_handler)

    # 3. Bot Actions Log (bot.log)
    bot_actions_logger = logging.getLogger('bot_actions')
    bot_actions_logger.setLevel(logging.INFO)
    bot_actions_logger.propagate = False
    if bot_actions_logger.hasHandlers():
        bot_actions_logger.handlers.clear()

    bot_log_filename = "bot_test.log" if test_mode else "bot.log"
    bot_handler = logging.FileHandler(os.path.join(log_dir, bot_log_filename), mode='w')
    bot_handler.setLevel(logging.INFO)
    bot_handler.setFormatter(simple_formatter)
    bot_handler.addFilter(_RUN_CONTEXT_FILTER)
    bot_actions_logger.addHandler(bot_handler)

    # 4. Telemetry Log (telemetry.log) - structured JSON per cycle
    telemetry_logger = logging.getLogger('telemetry')
    telemetry_logger.setLevel(logging.INFO)
    telemetry_logger.propagate = False
    if telemetry_logger.hasHandlers():
        telemetry_logger.handlers.clear()
    telemetry_log_filename = "telemetry_test.log" if test_mode else "telemetry.log"
    telemetry_handler = logging.FileHandler(os.path.join(log_dir, telemetry_log_filename), mode='w')
    telemetry_handler.setLevel(logging.INFO)
    telemetry_handler.setFormatter(logging.Formatter('%(message)s'))
    telemetry_handler.addFilter(_RUN_CONTEXT_FILTER)
    telemetry_logger.addHandler(telemetry_handler)

    logging.info(f"Logging initialized in {os.path.abspath(log_dir)}")

    return bot_actions_logger
