import logging
import unittest

from logging_utils import (
    LOGGER_NAME,
    enable_console_logging,
    get_log_level,
    is_debug_enabled,
    log_event,
    set_log_level,
)


class TestLoggingUtils(unittest.TestCase):
    def setUp(self):
        self._level = get_log_level()

    def tearDown(self):
        set_log_level(self._level)

    def test_fields_appended(self):
        with self.assertLogs(LOGGER_NAME, level="INFO") as captured:
            log_event("INFO", "Chord", "Chord set", name="C", confidence="0.91")
        record = captured.records[0]
        self.assertEqual(record.getMessage(), "Chord set | name=C confidence=0.91")
        self.assertEqual(record.tag, "Chord")

    def test_float_fields_are_shortened(self):
        with self.assertLogs(LOGGER_NAME, level="INFO") as captured:
            log_event("INFO", "Levels", "Chroma levels", total=1.23456789, active=4)
        self.assertEqual(captured.records[0].getMessage(), "Chroma levels | total=1.235 active=4")

    def test_warn_alias(self):
        with self.assertLogs(LOGGER_NAME, level="WARNING") as captured:
            log_event("WARN", "Config", "Ignoring unknown option")
        self.assertEqual(captured.records[0].levelname, "WARNING")

    def test_level_round_trip(self):
        set_log_level("DEBUG")
        self.assertEqual(get_log_level(), "DEBUG")
        self.assertTrue(is_debug_enabled())
        set_log_level("warning")
        self.assertEqual(get_log_level(), "WARNING")
        self.assertFalse(is_debug_enabled())
        set_log_level("bogus")
        self.assertEqual(get_log_level(), "INFO")

    def test_console_handler_installed_once(self):
        logger = logging.getLogger(LOGGER_NAME)
        handler = enable_console_logging()
        self.assertIs(enable_console_logging("ERROR"), handler)
        self.assertEqual(sum(1 for h in logger.handlers if h is handler), 1)
        self.assertEqual(get_log_level(), "ERROR")
        record = logging.LogRecord(LOGGER_NAME, logging.INFO, __file__, 1, "Chord set", None, None)
        record.tag = "Chord"
        self.assertEqual(handler.format(record), "[INFO][Chord] Chord set")


if __name__ == "__main__":
    unittest.main()
