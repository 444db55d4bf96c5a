import tempfile
import unittest
from pathlib import Path
from unittest import mock

from eforms.config import DEFAULT_CONFIG, load_config, normalize_config


class ConfigTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.default_db = str(Path(self.temp_dir.name) / "eforms.db")
        patcher = mock.patch("eforms.config.get_db_path", return_value=self.default_db)
        self.addCleanup(patcher.stop)
        patcher.start()

    def test_defaults(self):
        config = load_config(env={})

        self.assertEqual(config["port"], DEFAULT_CONFIG["port"])
        self.assertEqual(config["latest_limit"], 5)
        self.assertEqual(config["db_path"], self.default_db)

    def test_environment_overrides(self):
        config = load_config(
            env={"EFORMS_PORT": "8080", "EFORMS_LOG_LEVEL": "debug", "EFORMS_DB_PATH": "/tmp/x.db"}
        )

        self.assertEqual(config["port"], 8080)
        self.assertEqual(config["log_level"], "DEBUG")
        self.assertEqual(config["db_path"], "/tmp/x.db")

    def test_bad_values_fall_back(self):
        config = normalize_config({"port": "abc", "log_level": "loud", "popular_limit": None})

        self.assertEqual(config["port"], DEFAULT_CONFIG["port"])
        self.assertEqual(config["log_level"], "INFO")
        self.assertEqual(config["popular_limit"], DEFAULT_CONFIG["popular_limit"])

    def test_overrides_win_over_environment(self):
        config = load_config(env={"EFORMS_PORT": "8080"}, overrides={"port": 9090})

        self.assertEqual(config["port"], 9090)


if __name__ == "__main__":
    unittest.main()
