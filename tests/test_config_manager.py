import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calmirror.config_manager import ConfigManager
from calmirror.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_default_file_is_created(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "conf" / "config.yaml"
            config = ConfigManager(str(config_path)).load()
            self.assertTrue(config_path.exists())
            self.assertEqual(config.sync.default_timezone, "Europe/London")
            self.assertEqual(config.filters.skip_titles, ["Canceled:", "Declined:"])
            self.assertEqual(config.rate_limit.max_requests_per_second, 10.0)
            self.assertEqual(config.google.calendar_id, "primary")

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "feed": {"url": "https://example.com/calendar.ics"},
                    "google": {"client_id": "cid", "client_secret": "s"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse((Path(temp_dir) / "config.yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["feed"]["url"], "https://example.com/calendar.ics")
            self.assertEqual(data["google"]["client_secret"], "s")

    def test_update_merges_and_keeps_masked_secret(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"google": {"client_id": "cid", "client_secret": "secret"}})
            updated = manager.update({"google": {"client_secret": "***", "calendar_id": "team@example.com"}})
            self.assertEqual(updated.google.client_secret, "secret")
            self.assertEqual(updated.google.client_id, "cid")
            self.assertEqual(updated.google.calendar_id, "team@example.com")
            self.assertEqual(manager.masked()["google"]["client_secret"], "***")

    def test_invalid_values_are_normalised(self) -> None:
        config = AppConfig.from_dict(
            {
                "sync": {"run_timeout_seconds": 5, "log_level": "debug"},
                "rate_limit": {"base_delay_ms": 800, "max_delay_ms": 100},
            }
        )
        self.assertEqual(config.sync.run_timeout_seconds, 30)
        self.assertEqual(config.sync.log_level, "DEBUG")
        self.assertEqual(config.rate_limit.max_delay_ms, 800)


if __name__ == "__main__":
    unittest.main()
