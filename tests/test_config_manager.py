import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from gaply.config_manager import ConfigManager
from gaply.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load(), AppConfig())

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "p"},
                    "remote": {"base_url": "https://planner.example.com/api", "api_token": "k"},
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
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["caldav"]["base_url"], "https://dav.example.com")
            self.assertEqual(data["remote"]["api_token"], "k")

    def test_update_merges_nested_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"sync": {"timezone": "Europe/Berlin"}})
            config = manager.update({"sync": {"debounce_seconds": 5}})
            self.assertEqual(config.sync.timezone, "Europe/Berlin")
            self.assertEqual(config.sync.debounce_seconds, 5.0)
            self.assertEqual(manager.load().sync.interval_seconds, 300)

    def test_masked_hides_secrets(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"caldav": {"password": "pw"}})
            masked = manager.masked()
            self.assertEqual(masked["caldav"]["password"], "***")
            self.assertEqual(masked["remote"]["api_token"], "")
            self.assertEqual(manager.load().caldav.password, "pw")

    def test_non_mapping_yaml_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config_path.write_text("- just\n- a list\n", encoding="utf-8")
            self.assertEqual(manager.load(), AppConfig())


if __name__ == "__main__":
    unittest.main()
