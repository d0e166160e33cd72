import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calmirror.config_manager import ConfigManager
from calmirror.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().sync.interval_seconds, 900)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "provider": {"base_url": "https://graph.example.com/v1.0"},
                    "credentials": {"alice": "token-a"},
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
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["provider"]["base_url"], "https://graph.example.com/v1.0")
            self.assertEqual(data["credentials"]["alice"], "token-a")
            self.assertFalse(Path(str(config_path) + ".tmp").exists())

    def test_update_deep_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"sync": {"interval_seconds": 300}})
            updated = manager.update({"sync": {"scheduled_users": ["alice"]}})
            self.assertEqual(updated.sync.interval_seconds, 300)
            self.assertEqual(updated.sync.scheduled_users, ["alice"])

    def test_masked_hides_credentials(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.set_credential("alice", "secret-token")
            masked = manager.masked()
            self.assertEqual(masked["credentials"], {"alice": "***"})
            self.assertEqual(manager.load().credentials["alice"], "secret-token")

            manager.set_credential("alice", None)
            self.assertEqual(manager.load().credentials, {})


if __name__ == "__main__":
    unittest.main()
