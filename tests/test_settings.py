import json
import tempfile
import unittest
from pathlib import Path

from s3nav.settings import MIN_PART_SIZE, AppSettings, SettingsStorage, normalize_settings


class AppSettingsTests(unittest.TestCase):
    def test_backoff_doubles_up_to_cap(self):
        settings = AppSettings(backoff_base=0.5, backoff_max=3.0)

        self.assertEqual([0.5, 1.0, 2.0, 3.0], [settings.backoff_delay(n) for n in range(1, 5)])

    def test_normalize_keeps_valid_fields_when_others_are_bad(self):
        settings = normalize_settings({"page_size": 50, "max_attempts": "nope", "backoff_base": -1})

        self.assertEqual(50, settings.page_size)
        self.assertEqual(AppSettings.max_attempts, settings.max_attempts)
        self.assertEqual(AppSettings.backoff_base, settings.backoff_base)

    def test_normalize_clamps_upper_limits(self):
        settings = normalize_settings({"page_size": 5000, "max_concurrent_transfers": 1000})

        self.assertEqual(1000, settings.page_size)
        self.assertEqual(64, settings.max_concurrent_transfers)

    def test_chunk_size_has_part_minimum(self):
        self.assertEqual(AppSettings.chunk_size, normalize_settings({"chunk_size": 1024}).chunk_size)
        self.assertEqual(MIN_PART_SIZE, normalize_settings({"chunk_size": MIN_PART_SIZE}).chunk_size)

    def test_unknown_collision_policy_falls_back(self):
        self.assertEqual("folder", normalize_settings({"prefix_collision": "both"}).prefix_collision)
        self.assertEqual("object", normalize_settings({"prefix_collision": "object"}).prefix_collision)


class SettingsStorageTests(unittest.TestCase):
    def test_load_returns_defaults_when_missing(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.json"
            storage = SettingsStorage(path)

            settings = storage.load()

            self.assertEqual(AppSettings(), settings)

    def test_load_sanitizes_invalid_values(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.json"
            payload = {
                "page_size": "nope",
                "max_attempts": 0,
                "backoff_max": "bad",
                "multipart_threshold": -5,
                "progress_interval": None,
                "prefix_collision": 3,
            }
            path.write_text(json.dumps(payload), encoding="utf-8")
            storage = SettingsStorage(path)

            settings = storage.load()

            self.assertEqual(AppSettings(), settings)

    def test_load_ignores_unreadable_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.json"
            path.write_text("{not json", encoding="utf-8")
            storage = SettingsStorage(path)

            with self.assertLogs("s3nav.settings", level="WARNING"):
                settings = storage.load()

            self.assertEqual(AppSettings(), settings)

    def test_save_round_trips_and_sanitizes(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.json"
            storage = SettingsStorage(path)
            settings = AppSettings(page_size=0, max_attempts=5, prefix_collision="object")

            storage.save(settings)

            saved = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(AppSettings.page_size, saved["page_size"])
            self.assertEqual(5, saved["max_attempts"])
            self.assertEqual("object", storage.load().prefix_collision)

    def test_save_to_unwritable_path_logs_warning(self):
        with tempfile.TemporaryDirectory() as tmp:
            # A directory cannot be written as a file.
            storage = SettingsStorage(Path(tmp))

            with self.assertLogs("s3nav.settings", level="WARNING") as logs:
                storage.save(AppSettings(page_size=10))

            self.assertIn("Settings not saved", logs.output[0])


if __name__ == "__main__":
    unittest.main()
