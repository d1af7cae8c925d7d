import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from dim.config import DEFAULT_MAX_WORKERS, Config, load_config, merge_overrides, save_config


class TestConfigFile(unittest.TestCase):
    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_config(Path(td) / "config.json"), Config())

    def test_save_then_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "config.json"
            save_config(Config(data_dir="datasets", max_workers=8), path)

            self.assertEqual(load_config(path), Config(data_dir="datasets", max_workers=8))

    def test_unknown_keys_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(json.dumps({"data_dir": "x", "token": "nope"}), encoding="utf-8")

            self.assertEqual(load_config(path).data_dir, "x")


class TestMergeOverrides(unittest.TestCase):
    def test_cli_beats_env_beats_file(self) -> None:
        base = Config(data_dir="from-file", lock_path="file-lock.json")
        env = {"DIM_DATA_DIR": "from-env", "DIM_LOCK_PATH": "env-lock.json"}
        with patch.dict(os.environ, env, clear=False):
            cfg = merge_overrides(base, {"data_dir": "from-cli"})

        self.assertEqual(cfg.data_dir, "from-cli")
        self.assertEqual(cfg.lock_path, "env-lock.json")

    def test_invalid_numbers_fall_back(self) -> None:
        with patch.dict(os.environ, {"DIM_TIMEOUT_S": "soon", "DIM_MAX_WORKERS": "0"}, clear=False):
            cfg = merge_overrides(Config(), {})

        self.assertEqual(cfg.timeout_s, Config().timeout_s)
        self.assertEqual(cfg.max_workers, DEFAULT_MAX_WORKERS)


if __name__ == "__main__":
    unittest.main()
