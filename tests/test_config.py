import dataclasses
import json
import sys
import tempfile
import unittest
from pathlib import Path

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_ROOT))

from polars_mor import MERGE_ON_READ, ConfigurationError, TableConfig


class TestTableConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        config = TableConfig(table_name="rides", base_path="/data/rides")

        self.assertEqual(config.base_path, Path("/data/rides"))
        self.assertEqual(config.checkpoint_path, Path("/data/rides/.checkpoint"))
        self.assertEqual(config.table_type, MERGE_ON_READ)
        self.assertEqual(config.reserved_columns, ("uuid", "ts", "city"))
        self.assertEqual(config.checkpoint_interval_ms, 5000)
        self.assertEqual(config.checkpoint_timeout_ms, 60000)
        self.assertEqual(config.min_pause_between_checkpoints_ms, 10000)
        self.assertTrue(config.ignore_failed)

    def test_config_is_immutable(self) -> None:
        config = TableConfig(table_name="rides", base_path="/data/rides")
        with self.assertRaises(dataclasses.FrozenInstanceError):
            config.checkpoint_timeout_ms = 1  # type: ignore[misc]

    def test_table_type_alias(self) -> None:
        config = TableConfig(table_name="rides", base_path="/data", table_type="mor")
        self.assertEqual(config.table_type, MERGE_ON_READ)
        with self.assertRaises(ConfigurationError):
            TableConfig(table_name="rides", base_path="/data", table_type="COPY_ON_WRITE")

    def test_invalid_values(self) -> None:
        cases = [
            {"table_name": "", "base_path": "/data"},
            {"table_name": "rides", "base_path": ""},
            {"table_name": "rides", "base_path": "/data", "precombine_field": ""},
            {"table_name": "rides", "base_path": "/data", "record_key_field": "_key"},
            {"table_name": "rides", "base_path": "/data", "partition_field": "uuid"},
            {"table_name": "rides", "base_path": "/data", "checkpoint_interval_ms": -1},
            {"table_name": "rides", "base_path": "/data", "checkpoint_timeout_ms": 0},
            {"table_name": "rides", "base_path": "/data", "checkpoint_timeout_ms": 1.5},
            {"table_name": "rides", "base_path": "/data", "min_pause_between_checkpoints_ms": True},
            {"table_name": "rides", "base_path": "/data", "ignore_failed": "yes"},
        ]
        for kwargs in cases:
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ConfigurationError):
                    TableConfig(**kwargs)

    def test_from_options_accepts_aliases(self) -> None:
        config = TableConfig.from_options(
            "rides",
            {
                "path": "/data/rides",
                "hoodie.datasource.write.recordkey.field": "ride_id",
                "checkpoint.timeout": 30000,
                "write.ignore.failed": "false",
            },
        )

        self.assertEqual(config.record_key_field, "ride_id")
        self.assertEqual(config.checkpoint_timeout_ms, 30000)
        self.assertFalse(config.ignore_failed)

    def test_from_options_parses_numeric_strings(self) -> None:
        config = TableConfig.from_options(
            "rides",
            {
                "path": "/data/rides",
                "checkpoint.interval": "5000",
                "checkpoint.timeout": " 30000 ",
                "checkpoint.min-pause": "0",
            },
        )

        self.assertEqual(config.checkpoint_interval_ms, 5000)
        self.assertEqual(config.checkpoint_timeout_ms, 30000)
        self.assertEqual(config.min_pause_between_checkpoints_ms, 0)

        for value in ("soon", "5s", "1.5", ""):
            with self.subTest(value=value):
                with self.assertRaises(ConfigurationError):
                    TableConfig.from_options(
                        "rides", {"path": "/data/rides", "checkpoint.interval": value}
                    )
        with self.assertRaises(ConfigurationError):
            TableConfig.from_options("rides", {"path": "/data/rides", "checkpoint.timeout": "-5"})

    def test_from_options_rejects_unknown_and_missing(self) -> None:
        with self.assertRaises(ConfigurationError):
            TableConfig.from_options("rides", {"base_path": "/data", "compaction.async": True})
        with self.assertRaises(ConfigurationError):
            TableConfig.from_options("rides", {"table_type": "MERGE_ON_READ"})

    def test_from_file_json_and_toml(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            json_path = Path(tmpdir) / "table.json"
            json_path.write_text(
                json.dumps({"table": {"name": "rides", "base_path": str(Path(tmpdir) / "t")}})
            )
            toml_path = Path(tmpdir) / "table.toml"
            toml_path.write_text(
                "\n".join(
                    [
                        "[table]",
                        'table_name = "rides"',
                        f'base_path = "{(Path(tmpdir) / "t").as_posix()}"',
                        "checkpoint_interval_ms = 1000",
                    ]
                )
            )

            from_json = TableConfig.from_file(json_path)
            from_toml = TableConfig.from_file(toml_path)

            self.assertEqual(from_json.table_name, "rides")
            self.assertEqual(from_toml.checkpoint_interval_ms, 1000)
            self.assertEqual(from_json.base_path, from_toml.base_path)

    def test_from_file_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(ConfigurationError):
                TableConfig.from_file(Path(tmpdir) / "missing.json")
            yaml_path = Path(tmpdir) / "table.yaml"
            yaml_path.write_text("table: {}")
            with self.assertRaises(ConfigurationError):
                TableConfig.from_file(yaml_path)
            nameless = Path(tmpdir) / "table.json"
            nameless.write_text(json.dumps({"base_path": "/data"}))
            with self.assertRaises(ConfigurationError):
                TableConfig.from_file(nameless)

    def test_from_env(self) -> None:
        environ = {
            "POLARS_MOR_BASE_PATH": "/data/rides",
            "POLARS_MOR_CHECKPOINT_PATH": "/state/rides",
        }
        config = TableConfig.from_env("rides", environ, checkpoint_interval_ms=0)

        self.assertEqual(config.checkpoint_path, Path("/state/rides"))
        self.assertEqual(config.checkpoint_interval_ms, 0)
        with self.assertRaises(ConfigurationError):
            TableConfig.from_env("rides", {})


if __name__ == "__main__":
    unittest.main()
