from pathlib import Path

from pytest import raises

from mirrorsync import ConfigError, RegistryConfig, StoreConfig

CONFIG_YAML = """\
defaults:
  sync_debounce: 0.5
stores:
  todos:
    sync_retries: 5
    batch_size: 20
  outline:
    node_separator: "/"
"""


def test_defaults():
    config = StoreConfig()

    assert config.sync_debounce == 0.3
    assert config.sync_retries == 3
    assert config.batch_size is None
    assert config.collapse_update_delete is True
    assert config.refetch_on_mutation is False
    assert config.cache_capacity == 10
    assert config.cache_ttl == 60.0
    assert config.fetch_retries == 0
    assert config.node_separator == "."


def test_load(tmp_path: Path):
    file = tmp_path / "mirrorsync.yaml"
    file.write_text(CONFIG_YAML)

    config = RegistryConfig.load_yaml(file)

    assert config.defaults.sync_debounce == 0.5
    assert config.get("todos").sync_retries == 5
    assert config.get("todos").batch_size == 20
    assert config.get("outline").node_separator == "/"
    assert config.get("other") is config.defaults


def test_dump(tmp_path: Path):
    file = tmp_path / "store.yaml"

    StoreConfig(sync_retries=1, node_separator="/").dump_yaml(file)
    config = StoreConfig.load_yaml(file)

    assert config.sync_retries == 1
    assert config.node_separator == "/"


def test_missing_file(tmp_path: Path):
    with raises(ConfigError) as e:
        StoreConfig.load_yaml(tmp_path / "missing.yaml")

    assert "does not exist" in e.value.errors[0]


def test_invalid(tmp_path: Path):
    file = tmp_path / "store.yaml"

    file.write_text("- not a mapping\n")
    with raises(ConfigError):
        StoreConfig.load_yaml(file)

    file.write_text("sync_retries: -1\nnode_separator: ''\nunknown: 1\n")
    with raises(ConfigError) as e:
        StoreConfig.load_yaml(file)

    errors = e.value.errors
    assert len(errors) == 3
    assert any(err.startswith("sync_retries") for err in errors)
    assert any(err.startswith("node_separator") for err in errors)
    assert any(err.startswith("unknown") for err in errors)
