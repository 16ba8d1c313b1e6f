"""Tests for building the BuildConfig at the process boundary."""

from pathlib import Path

import pytest

from pacgen.config import BuildConfig, normalize_features
from pacgen.errors import ConfigurationError


def test_normalize_features() -> None:
    assert normalize_features(['ATmega328P', 'all_MCUS']) == frozenset(['atmega328p', 'all_mcus'])


def test_derived_directories(tmp_path) -> None:
    config = BuildConfig(root=tmp_path, out_dir=tmp_path / 'out')
    assert config.vendor_dir == tmp_path / 'vendor'
    assert config.patch_dir == tmp_path / 'patch'
    assert config.svd_dir == tmp_path / 'out' / 'svd'


def test_features_are_normalized(tmp_path) -> None:
    config = BuildConfig(root=tmp_path, out_dir=tmp_path, features=['ATtiny85'])
    assert config.features == frozenset(['attiny85'])
    assert not config.all_targets
    assert config.with_features(['ALL_MCUS']).all_targets


def test_with_features_merges(tmp_path) -> None:
    config = BuildConfig(root=tmp_path, out_dir=tmp_path, features=['a'])
    assert config.with_features(['B']).features == frozenset(['a', 'b'])
    assert config.features == frozenset(['a'])


def test_from_environ(tmp_path) -> None:
    environ = {
        'PACGEN_ROOT': str(tmp_path),
        'PACGEN_FEATURE_ATMEGA328P': '1',
        'PACGEN_FEATURE_ALL_MCUS': '',
        'CARGO_FEATURE_IGNORED': '1',
    }
    config = BuildConfig.from_environ(environ)
    assert config.root == tmp_path
    assert config.out_dir == tmp_path / 'build'
    assert config.features == frozenset(['atmega328p', 'all_mcus'])


def test_from_environ_out_dir(tmp_path) -> None:
    environ = {'PACGEN_ROOT': str(tmp_path), 'PACGEN_OUT_DIR': str(tmp_path / 'gen')}
    assert BuildConfig.from_environ(environ).out_dir == tmp_path / 'gen'


def test_from_environ_defaults_to_cwd(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    config = BuildConfig.from_environ({})
    assert config.root == Path.cwd()
    assert config.features == frozenset()


def test_load(tmp_path) -> None:
    path = tmp_path / 'pacgen.yaml'
    path.write_text('root: project\nout_dir: out\nfeatures: [ATmega328P]\n', encoding='utf-8')
    config = BuildConfig.load(path)
    assert config.root == tmp_path.resolve() / 'project'
    assert config.out_dir == tmp_path.resolve() / 'out'
    assert config.features == frozenset(['atmega328p'])


def test_load_over_base(tmp_path) -> None:
    path = tmp_path / 'pacgen.yaml'
    path.write_text('features: [attiny85]\n', encoding='utf-8')
    base = BuildConfig(root=tmp_path / 'r', out_dir=tmp_path / 'o', features=['atmega328p'])
    config = BuildConfig.load(path, base=base)
    assert config.root == base.root
    assert config.out_dir == base.out_dir
    assert config.features == frozenset(['attiny85', 'atmega328p'])


def test_load_empty_file(tmp_path) -> None:
    path = tmp_path / 'pacgen.yaml'
    path.write_text('', encoding='utf-8')
    config = BuildConfig.load(path)
    assert config.root == tmp_path.resolve()
    assert config.out_dir == tmp_path.resolve() / 'build'


def test_load_missing_file(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match='unable to read config'):
        BuildConfig.load(tmp_path / 'missing.yaml')


def test_load_malformed_file(tmp_path) -> None:
    path = tmp_path / 'pacgen.yaml'
    path.write_text('features: [a\n', encoding='utf-8')
    with pytest.raises(ConfigurationError, match='unable to read config'):
        BuildConfig.load(path)


def test_load_requires_mapping(tmp_path) -> None:
    path = tmp_path / 'pacgen.yaml'
    path.write_text('- a\n- b\n', encoding='utf-8')
    with pytest.raises(ConfigurationError, match='must contain a mapping'):
        BuildConfig.load(path)
