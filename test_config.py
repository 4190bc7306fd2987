#!/usr/bin/env python3
"""
测试配置管理

测试内容:
1. 默认值和字段校验
2. YAML 加载（缺失文件、格式错误）
3. 命令行参数覆盖配置文件
"""

import pytest

from config import RelayConfig, load_config, save_config, build_config


def test_defaults():
    config = RelayConfig()
    assert config.host == '0.0.0.0'
    assert config.port == 1080
    assert config.buffer_size == 4096
    assert config.idle_timeout == 300.0


def test_invalid_port():
    with pytest.raises(ValueError):
        RelayConfig(port=70000)


def test_invalid_buffer_size():
    with pytest.raises(ValueError):
        RelayConfig(buffer_size=0)


def test_null_timeout_disables():
    assert RelayConfig(idle_timeout=None).idle_timeout == 0.0


def test_load_missing_file(tmp_path):
    assert load_config(str(tmp_path / 'missing.yaml')) == {}


def test_load_malformed_file(tmp_path):
    path = tmp_path / 'broken.yaml'
    path.write_text('relay: [port: 1\n', encoding='utf-8')
    assert load_config(str(path)) == {}


def test_load_non_mapping(tmp_path):
    path = tmp_path / 'list.yaml'
    path.write_text('- 1\n- 2\n', encoding='utf-8')
    assert load_config(str(path)) == {}


def test_save_and_load_roundtrip(tmp_path):
    path = str(tmp_path / 'config.yaml')
    data = {'relay': RelayConfig(port=1999, idle_timeout=12).to_dict()}
    assert save_config(path, data)
    assert RelayConfig.from_dict(load_config(path)['relay']) == RelayConfig(port=1999, idle_timeout=12)


def test_cli_overrides_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('relay:\n  port: 2080\n  host: 127.0.0.1\n  idle_timeout: 60\n', encoding='utf-8')
    data = load_config(str(path))

    config = build_config(data, port=3080, host=None, idle_timeout=None)
    assert config.port == 3080
    assert config.host == '127.0.0.1'
    assert config.idle_timeout == 60.0


def test_build_config_without_relay_section():
    config = build_config({'logging': {'level': 'DEBUG'}})
    assert config == RelayConfig()


def test_unknown_keys_ignored():
    config = RelayConfig.from_dict({'port': 1081, 'password': 'secret'})
    assert config.port == 1081
