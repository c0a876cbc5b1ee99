#!/usr/bin/env python3
"""Basic tests for ODNAV configuration."""

import tempfile
import json
from pathlib import Path

import pytest

from odnav.config import Config


def test_config_initialization():
    """Test configuration initialization."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_dir = Path(tmpdir)
        config = Config(config_dir)

        # Check config file was created with owner-only permissions
        assert config.config_path.exists()
        assert config.config_path.stat().st_mode & 0o777 == 0o600

        # Check default values
        assert config.client_id == ''
        assert config.effective_client_id == Config.DEFAULT_CLIENT_ID
        assert config.redirect_uri == 'http://localhost:8080'
        assert config.scopes == ['Files.ReadWrite', 'User.Read']
        assert config.retry_budget == 3
        assert config.prefer_popup is True
        assert config.log_level is None
        assert config.session_path == config_dir / 'session.json'


def test_config_save_load():
    """Test configuration save and load."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_dir = Path(tmpdir)

        config1 = Config(config_dir)
        config1.set('client_id', 'df3a0308-c302-4962-b115-08bd59526bc5')
        config1.set('retry_budget', '5')
        config1.set('scopes', 'Files.Read User.Read')

        # Load config in new instance
        config2 = Config(config_dir)
        assert config2.get('client_id') == 'df3a0308-c302-4962-b115-08bd59526bc5'
        assert config2.retry_budget == 5
        assert config2.scopes == ['Files.Read', 'User.Read']

        with open(config2.config_path) as f:
            assert json.load(f)['retry_budget'] == 5


def test_post_logout_defaults_to_redirect():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = Config(Path(tmpdir))
        config.set('redirect_uri', 'http://localhost:8400/')
        assert config.redirect_uri == 'http://localhost:8400'
        assert config.post_logout_redirect_uri == 'http://localhost:8400'

        config.set('post_logout_redirect_uri', 'https://example.com/bye')
        assert config.post_logout_redirect_uri == 'https://example.com/bye'


def test_invalid_values_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = Config(Path(tmpdir))

        with pytest.raises(ValueError):
            config.set('client_id', 'not-a-uuid')
        with pytest.raises(ValueError):
            config.set('retry_budget', 0)
        with pytest.raises(ValueError):
            config.set('authority', 'http://login.example.com')
        with pytest.raises(ValueError):
            config.set('scopes', 'openid Files.Read')

        # Nothing invalid was persisted
        assert Config(Path(tmpdir)).retry_budget == 3


def test_config_dir_from_environment(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv('ODNAV_CONFIG_DIR', tmpdir)
        config = Config()
        assert config.config_dir == Path(tmpdir)
        assert (Path(tmpdir) / 'config.json').exists()


if __name__ == '__main__':
    print("Running configuration tests...")

    test_config_initialization()
    print("✓ Configuration initialization")

    test_config_save_load()
    print("✓ Configuration save/load")

    test_post_logout_defaults_to_redirect()
    print("✓ Post-logout redirect default")

    test_invalid_values_rejected()
    print("✓ Invalid values rejected")

    print("\nAll tests passed!")


def test_log_level_only_when_configured(tmp_path):
    config = Config(tmp_path)
    assert config.log_level is None
    assert config.as_dict()['log_level'] is None

    config.set('log_level', 'debug')
    assert Config(tmp_path).log_level == 'DEBUG'
