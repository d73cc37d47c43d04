import json

import pytest
from pydantic import ValidationError

from downlink.config import ConfigManager, Settings


def test_defaults_are_valid():
    settings = Settings()
    assert settings.max_concurrent_downloads == 2
    assert settings.default_preset == 'recommended_best'
    assert settings.network.retries == 10


@pytest.mark.parametrize('field, value', [
    ('max_concurrent_downloads', 0),
    ('log_level', 'CHATTY'),
    ('filename_template', '../%(title)s.%(ext)s'),
    ('filename_template', '%(ext)s'),
    ('stop_grace_period_seconds', 0),
])
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings.model_validate({field: value})


def test_nested_values_are_validated():
    with pytest.raises(ValidationError):
        Settings.model_validate({'sponsorblock': {'mode': 'skip'}})
    assert Settings.model_validate({'sponsorblock': {'mode': 'MARK'}}).sponsorblock.mode == 'mark'
    assert Settings.model_validate({'log_level': 'debug'}).log_level == 'DEBUG'


def test_manager_creates_default_file(tmp_path):
    path = tmp_path / 'config' / 'config.json'
    settings = ConfigManager(path).load()
    assert settings == Settings()
    assert json.loads(path.read_text(encoding='utf-8'))['max_concurrent_downloads'] == 2


def test_manager_round_trips_changes(tmp_path):
    manager = ConfigManager(tmp_path / 'config.json')
    manager.save(Settings(max_concurrent_downloads=5))
    assert manager.load().max_concurrent_downloads == 5


def test_manager_backs_up_invalid_file(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'max_concurrent_downloads': 'many'}), encoding='utf-8')

    settings = ConfigManager(path).load()
    assert settings == Settings()
    assert not path.exists()
    assert len(list(tmp_path.glob('config.*.bak'))) == 1
