"""Tests for the settings row."""

import settings_service


def test_defaults_when_table_is_empty(fake_db):
    settings = settings_service.get_settings()
    assert settings == settings_service.get_default_settings()
    assert settings['appName'] == 'Spody Admin'
    assert settings['timezone'] == 'UTC+3'
    assert settings['supabaseKey'] == ''
    assert settings['openrouterKey'] == ''


def test_reads_stored_row(fake_db):
    fake_db.seed('settings', [{'id': 1, 'appName': 'Custom'}])
    assert settings_service.get_settings()['appName'] == 'Custom'


def test_save_upserts(fake_db):
    fake_db.seed('settings', [{'id': 1, 'appName': 'Old'}])
    result = settings_service.save_settings({'id': 1, 'appName': 'New'})
    assert result['success'] is True
    assert result['data'] == {'id': 1, 'appName': 'New'}
    assert fake_db.rows('settings') == [{'id': 1, 'appName': 'New'}]


def test_save_error(fake_db):
    fake_db.fail('upsert', 'settings', message='denied', code='42501')
    result = settings_service.save_settings({'appName': 'X'})
    assert result['success'] is False
    assert result['error']['message'] == 'denied'
    assert result['error']['code'] == '42501'
