"""Tests for avatar storage, caching and URL validation."""

import pytest

import avatar_service
from supabase_client import SupabaseError


@pytest.fixture
def model(fake_db):
    return fake_db.seed('ai_models', [{'id': 'm1', 'name': 'Anna', 'gender': 'female',
                                       'avatar_url': ''}])[0]


class TestBucket:
    def test_existing_bucket(self, fake_db):
        assert avatar_service.ensure_avatars_bucket_exists() is True

    def test_missing_bucket(self, fake_db):
        fake_db.buckets = ['other']
        assert avatar_service.ensure_avatars_bucket_exists() is False

    def test_listing_error(self, fake_db):
        fake_db.fail('list_buckets', None)
        assert avatar_service.ensure_avatars_bucket_exists() is False


class TestUploadAndUpdate:
    def test_success_updates_model_and_cache(self, model, fake_db):
        result = avatar_service.upload_avatar_and_update_model(b'img', 'image/jpeg', 'm1')

        assert result['success'] is True
        assert fake_db.rows('ai_models')[0]['avatar_url'] == result['url']
        assert avatar_service.avatar_cache['m1'] == result['url']
        (key,) = fake_db.uploads
        assert key.startswith('ai-models-avatars/public/m1-') and key.endswith('.jpg')

    def test_missing_arguments(self, fake_db):
        result = avatar_service.upload_avatar_and_update_model(b'', 'image/jpeg', 'm1')
        assert result == {'success': False, 'error': 'File and model id are required'}

    def test_missing_bucket(self, model, fake_db):
        fake_db.buckets = []
        result = avatar_service.upload_avatar_and_update_model(b'img', 'image/jpeg', 'm1')
        assert result['success'] is False
        assert 'ai-models-avatars' in result['error']

    def test_retries_after_creating_public_folder(self, model, fake_db, monkeypatch):
        attempts = []
        original = fake_db.upload_object

        def flaky_upload(bucket, path, data, content_type, **kwargs):
            attempts.append(path)
            if len(attempts) == 1:
                raise SupabaseError('The resource was not found', status=404)
            return original(bucket, path, data, content_type)
        monkeypatch.setattr(avatar_service.db, 'upload_object', flaky_upload)

        result = avatar_service.upload_avatar_and_update_model(b'img', 'image/jpeg', 'm1')
        assert result['success'] is True
        assert attempts[1] == 'public/.keep'
        assert attempts[0] == attempts[2]

    def test_upload_error_is_reported(self, model, fake_db, monkeypatch):
        def denied(*args, **kwargs):
            raise SupabaseError('new row violates row-level security policy', status=403)
        monkeypatch.setattr(avatar_service.db, 'upload_object', denied)

        result = avatar_service.upload_avatar_and_update_model(b'img', 'image/jpeg', 'm1')
        assert result == {'success': False, 'error': 'new row violates row-level security policy'}

    def test_model_update_failure_still_returns_url(self, model, fake_db):
        fake_db.fail('update', 'ai_models', message='denied')
        result = avatar_service.upload_avatar_and_update_model(b'img', 'image/jpeg', 'm1')
        assert result['success'] is True
        assert result['url']
        assert result['error'] == 'denied'

    def test_strict_wrapper_raises(self, fake_db):
        fake_db.buckets = []
        with pytest.raises(RuntimeError):
            avatar_service.upload_avatar(b'img', 'image/jpeg', 'm1')


def test_upload_loose_file_sanitizes_name(fake_db):
    result = avatar_service.upload_avatar_file(b'img', 'image/png', 'my cat.png')
    assert result['success'] is True
    assert result['url'].endswith('_my_cat.png')


class TestGetAvatar:
    def test_reads_and_caches(self, model, fake_db):
        fake_db.rows('ai_models')[0]['avatar_url'] = 'https://cdn.example.com/a.png'
        assert avatar_service.get_model_avatar('m1') == 'https://cdn.example.com/a.png'
        calls = fake_db.count_calls('select', 'ai_models')
        assert avatar_service.get_model_avatar('m1') == 'https://cdn.example.com/a.png'
        assert fake_db.count_calls('select', 'ai_models') == calls

    @pytest.mark.parametrize('gender, expected', [
        ('male', '/default-male-avatar.png'),
        ('female', '/default-female-avatar.png'),
        ('default', '/default-avatar.png'),
    ])
    def test_fallback_by_gender(self, model, gender, expected):
        assert avatar_service.get_model_avatar('m1', gender) == expected

    def test_lookup_error_falls_back(self, fake_db):
        assert avatar_service.get_model_avatar('ghost', 'male') == '/default-male-avatar.png'

    def test_invalid_stored_url_uses_gender_default(self, model, fake_db):
        fake_db.rows('ai_models')[0]['avatar_url'] = 'http://'
        assert avatar_service.get_avatar('m1', 'male') == '/default-male-avatar.png'


class TestValidateUrl:
    @pytest.mark.parametrize('url', [
        'https://abc.supabase.co/storage/v1/object/public/x',
        'https://example.com/pic.webp',
        'https://example.com/avatar',
    ])
    def test_accepts_http_urls(self, url):
        assert avatar_service.validate_avatar_url(url) == url

    @pytest.mark.parametrize('url', [None, '', '   ', 'null', 'undefined',
                                     'ftp://example.com/a.png', 'javascript:alert(1)', 'not a url'])
    def test_rejects_everything_else(self, url):
        assert avatar_service.validate_avatar_url(url) is None


class TestCache:
    def test_clear_one(self):
        avatar_service.avatar_cache.update({'a': 'x', 'b': 'y'})
        assert avatar_service.clear_cache('a') is True
        assert avatar_service.clear_cache('a') is False
        assert avatar_service.avatar_cache == {'b': 'y'}

    def test_clear_all(self):
        avatar_service.avatar_cache.update({'a': 'x', 'b': 'y'})
        assert avatar_service.clear_cache() is True
        assert avatar_service.avatar_cache == {}
