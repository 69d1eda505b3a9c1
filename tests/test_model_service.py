"""Tests for AI model CRUD, avatar upload validation and the test-record helpers."""

import io
import re

import pytest
from PIL import Image

import avatar_service
import model_service
from supabase_client import SupabaseError


def png_bytes(width=400, height=400):
    buffer = io.BytesIO()
    Image.new('RGB', (width, height), (200, 120, 80)).save(buffer, format='PNG')
    return buffer.getvalue()


@pytest.fixture
def anna(fake_db):
    return fake_db.seed('ai_models', [{
        'id': 'm-anna', 'name': 'Anna', 'bio': 'Painter', 'gender': 'female',
        'avatar_url': '', 'traits': [], 'genres': [], 'created_at': '2024-01-02T00:00:00+00:00',
    }])[0]


class TestReadModels:
    def test_lists_newest_first(self, fake_db):
        fake_db.seed('ai_models', [
            {'id': 'old', 'name': 'Old', 'created_at': '2024-01-01T00:00:00+00:00'},
            {'id': 'new', 'name': 'New', 'created_at': '2024-03-01T00:00:00+00:00'},
        ])
        assert [m['id'] for m in model_service.get_all_models()] == ['new', 'old']

    def test_list_error_propagates(self, fake_db):
        fake_db.fail('select', 'ai_models')
        with pytest.raises(SupabaseError):
            model_service.get_all_models()

    def test_get_by_id(self, anna):
        assert model_service.get_model_by_id('m-anna')['name'] == 'Anna'

    def test_missing_model_is_none(self, fake_db):
        assert model_service.get_model_by_id('nope') is None


class TestCreateModel:
    def test_fills_defaults(self, fake_db):
        created = model_service.create_model({'name': '  Cleo  '})
        assert created['name'] == 'Cleo'
        assert created['gender'] == 'female'
        assert created['traits'] == [] and created['genres'] == []
        assert created['id']
        assert len(fake_db.rows('ai_models')) == 1

    @pytest.mark.parametrize('model', [{'name': ''}, {'name': '   '}, {}])
    def test_requires_name(self, fake_db, model):
        with pytest.raises(ValueError):
            model_service.create_model(model)
        assert fake_db.rows('ai_models') == []

    def test_rejects_unknown_gender(self, fake_db):
        with pytest.raises(ValueError, match='gender'):
            model_service.create_model({'name': 'X', 'gender': 'robot'})

    def test_insert_error_propagates(self, fake_db):
        fake_db.fail('insert', 'ai_models', message='permission denied')
        with pytest.raises(SupabaseError, match='permission denied'):
            model_service.create_model({'name': 'X'})


class TestUpdateModel:
    def test_updates_allowed_fields_only(self, anna, fake_db):
        result = model_service.update_model('m-anna', {'bio': 'Sculptor', 'id': 'hijack'})
        assert result['bio'] == 'Sculptor'
        assert result['id'] == 'm-anna'
        assert result['updated_at']

    def test_refetches_when_update_returns_nothing(self, anna, fake_db, monkeypatch):
        def silent_update(table, filters, values, access_token=None):
            fake_db.rows(table)[0].update(values)
            return []
        monkeypatch.setattr(model_service.db, 'update', silent_update)

        assert model_service.update_model('m-anna', {'name': 'Anya'})['name'] == 'Anya'

    def test_refetch_failure_raises(self, fake_db, monkeypatch):
        monkeypatch.setattr(model_service.db, 'update', lambda *a, **k: [])
        with pytest.raises(RuntimeError):
            model_service.update_model('ghost', {'bio': 'x'})

    def test_rejects_empty_name(self, anna):
        with pytest.raises(ValueError):
            model_service.update_model('m-anna', {'name': ' '})

    def test_avatar_change_clears_cache(self, anna):
        avatar_service.avatar_cache['m-anna'] = 'https://old.example/a.png'
        model_service.update_model('m-anna', {'avatar_url': 'https://new.example/a.png'})
        assert 'm-anna' not in avatar_service.avatar_cache


class TestDeleteModel:
    def test_uses_stored_procedure_when_available(self, anna, fake_db):
        deleted = []
        fake_db.rpc_handlers['delete_model'] = lambda args: deleted.append(args['model_id']) or True

        assert model_service.delete_model('m-anna') is True
        assert deleted == ['m-anna']
        assert fake_db.count_calls('delete', 'ai_models') == 0

    def test_falls_back_to_plain_delete(self, anna, fake_db):
        avatar_service.avatar_cache['m-anna'] = 'https://x/a.png'
        assert model_service.delete_model('m-anna') is True
        assert fake_db.rows('ai_models') == []
        assert 'm-anna' not in avatar_service.avatar_cache

    def test_retries_once_after_failure(self, anna, fake_db):
        fake_db.fail('delete', 'ai_models', times=1)
        assert model_service.delete_model('m-anna') is True
        assert fake_db.count_calls('delete', 'ai_models') == 2
        assert fake_db.rows('ai_models') == []

    def test_creates_procedure_after_two_failures(self, anna, fake_db):
        fake_db.fail('delete', 'ai_models')
        state = {'created': False}

        def create_function(args):
            state['created'] = True
            return True

        def delete_function(args):
            if not state['created']:
                raise SupabaseError('Could not find the function public.delete_model', code='PGRST202')
            fake_db.tables['ai_models'] = []
            return True

        fake_db.rpc_handlers['create_delete_model_function'] = create_function
        fake_db.rpc_handlers['delete_model'] = delete_function

        assert model_service.delete_model('m-anna') is True
        assert state['created']
        assert fake_db.rows('ai_models') == []

    def test_raises_second_error_when_everything_fails(self, anna, fake_db):
        fake_db.fail('delete', 'ai_models', message='row-level security')
        with pytest.raises(SupabaseError, match='row-level security'):
            model_service.delete_model('m-anna')
        assert len(fake_db.rows('ai_models')) == 1


class TestUploadAvatar:
    def test_stores_file_and_updates_model(self, anna, fake_db):
        url = model_service.upload_avatar('m-anna', png_bytes(), 'image/png')

        assert re.fullmatch(r'https://test\.supabase\.co/storage/v1/object/public/'
                            r'ai-models-avatars/public/m-anna-\d+\.jpg', url)
        assert fake_db.rows('ai_models')[0]['avatar_url'] == url
        assert len(fake_db.uploads) == 1

    def test_rejects_unsupported_type(self, anna, fake_db):
        with pytest.raises(ValueError, match='Unsupported file type'):
            model_service.upload_avatar('m-anna', b'%PDF', 'application/pdf')
        assert fake_db.uploads == {}

    def test_rejects_large_file(self, anna, monkeypatch):
        monkeypatch.setitem(model_service.config.MODEL_UPLOAD_CONFIG, 'maxFileSize', 10)
        with pytest.raises(ValueError, match='exceeds'):
            model_service.upload_avatar('m-anna', png_bytes(), 'image/png')

    @pytest.mark.parametrize('size', [(100, 400), (2500, 500)])
    def test_rejects_bad_dimensions(self, anna, fake_db, size):
        with pytest.raises(ValueError, match='minimum|maximum'):
            model_service.upload_avatar('m-anna', png_bytes(*size), 'image/png')
        assert fake_db.uploads == {}

    def test_rejects_unreadable_image(self, anna):
        with pytest.raises(ValueError, match='Cannot read image'):
            model_service.upload_avatar('m-anna', b'not an image', 'image/jpeg')

    def test_storage_failure_is_wrapped(self, anna, fake_db):
        fake_db.buckets = []
        with pytest.raises(ValueError, match='Avatar upload failed'):
            model_service.upload_avatar('m-anna', png_bytes(), 'image/png')


class TestAvatarUrl:
    def test_known_model(self, anna, fake_db):
        fake_db.rows('ai_models')[0]['avatar_url'] = 'https://cdn.example.com/anna.png'
        assert model_service.get_avatar_url('m-anna') == 'https://cdn.example.com/anna.png'

    def test_model_without_avatar_gets_gender_default(self, anna):
        assert model_service.get_avatar_url('m-anna') == '/default-female-avatar.png'

    def test_unknown_model(self, fake_db):
        with pytest.raises(LookupError):
            model_service.get_avatar_url('ghost')


class TestTestModels:
    def test_create_test_model(self, fake_db):
        created = model_service.create_test_model()
        assert re.fullmatch(r'_test_\d{14}Z', created['name'])
        assert created['traits'] == ['test', 'demo', 'sample']
        assert created['gender'] == 'female'

    def test_create_test_model_reports_missing_gender_column(self, fake_db):
        fake_db.fail('select', 'ai_models', message='column ai_models.gender does not exist')
        with pytest.raises(RuntimeError, match='gender column'):
            model_service.create_test_model()

    def test_cleanup_deletes_only_test_records(self, fake_db):
        fake_db.seed('ai_models', [
            {'id': 't1', 'name': '_test_20240101000000Z'},
            {'id': 't2', 'name': 'Test Model 7'},
            {'id': 'keep1', 'name': 'Anna'},
            {'id': 'keep2', 'name': 'my_test_model'},
        ])
        assert model_service.cleanup_test_models() == 2
        assert sorted(r['id'] for r in fake_db.rows('ai_models')) == ['keep1', 'keep2']

    def test_cleanup_batches_large_sets(self, fake_db):
        fake_db.seed('ai_models', [{'name': f'_test_{i:014d}Z'} for i in range(45)])
        assert model_service.cleanup_test_models() == 45
        assert fake_db.count_calls('delete', 'ai_models') == 3

    def test_cleanup_nothing_to_do(self, fake_db):
        assert model_service.cleanup_test_models() == 0

    def test_cleanup_continues_past_failed_batch(self, fake_db):
        fake_db.seed('ai_models', [{'name': f'_test_{i:014d}Z'} for i in range(25)])
        fake_db.fail('delete', 'ai_models', times=1)
        assert model_service.cleanup_test_models() == 5


class TestUpdateProbe:
    def test_reports_success(self, anna, fake_db):
        result = model_service.test_update_model('m-anna')
        assert result['success'] is True
        assert fake_db.rows('ai_models')[0]['name'] == 'Anna (test)'

    def test_missing_model(self, fake_db):
        result = model_service.test_update_model('ghost')
        assert result == {'success': False, 'message': 'Model ghost not found'}

    def test_update_error(self, anna, fake_db):
        fake_db.fail('update', 'ai_models', message='denied')
        result = model_service.test_update_model('m-anna')
        assert result['success'] is False
        assert result['data']['message'] == 'denied'

    def test_silent_update_is_verified(self, anna, fake_db, monkeypatch):
        monkeypatch.setattr(model_service.db, 'update', lambda *a, **k: [])
        result = model_service.test_update_model('m-anna')
        assert result == {'success': False, 'message': 'Update was not applied.',
                          'data': fake_db.rows('ai_models')[0]}
