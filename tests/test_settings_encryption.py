import os
import sys
import unittest
import keyring
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from config import YamlConfig
from db import SettingsRepository

class DummyKeyring(keyring.backend.KeyringBackend):
    priority = 1
    def __init__(self):
        self.store = {}
    def get_password(self, service, username):
        return self.store.get((service, username))
    def set_password(self, service, username, password):
        self.store[(service, username)] = password
    def delete_password(self, service, username):
        self.store.pop((service, username), None)

class SettingsEncryptionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = DummyKeyring()
        keyring.set_keyring(self.backend)
        os.environ['ENCRYPT_SETTINGS'] = '1'
        self.path = 'enc_settings.yaml'
        self.db_path = 'enc_settings.db'
        for p in (self.path, self.db_path):
            if os.path.exists(p):
                os.remove(p)

    def tearDown(self) -> None:
        for p in (self.path, self.db_path):
            if os.path.exists(p):
                os.remove(p)
        os.environ.pop('ENCRYPT_SETTINGS', None)

    def test_encrypt_and_load(self) -> None:
        cfg = YamlConfig(self.path)
        cfg.save({'webhook_url':'https://hooks.example/secret', 'default_body_weight': 72.0})
        self.assertTrue(os.path.exists(self.path))
        with open(self.path, encoding='utf-8') as f:
            self.assertNotIn('hooks.example', f.read())
        self.assertEqual(
            self.backend.get_password('gymtrack', 'webhook_url'),
            'https://hooks.example/secret',
        )
        data = cfg.load()
        self.assertEqual(data['webhook_url'], 'https://hooks.example/secret')
        self.assertEqual(data['default_body_weight'], 72.0)

    def test_placeholder_without_secret_is_dropped(self) -> None:
        YamlConfig(self.path).save({'webhook_url': 'https://hooks.example/secret'})
        os.environ.pop('ENCRYPT_SETTINGS')
        self.assertEqual(YamlConfig(self.path).load(), {})

    def test_removed_secret_leaves_keyring(self) -> None:
        cfg = YamlConfig(self.path)
        cfg.save({'webhook_url': 'https://hooks.example/secret'})
        cfg.save({'default_body_weight': 65.0})
        self.assertIsNone(self.backend.get_password('gymtrack', 'webhook_url'))
        self.assertEqual(cfg.load(), {'default_body_weight': 65.0})

    def test_settings_repository_roundtrip(self) -> None:
        repo = SettingsRepository(self.db_path, self.path)
        self.assertEqual(repo.get_float('default_body_weight', 0), 70.0)
        self.assertEqual(repo.get_list('cardio_types'), ['Cardio', 'Slide Board'])
        self.assertTrue(repo.get_bool('notifications_enabled', False))
        repo.set_text('webhook_url', 'https://hooks.example/x')
        repo.set_int('notification_window_seconds', 90)
        reopened = SettingsRepository(self.db_path, self.path)
        self.assertEqual(reopened.get_text('webhook_url', ''), 'https://hooks.example/x')
        self.assertEqual(reopened.schema().notification_window_seconds, 90)

if __name__ == '__main__':
    unittest.main()
