import os
import unittest
from unittest import mock

from itemchat.config import SyncConfig, load_sync_config_from_env


class SyncConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_sync_config_from_env()
        self.assertEqual(config, SyncConfig())
        self.assertEqual(config.inbox_debounce_ms, 800)
        self.assertEqual(config.inbox_debounce_s, 0.8)
        self.assertEqual(config.send_timeout_s, 20.0)
        self.assertEqual(config.reply_preview_chars, 60)
        self.assertEqual(config.max_image_bytes, 5 * 1024 * 1024)
        self.assertEqual(config.max_document_bytes, 10 * 1024 * 1024)
        self.assertTrue(config.local_suppression)

    def test_environment_overrides(self):
        env = {
            "ITEMCHAT_INBOX_DEBOUNCE_MS": "250",
            "ITEMCHAT_SEND_TIMEOUT_S": "2.5",
            "ITEMCHAT_REPLY_PREVIEW_CHARS": "0",
            "ITEMCHAT_RESUBSCRIBE_DELAY_MS": "50",
            "ITEMCHAT_LOCAL_SUPPRESSION": "0",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_sync_config_from_env()
        self.assertEqual(config.inbox_debounce_s, 0.25)
        self.assertEqual(config.send_timeout_s, 2.5)
        self.assertEqual(config.reply_preview_chars, 1)
        self.assertEqual(config.resubscribe_delay_s, 0.05)
        self.assertFalse(config.local_suppression)

    def test_invalid_values_name_the_variable(self):
        cases = {
            "ITEMCHAT_INBOX_DEBOUNCE_MS": "-1",
            "ITEMCHAT_SEND_TIMEOUT_S": "0",
            "ITEMCHAT_MAX_IMAGE_BYTES": "lots",
            "ITEMCHAT_LOCAL_SUPPRESSION": "yes",
        }
        for name, value in cases.items():
            with self.subTest(name=name):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaisesRegex(ValueError, name):
                        load_sync_config_from_env()


if __name__ == "__main__":
    unittest.main()
